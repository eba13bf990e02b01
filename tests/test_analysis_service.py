"""Tests for backend/analysis_service.py

End-to-end runs over the SQLite store: snapshots, suggestions, alert
dedup across runs, engine error isolation and concurrent alert updates.
"""

import threading
from datetime import timedelta

import pytest

from conftest import FIXED_NOW, TODAY, daily_activities
from errors import AlertNotFoundError, ConflictError, InvalidAlertError, InvalidCategoryError
from models import Alert, AlertType, DeviationType, RiskLevel

CATEGORIES = {"health": "Physical Health", "guitar": "Guitar"}


@pytest.fixture
def seeded(seed, mock_user_id):
    """Steady morning health habit plus a guitar habit dropped 25 days ago."""
    activities = daily_activities("health", TODAY - timedelta(days=89), TODAY)
    activities += daily_activities(
        "guitar", TODAY - timedelta(days=89), TODAY - timedelta(days=25), hour=19, minutes=30
    )
    seed(mock_user_id, CATEGORIES, activities)
    return mock_user_id


# ─────────────────────────────────────────────────────────────────────────────
# Full Run Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestRunAnalysis:
    """Tests for a full analysis pass."""

    def test_run_produces_every_output(self, service, store, seeded):
        result = service.run_analysis(seeded)

        assert result.errors == {}
        assert result.pattern_model.category_patterns["health"].category_name == "Physical Health"
        assert result.correlation_analysis is not None
        assert store.get_pattern_model(seeded) == result.pattern_model
        assert store.get_correlation_analysis(seeded) is not None

        risk = {p.category_id: p for p in result.risk_predictions}
        assert risk["guitar"].risk_level == RiskLevel.HIGH
        assert risk["health"].risk_level == RiskLevel.LOW
        assert result.alerts_created == 1

    def test_repeat_run_does_not_duplicate_alert(self, service, seeded):
        service.run_analysis(seeded)
        second = service.run_analysis(seeded)

        assert second.alerts_created == 0
        assert len(service.alerts(seeded)) == 1

    def test_read_alert_is_recreated_on_next_run(self, service, seeded):
        service.run_analysis(seeded)
        alert = service.alerts(seeded)[0]
        service.mark_alert_read(seeded, alert.id)

        assert service.run_analysis(seeded).alerts_created == 1
        assert len(service.alerts(seeded, read=False)) == 1

    def test_dismissed_alert_can_come_back_under_new_id(self, service, seeded):
        service.run_analysis(seeded)
        alert = service.alerts(seeded)[0]
        service.dismiss_alert(seeded, alert.id)

        service.run_analysis(seeded)

        alerts = service.alerts(seeded)
        assert len(alerts) == 1
        assert alerts[0].id != alert.id

    def test_user_without_data(self, service, seed):
        seed("empty", {"health": "Physical Health"})

        result = service.run_analysis("empty")

        assert result.errors == {}
        assert result.risk_predictions == []
        assert result.pattern_model.category_patterns == {}

    def test_concurrent_runs_for_same_user(self, service, seeded):
        errors = []

        def run():
            try:
                service.run_analysis(seeded)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=run) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(service.alerts(seeded)) == 1


# ─────────────────────────────────────────────────────────────────────────────
# Error Isolation Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestErrorIsolation:
    """An engine failure leaves the other engines and prior snapshots intact."""

    def test_correlation_failure_is_isolated(self, service, store, seeded, monkeypatch):
        service.run_analysis(seeded)
        previous = store.get_correlation_analysis(seeded)

        def boom(*args, **kwargs):
            raise RuntimeError("numeric failure")

        monkeypatch.setattr(service.correlations, "analyze", boom)
        result = service.run_analysis(seeded)

        assert "correlations" in result.errors
        assert result.correlation_analysis is None
        assert result.pattern_model is not None
        assert result.risk_predictions
        assert store.get_correlation_analysis(seeded) == previous

    def test_pattern_failure_skips_suggestions(self, service, seeded, monkeypatch):
        def boom(*args, **kwargs):
            raise RuntimeError("bad pattern")

        monkeypatch.setattr(service.patterns, "detect_patterns", boom)
        result = service.run_analysis(seeded)

        assert set(result.errors) == {"patterns"}
        assert result.suggestions_created == 0
        assert result.alerts_created == 1


# ─────────────────────────────────────────────────────────────────────────────
# Query Surface Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestQueries:
    """Tests for the read side and mutations used by the API."""

    def test_pattern_views_compute_on_demand(self, service, seeded):
        strength = service.pattern_strength(seeded)
        insights = service.pattern_insights(seeded)

        assert 0 <= strength.overall_strength <= 100
        assert any(i.type == "consistent_habits" for i in insights)

    def test_matrix_covers_all_categories(self, service, seeded):
        matrix = service.correlation_matrix(seeded, full=True)

        assert set(matrix) == set(CATEGORIES)
        assert matrix["health"]["health"] == 1.0

    def test_unknown_category_correlations(self, service, seeded):
        with pytest.raises(InvalidCategoryError):
            service.category_correlations(seeded, "ghost")

    def test_habit_predictions_skip_low_risk(self, service, seeded):
        assert [p.category_id for p in service.habit_predictions(seeded)] == ["guitar"]

    def test_risk_analysis(self, service, seeded):
        service.run_analysis(seeded)

        analysis = service.risk_analysis(seeded)

        assert analysis.risk_summary.total_categories == 2
        assert len(analysis.recent_alerts) == 1
        assert analysis.last_analyzed == FIXED_NOW

    def test_intervention_and_read_state(self, service, seeded):
        service.run_analysis(seeded)
        alert = service.alerts(seeded)[0]

        steps = service.trigger_intervention(seeded, alert.id)
        again = service.trigger_intervention(seeded, alert.id)

        assert steps == again
        stored = service.alerts(seeded)[0]
        assert stored.intervention_triggered
        assert stored.read is False

    def test_mark_all_read(self, service, seeded):
        service.run_analysis(seeded)

        assert service.mark_all_read(seeded) == 1
        assert service.mark_all_read(seeded) == 0
        assert service.alert_stats(seeded).unread == 0

    def test_intervention_on_custom_alert(self, service, store, mock_user_id):
        custom = store.upsert_alert(
            mock_user_id, Alert(type=AlertType.CUSTOM, title="Note", message="Hi", created_at=FIXED_NOW)
        )

        with pytest.raises(InvalidAlertError):
            service.trigger_intervention(mock_user_id, custom.id)

    def test_suggestion_act_and_dismiss(self, service, seed, mock_user_id):
        # daily 07:00 habit not yet logged today; the clock says 12:00
        seed(mock_user_id, CATEGORIES, daily_activities("health", TODAY - timedelta(days=30), TODAY - timedelta(days=1)))
        result = service.run_analysis(mock_user_id)
        assert result.suggestions_created == 1

        suggestion = service.suggestions(mock_user_id)[0]
        acted = service.act_on_suggestion(mock_user_id, suggestion.id)

        assert acted.acted_on and acted.read
        assert service.suggestions(mock_user_id, read=False) == []
        assert service.dismiss_suggestion(mock_user_id, suggestion.id).read

    def test_suggestion_stats(self, service, seed, mock_user_id):
        seed(mock_user_id, CATEGORIES, daily_activities("health", TODAY - timedelta(days=30), TODAY - timedelta(days=1)))
        service.run_analysis(mock_user_id)
        suggestion = service.suggestions(mock_user_id)[0]
        service.act_on_suggestion(mock_user_id, suggestion.id)

        stats = service.suggestion_stats(mock_user_id)

        assert (stats.total, stats.acted_on, stats.dismissed) == (1, 1, 0)
        assert stats.action_rate == 100

    def test_pattern_deviations(self, service, seed, mock_user_id):
        seed(mock_user_id, CATEGORIES, daily_activities("health", TODAY - timedelta(days=30), TODAY - timedelta(days=1)))

        report = service.pattern_deviations(mock_user_id)

        assert report.pattern_count == 1
        assert [(d.type, d.category_id) for d in report.deviations] == [(DeviationType.MISSED_PATTERN, "health")]
        assert report.deviations[0].category_name == "Physical Health"

    def test_custom_alerts_are_not_deduplicated(self, service, mock_user_id):
        first = service.create_alert(mock_user_id, "Practice", "Scales before dinner", "guitar")
        second = service.create_alert(mock_user_id, "Practice", "Scales before dinner", "guitar")

        alerts = service.alerts(mock_user_id, type=AlertType.CUSTOM)

        assert {a.id for a in alerts} == {first.id, second.id}
        assert first.created_at == FIXED_NOW
        assert service.alert_stats(mock_user_id).habit_alerts == 0


# ─────────────────────────────────────────────────────────────────────────────
# Concurrent Mutation Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestConflicts:
    """Concurrent writes resolve last-write-wins."""

    def test_conflict_is_retried(self, service, store, seeded, monkeypatch):
        service.run_analysis(seeded)
        alert = service.alerts(seeded)[0]
        original = store.update_alert
        calls = []

        def flaky(user_id, updated):
            calls.append(updated.id)
            if len(calls) == 1:
                raise ConflictError("row changed")
            return original(user_id, updated)

        monkeypatch.setattr(store, "update_alert", flaky)

        assert service.mark_alert_read(seeded, alert.id).read is True
        assert len(calls) == 2

    def test_dismiss_wins_over_read(self, service, seeded):
        service.run_analysis(seeded)
        alert = service.alerts(seeded)[0]
        service.dismiss_alert(seeded, alert.id)

        with pytest.raises(AlertNotFoundError):
            service.mark_alert_read(seeded, alert.id)

    def test_read_racing_intervention_keeps_both(self, service, store, seeded, monkeypatch):
        """An intervention landing between a read's load and write survives the read."""
        service.run_analysis(seeded)
        alert = service.alerts(seeded)[0]
        load = store.get_alert
        raced = []

        def load_then_intervene(user_id, alert_id):
            current = load(user_id, alert_id)
            if not raced:
                raced.append(alert_id)
                service.trigger_intervention(user_id, alert_id)
            return current

        monkeypatch.setattr(store, "get_alert", load_then_intervene)

        result = service.mark_alert_read(seeded, alert.id)

        stored = load(seeded, alert.id)
        assert result.read is True
        assert stored.read is True
        assert stored.intervention_triggered is True
        assert stored.action_data.intervention_steps
        assert stored.version == 3

    def test_stale_write_is_retried(self, service, store, seeded, monkeypatch):
        service.run_analysis(seeded)
        alert = service.alerts(seeded)[0]
        write = store.update_alert
        attempts = []

        def counting_write(user_id, updated):
            attempts.append(updated.version)
            return write(user_id, updated)

        monkeypatch.setattr(store, "update_alert", counting_write)
        load = store.get_alert
        raced = []

        def load_then_touch(user_id, alert_id):
            current = load(user_id, alert_id)
            if not raced:
                raced.append(alert_id)
                write(user_id, current.model_copy(update={"title": "Renamed"}))
            return current

        monkeypatch.setattr(store, "get_alert", load_then_touch)

        service.mark_alert_read(seeded, alert.id)

        assert attempts == [1, 2]
        stored = load(seeded, alert.id)
        assert stored.title == "Renamed"
        assert stored.read is True
