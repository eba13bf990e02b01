"""
FastAPI Backend for Habit Insights
Main application with REST API endpoints
"""

from fastapi import FastAPI, Depends, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from typing import Dict, List, Optional
from contextlib import asynccontextmanager

from analysis_service import AnalysisService
from config import API_HOST, API_PORT
from database import init_db
from errors import (
    AlertNotFoundError, AnalyticsError, InvalidAlertError, InvalidCategoryError,
    SuggestionNotFoundError,
)
from logging_config import get_logger, setup_logging
from models import (
    Alert, AlertStats, AlertType, AnalysisRunResult, Correlation, CorrelationAnalysis,
    CorrelationInsight, CorrelationPrediction, CorrelationSummary, CustomAlertCreate,
    InterventionStep, PatternDeviations, PatternInsight, PatternModel, PatternStrength,
    RiskAnalysis, RiskPrediction, Suggestion, SuggestionStats, SuggestionType,
)
from store import SQLAlchemyAnalyticsStore

logger = get_logger(__name__)

# Global instance
analysis_service = AnalysisService(SQLAlchemyAnalyticsStore())


def get_service() -> AnalysisService:
    return analysis_service


def current_user(x_user_id: str = Header(...)) -> str:
    """Authentication happens upstream; the gateway forwards the user id"""
    return x_user_id


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    setup_logging()
    logger.info("app_starting")
    init_db()
    yield
    logger.info("app_stopping")


# Create FastAPI app
app = FastAPI(
    title="Habit Insights API",
    description="Behavioral analytics over logged activities: patterns, correlations and habit risk",
    version="1.0.0",
    lifespan=lifespan
)

# Enable CORS for frontend access
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ==================== ERROR HANDLERS ====================

@app.exception_handler(AlertNotFoundError)
@app.exception_handler(SuggestionNotFoundError)
@app.exception_handler(InvalidCategoryError)
async def not_found_handler(request: Request, exc: AnalyticsError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InvalidAlertError)
async def invalid_alert_handler(request: Request, exc: InvalidAlertError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def unavailable_handler(request: Request, exc: Exception):
    logger.exception("request_failed", method=request.method, path=request.url.path)
    return JSONResponse(status_code=503, content={"detail": "insights temporarily unavailable"})


# ==================== API ENDPOINTS ====================

@app.get("/")
def root():
    """Root endpoint - API status"""
    return {
        "status": "running",
        "name": "Habit Insights API",
        "version": "1.0.0",
    }


@app.post("/api/analysis/run", response_model=AnalysisRunResult)
def run_analysis(user_id: str = Depends(current_user), service: AnalysisService = Depends(get_service)):
    """
    Run pattern, correlation and risk analysis for the user.
    Engines that fail are listed under errors; the others still complete.
    """
    return service.run_analysis(user_id)


# ==================== PATTERNS ====================

@app.get("/api/patterns/analyze", response_model=PatternModel)
def analyze_patterns(user_id: str = Depends(current_user), service: AnalysisService = Depends(get_service)):
    """Recompute the user's behavioral pattern model"""
    return service.analyze_patterns(user_id)


@app.get("/api/patterns/insights", response_model=List[PatternInsight])
def get_pattern_insights(user_id: str = Depends(current_user), service: AnalysisService = Depends(get_service)):
    return service.pattern_insights(user_id)


@app.get("/api/patterns/strength", response_model=PatternStrength)
def get_pattern_strength(user_id: str = Depends(current_user), service: AnalysisService = Depends(get_service)):
    return service.pattern_strength(user_id)


@app.get("/api/patterns/deviations", response_model=PatternDeviations)
def get_pattern_deviations(user_id: str = Depends(current_user), service: AnalysisService = Depends(get_service)):
    """Daily habits missed today and activities logged at unusual hours"""
    return service.pattern_deviations(user_id)


@app.get("/api/patterns/suggestions/stats", response_model=SuggestionStats)
def get_suggestion_stats(
    days: int = Query(7, ge=1, le=365),
    user_id: str = Depends(current_user),
    service: AnalysisService = Depends(get_service)
):
    return service.suggestion_stats(user_id, days=days)


@app.get("/api/patterns/suggestions", response_model=List[Suggestion])
def get_suggestions(
    read: Optional[bool] = None,
    type: Optional[SuggestionType] = None,
    user_id: str = Depends(current_user),
    service: AnalysisService = Depends(get_service)
):
    """Unexpired suggestions, newest first"""
    return service.suggestions(user_id, read=read, type=type)


@app.post("/api/patterns/suggestions/{suggestion_id}/act", response_model=Suggestion)
def act_on_suggestion(
    suggestion_id: str,
    user_id: str = Depends(current_user),
    service: AnalysisService = Depends(get_service)
):
    return service.act_on_suggestion(user_id, suggestion_id)


@app.post("/api/patterns/suggestions/{suggestion_id}/dismiss", response_model=Suggestion)
def dismiss_suggestion(
    suggestion_id: str,
    user_id: str = Depends(current_user),
    service: AnalysisService = Depends(get_service)
):
    return service.dismiss_suggestion(user_id, suggestion_id)


# ==================== CORRELATIONS ====================

@app.get("/api/correlations/analyze", response_model=CorrelationAnalysis)
def analyze_correlations(user_id: str = Depends(current_user), service: AnalysisService = Depends(get_service)):
    return service.analyze_correlations(user_id)


@app.get("/api/correlations/summary", response_model=CorrelationSummary)
def get_correlation_summary(user_id: str = Depends(current_user), service: AnalysisService = Depends(get_service)):
    return service.correlation_summary(user_id)


@app.get("/api/correlations/matrix", response_model=Dict[str, Dict[str, float]])
def get_correlation_matrix(
    full: bool = False,
    user_id: str = Depends(current_user),
    service: AnalysisService = Depends(get_service)
):
    """
    Category x category coefficient matrix.
    full=true recomputes every pair without the significance threshold.
    """
    return service.correlation_matrix(user_id, full=full)


@app.get("/api/correlations/insights", response_model=List[CorrelationInsight])
def get_correlation_insights(user_id: str = Depends(current_user), service: AnalysisService = Depends(get_service)):
    return service.correlation_insights(user_id)


@app.get("/api/correlations/predictions", response_model=List[CorrelationPrediction])
def get_correlation_predictions(user_id: str = Depends(current_user), service: AnalysisService = Depends(get_service)):
    return service.correlation_predictions(user_id)


@app.get("/api/correlations/category/{category_id}", response_model=List[Correlation])
def get_category_correlations(
    category_id: str,
    user_id: str = Depends(current_user),
    service: AnalysisService = Depends(get_service)
):
    return service.category_correlations(user_id, category_id)


# ==================== HABIT RISK ====================

@app.get("/api/habits/risk-analysis", response_model=RiskAnalysis)
def get_risk_analysis(user_id: str = Depends(current_user), service: AnalysisService = Depends(get_service)):
    """Current risk for every category plus the latest degradation alerts"""
    return service.risk_analysis(user_id)


@app.get("/api/habits/predictions", response_model=List[RiskPrediction])
def get_habit_predictions(user_id: str = Depends(current_user), service: AnalysisService = Depends(get_service)):
    return service.habit_predictions(user_id)


# ==================== ALERTS ====================

@app.get("/api/alerts", response_model=List[Alert])
def get_alerts(
    type: Optional[AlertType] = None,
    read: Optional[bool] = None,
    user_id: str = Depends(current_user),
    service: AnalysisService = Depends(get_service)
):
    return service.alerts(user_id, type=type, read=read)


@app.post("/api/alerts", response_model=Alert, status_code=201)
def create_alert(
    body: CustomAlertCreate,
    user_id: str = Depends(current_user),
    service: AnalysisService = Depends(get_service)
):
    """Create a custom alert, e.g. a manual reminder"""
    return service.create_alert(user_id, body.title, body.message, body.category_id)


@app.get("/api/alerts/stats", response_model=AlertStats)
def get_alert_stats(user_id: str = Depends(current_user), service: AnalysisService = Depends(get_service)):
    return service.alert_stats(user_id)


@app.patch("/api/alerts/read-all")
def mark_all_alerts_read(user_id: str = Depends(current_user), service: AnalysisService = Depends(get_service)):
    return {"updated": service.mark_all_read(user_id)}


@app.patch("/api/alerts/{alert_id}/read", response_model=Alert)
def mark_alert_read(
    alert_id: str,
    user_id: str = Depends(current_user),
    service: AnalysisService = Depends(get_service)
):
    return service.mark_alert_read(user_id, alert_id)


@app.delete("/api/alerts/{alert_id}")
def dismiss_alert(
    alert_id: str,
    user_id: str = Depends(current_user),
    service: AnalysisService = Depends(get_service)
):
    service.dismiss_alert(user_id, alert_id)
    return {"message": "Alert dismissed"}


@app.post("/api/alerts/{alert_id}/intervention", response_model=List[InterventionStep])
def trigger_intervention(
    alert_id: str,
    user_id: str = Depends(current_user),
    service: AnalysisService = Depends(get_service)
):
    """Attach an action plan to a habit degradation alert"""
    return service.trigger_intervention(user_id, alert_id)


# ==================== MAIN ====================

if __name__ == "__main__":
    import uvicorn

    setup_logging()
    logger.info("server_starting", host=API_HOST, port=API_PORT)

    uvicorn.run(
        "main:app",
        host=API_HOST,
        port=API_PORT,
        reload=True
    )
