"""
FastAPI application for the session context service.

Serverless-compatible version - handles startup gracefully without crashes.
"""

import os
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

# Only load .env file in development (not on Vercel)
# Vercel sets environment variables directly
if os.getenv("VERCEL") != "1":
    from dotenv import load_dotenv
    load_dotenv(override=True)

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from config import get_config, validate_config_on_startup
from connection import health_check as connection_health_check
from conversation import get_processor, reset_processor
from errors import (
    ContextError, RuleError, SessionNotFoundError, SessionServiceError,
    SessionStoreError
)
from logger import get_logger
from models import (
    ActiveContextRequest, ApplyTemplateRequest, ContextRule, ContextTemplate,
    CreateSessionRequest, DailyMetrics, EndSessionRequest, ImportContextRequest,
    IntentMetrics, MergeContextsRequest, RetentionRequest, RuleToggleRequest,
    SatisfactionRequest, Session, SessionMetrics, SessionStatistics,
    SetVariableRequest, TransferRequest, TurnRequest, TurnResponse
)
from storage import StoreError

logger = get_logger(__name__)

# Check if running in serverless environment
IS_SERVERLESS = os.getenv("VERCEL") == "1" or os.getenv("AWS_LAMBDA_FUNCTION_NAME") is not None

DEFAULT_METRICS_WINDOW_DAYS = 7


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan with graceful error handling for serverless.

    In serverless mode, we try to initialize but don't fail hard.
    This allows the function to start and return errors gracefully.
    """
    logger.info("=" * 60)
    logger.info(f"Starting Session Context API (Serverless: {IS_SERVERLESS})")
    logger.info("=" * 60)

    app.state.store_status = {"healthy": False, "error": None, "rules_loaded": 0}

    try:
        try:
            config = validate_config_on_startup()
            logger.info("Configuration validated", store_backend=config.store_backend)
        except ValueError as e:
            logger.error(f"Configuration validation failed: {e}")
            app.state.store_status = {
                "healthy": False,
                "error": f"Configuration error: {str(e)}",
                "rules_loaded": 0
            }
            yield
            return

        logger.info("[STARTUP] Connecting document store and loading rules...")
        processor = get_processor()
        app.state.store_status = {
            "healthy": True,
            "error": None,
            "backend": processor.sessions.store.name,
            "rules_loaded": len(processor.rules.rules)
        }
        logger.info(f"[STARTUP] Ready: {app.state.store_status}")

    except Exception as e:
        logger.error(f"[STARTUP] Fatal error: {type(e).__name__}: {e}", exc_info=True)
        app.state.store_status = {
            "healthy": False,
            "error": f"Startup failed: {type(e).__name__}: {e}",
            "rules_loaded": 0
        }
        # In serverless, we don't crash - we just note the error
        if not IS_SERVERLESS:
            raise

    yield

    # Shutdown
    logger.info("Shutting down")
    try:
        reset_processor()
    except Exception as e:
        logger.error(f"Error during shutdown: {e}")


app = FastAPI(
    title="Session Context API",
    description="Conversation sessions, context variables, rules and analytics",
    version="1.0.0",
    lifespan=lifespan
)

# Configure CORS
cors_origins = os.getenv("CORS_ORIGINS", "*").split(",")
cors_origins = [origin.strip() for origin in cors_origins if origin.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins if cors_origins else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class ErrorResponse(BaseModel):
    """Standard error response model."""
    error: str
    detail: Optional[str] = None
    status_code: int


def _error(status_code: int, error: str, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, detail=str(exc), status_code=status_code).model_dump()
    )


@app.exception_handler(SessionNotFoundError)
async def session_not_found_handler(request: Request, exc: SessionNotFoundError):
    return _error(status.HTTP_404_NOT_FOUND, "Session not found", exc)


@app.exception_handler(ContextError)
async def context_error_handler(request: Request, exc: ContextError):
    return _error(status.HTTP_400_BAD_REQUEST, "Invalid context operation", exc)


@app.exception_handler(RuleError)
async def rule_error_handler(request: Request, exc: RuleError):
    return _error(status.HTTP_400_BAD_REQUEST, "Invalid rule", exc)


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return _error(status.HTTP_400_BAD_REQUEST, "Invalid request", exc)


@app.exception_handler(SessionStoreError)
async def store_error_handler(request: Request, exc: SessionStoreError):
    logger.error(f"Store unavailable: {exc}", path=request.url.path, session_id=exc.session_id)
    return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "Session store unavailable", exc)


@app.exception_handler(StoreError)
async def raw_store_error_handler(request: Request, exc: StoreError):
    logger.error(f"Store unavailable: {exc}", path=request.url.path)
    return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "Session store unavailable", exc)


@app.exception_handler(SessionServiceError)
async def service_error_handler(request: Request, exc: SessionServiceError):
    logger.error(f"Service error: {exc}", path=request.url.path)
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Session service error", exc)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle all uncaught exceptions."""
    logger.error(
        f"Unhandled exception: {str(exc)}",
        path=request.url.path,
        method=request.method,
        exc_info=True
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "detail": str(exc) if os.getenv("DEBUG", "").lower() == "true" else None,
            "status_code": 500
        }
    )


# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all HTTP requests with timing."""
    start_time = time.time()
    request_id = str(uuid.uuid4())[:8]

    try:
        response = await call_next(request)
    except Exception as e:
        duration = (time.time() - start_time) * 1000
        logger.error(
            f"Request failed: {str(e)}",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            duration_ms=duration
        )
        raise

    logger.request(
        method=request.method,
        path=request.url.path,
        status=response.status_code,
        duration_ms=(time.time() - start_time) * 1000,
        request_id=request_id
    )
    return response


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Session Context API",
        "version": "1.0.0",
        "status": "running",
        "serverless": IS_SERVERLESS,
        "docs": "/docs"
    }


@app.get("/health")
async def health_check(request: Request):
    """Health check - startup status plus a live store check."""
    try:
        startup_status = getattr(request.app.state, "store_status", {
            "healthy": False,
            "error": "Status not initialized",
        })
        services = connection_health_check()
        all_healthy = all(s.get("healthy", False) for s in services.values())

        return {
            "status": "healthy" if all_healthy else "degraded",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "serverless": IS_SERVERLESS,
            "startup_validation": startup_status,
            "live_check": services,
        }
    except Exception as e:
        return {
            "status": "error",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "serverless": IS_SERVERLESS,
            "exception_type": type(e).__name__,
            "exception_message": str(e),
        }


# ----------------------------------------------------------------------
# Sessions
# ----------------------------------------------------------------------

@app.post("/sessions", response_model=Session, status_code=status.HTTP_201_CREATED)
def create_session(request: CreateSessionRequest) -> Session:
    return get_processor().sessions.create_session(request.user_id, request.metadata)


@app.get("/sessions")
def list_sessions(user_id: Optional[str] = None, limit: int = 50):
    """Active sessions, most recently active first."""
    sessions = get_processor().sessions.list_active_sessions(user_id=user_id, limit=limit)
    return {"sessions": sessions, "count": len(sessions)}


@app.post("/sessions/cleanup")
def cleanup_expired_sessions():
    """Expire every active session idle past the TTL."""
    count = get_processor().sessions.cleanup_expired_sessions()
    return {"message": "Expired sessions cleaned up", "expired_count": count}


@app.post("/sessions/retention")
def purge_old_sessions(request: RetentionRequest):
    count = get_processor().sessions.purge_old_sessions(request.retention_days)
    return {"message": "Old sessions purged", "purged_count": count}


@app.get("/sessions/{session_id}", response_model=Session)
def get_session(session_id: str) -> Session:
    session = get_processor().sessions.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    return session


@app.post("/sessions/{session_id}/turns", response_model=TurnResponse)
def add_turn(session_id: str, request: TurnRequest) -> TurnResponse:
    """
    Record a turn for a session.

    A closed or unknown session is replaced by a new one; the response
    carries the session actually used.
    """
    return get_processor().process_turn(request.model_copy(update={"session_id": session_id}))


@app.post("/turns", response_model=TurnResponse)
def add_turn_without_session(request: TurnRequest) -> TurnResponse:
    return get_processor().process_turn(request)


@app.get("/sessions/{session_id}/history")
def get_history(session_id: str, limit: Optional[int] = None):
    processor = get_processor()
    processor.sessions.require_session(session_id)
    turns = processor.turns.get_history(session_id, limit)
    return {"session_id": session_id, "turns": turns, "count": len(turns)}


@app.get("/sessions/{session_id}/statistics", response_model=SessionStatistics)
def get_statistics(session_id: str) -> SessionStatistics:
    return get_processor().turns.get_statistics(session_id)


@app.post("/sessions/{session_id}/end", response_model=Session)
def end_session(session_id: str, request: EndSessionRequest) -> Session:
    return get_processor().sessions.end_session(session_id, request.reason)


@app.post("/sessions/{session_id}/transfer", response_model=Session)
def transfer_session(session_id: str, request: TransferRequest) -> Session:
    return get_processor().sessions.transfer_to_human(session_id, request.reason, request.target_agent)


@app.post("/sessions/{session_id}/satisfaction", response_model=Session)
def record_satisfaction(session_id: str, request: SatisfactionRequest) -> Session:
    return get_processor().sessions.record_satisfaction(session_id, request.score)


# ----------------------------------------------------------------------
# Context
# ----------------------------------------------------------------------

@app.get("/sessions/{session_id}/context")
def get_context(session_id: str):
    context = get_processor().context
    return {
        "session_id": session_id,
        "variables": context.get_context(session_id),
        "active_contexts": context.get_active_contexts(session_id),
    }


@app.delete("/sessions/{session_id}/context")
def clear_context(session_id: str):
    get_processor().context.clear_context(session_id)
    return {"message": "Context cleared", "session_id": session_id}


@app.get("/sessions/{session_id}/context/export")
def export_context(session_id: str):
    return get_processor().context.export_context(session_id)


@app.post("/sessions/{session_id}/context/import")
def import_context(session_id: str, request: ImportContextRequest):
    variables = get_processor().context.import_context(session_id, request.context, request.overwrite)
    return {"session_id": session_id, "variables": variables}


@app.put("/sessions/{session_id}/context/variables/{name}")
def set_variable(session_id: str, name: str, request: SetVariableRequest):
    variable = get_processor().context.set_variable(
        session_id,
        name,
        request.value,
        var_type=request.type,
        lifespan=request.lifespan,
        source=request.source,
    )
    return {"session_id": session_id, "variable": variable}


@app.get("/sessions/{session_id}/context/variables/{name}")
def get_variable(session_id: str, name: str):
    value = get_processor().context.get_variable(session_id, name)
    if value is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Variable not set")
    return {"session_id": session_id, "name": name, "value": value}


@app.delete("/sessions/{session_id}/context/variables/{name}")
def delete_variable(session_id: str, name: str):
    if not get_processor().context.delete_variable(session_id, name):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Variable not set")
    return {"message": "Variable deleted", "session_id": session_id, "name": name}


@app.post("/sessions/{session_id}/context/active")
def set_active_context(session_id: str, request: ActiveContextRequest):
    entries = get_processor().context.set_active_context(session_id, request.name, request.lifespan)
    return {"session_id": session_id, "active_contexts": entries}


@app.post("/sessions/{session_id}/context/merge")
def merge_contexts(session_id: str, request: MergeContextsRequest):
    variables = get_processor().context.merge_contexts(session_id, request.source_session_id)
    return {"session_id": session_id, "variables": variables}


@app.post("/sessions/{session_id}/context/templates/{template_id}")
def apply_template(session_id: str, template_id: str, request: ApplyTemplateRequest):
    applied = get_processor().context.apply_template(session_id, template_id, request.values)
    return {"session_id": session_id, "template_id": template_id, "applied": applied}


# ----------------------------------------------------------------------
# Rules and templates
# ----------------------------------------------------------------------

@app.get("/rules")
def list_rules():
    rules = get_processor().rules.list_rules()
    return {"rules": rules, "count": len(rules)}


@app.post("/rules", response_model=ContextRule, status_code=status.HTTP_201_CREATED)
def create_rule(rule: ContextRule) -> ContextRule:
    return get_processor().rules.create_rule(rule)


@app.put("/rules/{rule_id}/enabled")
def set_rule_enabled(rule_id: str, request: RuleToggleRequest):
    if not get_processor().rules.set_rule_enabled(rule_id, request.enabled):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Rule not found")
    return {"rule_id": rule_id, "enabled": request.enabled}


@app.delete("/rules/{rule_id}")
def delete_rule(rule_id: str):
    if not get_processor().rules.delete_rule(rule_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Rule not found")
    return {"message": "Rule deleted", "rule_id": rule_id}


@app.get("/templates")
def list_templates(category: Optional[str] = None):
    templates = get_processor().context.list_templates(category)
    return {"templates": templates, "count": len(templates)}


@app.post("/templates", response_model=ContextTemplate, status_code=status.HTTP_201_CREATED)
def create_template(template: ContextTemplate) -> ContextTemplate:
    return get_processor().context.create_template(template)


# ----------------------------------------------------------------------
# Analytics
# ----------------------------------------------------------------------

@app.get("/analytics/daily/{day}", response_model=DailyMetrics)
def get_daily_metrics(day: str) -> DailyMetrics:
    return get_processor().analytics.get_daily_metrics(day)


@app.get("/analytics/intents/{intent}", response_model=IntentMetrics)
def get_intent_metrics(intent: str) -> IntentMetrics:
    return get_processor().analytics.get_intent_metrics(intent)


@app.get("/analytics/sessions", response_model=SessionMetrics)
def get_session_metrics(start: Optional[datetime] = None, end: Optional[datetime] = None) -> SessionMetrics:
    processor = get_processor()
    end = _as_utc(end) if end else processor.sessions.clock()
    start = _as_utc(start) if start else end - timedelta(days=DEFAULT_METRICS_WINDOW_DAYS)
    if start >= end:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="start must be before end")
    return processor.analytics.get_session_metrics(start, end)


def _as_utc(value: datetime) -> datetime:
    # Naive query parameters are taken as UTC
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


@app.post("/analytics/flush")
def flush_analytics() -> Dict[str, int]:
    return {"flushed": get_processor().flush_analytics()}


if __name__ == "__main__":
    import uvicorn

    config = get_config()
    uvicorn.run(
        "app:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
        log_level=config.log_level.lower()
    )
