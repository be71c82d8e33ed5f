"""
FastAPI application for the Tesouraria reconciliation and counting engine.

A thin HTTP adapter: the acting user comes from the ``X-User-Id`` header and
the conferente capability from ``X-Conferente``, both set by the upstream
identity service.
"""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from datetime import date
from typing import Any, Dict, List, Optional

import structlog
from fastapi import Depends, FastAPI, Header
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .clock import utc_now
from .config import APP_BASE_PATH, get_settings
from .counting import CountingService
from .db import create_tables, get_engine, init_engine
from .exceptions import TesourariaError
from .models import Actor, CompareLevel, MatchShape, Scope
from .reconciliation import ReconciliationOrchestrator

logger = structlog.get_logger()
settings = get_settings()


def setup_logging():
    """Configure logging to file and console."""
    log_dir = APP_BASE_PATH / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "app.log"

    # Configure standard logging
    logging.basicConfig(
        level=getattr(logging, settings.app_log_level.upper(), logging.INFO),
        format="%(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_file, encoding="utf-8"),
        ],
    )

    # Configure structlog to use standard logging
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if settings.is_production
            else structlog.dev.ConsoleRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    setup_logging()
    logger.info("Starting Tesouraria API", env=settings.app_env)
    try:
        engine = get_engine()
    except RuntimeError:
        engine = init_engine()
    create_tables(engine)
    yield
    logger.info("Shutting down Tesouraria API")


app = FastAPI(
    title="Tesouraria",
    description="Conciliacao bancaria e sessoes de contagem",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

orchestrator = ReconciliationOrchestrator(settings=settings)
counting = CountingService(settings=settings)


@app.exception_handler(TesourariaError)
async def tesouraria_error_handler(request, exc: TesourariaError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def get_actor(
    x_user_id: str = Header(...),
    x_conferente: bool = Header(False),
) -> Actor:
    return Actor(user_id=x_user_id, is_conferente=x_conferente)


# Request models
class ScopeRequest(BaseModel):
    org_id: str
    account_id: Optional[str] = None
    period_start: Optional[date] = None
    period_end: Optional[date] = None

    def to_scope(self) -> Scope:
        return orchestrator.resolve_scope(
            self.org_id, self.account_id, self.period_start, self.period_end
        )


class GenerateRequest(ScopeRequest):
    score_min: Optional[float] = None


class BulkAcceptRequest(ScopeRequest):
    threshold: Optional[float] = None


class ReasonRequest(BaseModel):
    reason: Optional[str] = None


class ManualReconciliationRequest(BaseModel):
    org_id: str
    account_id: Optional[str] = None
    shape: MatchShape
    statement_ids: List[str]
    transaction_ids: List[str]


class OpenSessionRequest(BaseModel):
    org_id: str
    branch_id: Optional[str] = None
    service_date: date
    period: str
    event_id: Optional[str] = None
    tolerance_cents: Optional[int] = Field(default=None, ge=0)
    compare_level: Optional[CompareLevel] = None


class SubmitCountRequest(BaseModel):
    # Raw values; parsed to cents by the counting service
    values_by_category: Dict[str, Any]


class FinalizeRequest(BaseModel):
    override_reason: Optional[str] = None


class RejectSessionRequest(BaseModel):
    reason: str


# API Endpoints
@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "timestamp": utc_now().isoformat()}


@app.post("/api/reconciliation/suggestions/preview")
async def preview_suggestions(request: GenerateRequest):
    """Run the candidate generator without storing anything."""
    suggestions = await asyncio.to_thread(
        orchestrator.generate_candidates, request.to_scope(), request.score_min
    )
    return [s.to_dict() for s in suggestions]


@app.post("/api/reconciliation/suggestions/regenerate")
async def regenerate_suggestions(request: GenerateRequest, actor: Actor = Depends(get_actor)):
    """Replace the pending suggestions of a scope."""
    suggestions = await asyncio.to_thread(
        orchestrator.regenerate, request.to_scope(), request.score_min, actor
    )
    return {"generated": len(suggestions), "suggestions": [s.to_dict() for s in suggestions]}


@app.get("/api/reconciliation/suggestions")
def list_suggestions(
    org_id: str,
    account_id: Optional[str] = None,
    period_start: Optional[date] = None,
    period_end: Optional[date] = None,
    min_score: Optional[float] = None,
):
    scope = orchestrator.resolve_scope(org_id, account_id, period_start, period_end)
    return [s.to_dict() for s in orchestrator.list_suggestions(scope, min_score=min_score)]


@app.post("/api/reconciliation/suggestions/accept-high-confidence")
def accept_high_confidence(request: BulkAcceptRequest, actor: Actor = Depends(get_actor)):
    result = orchestrator.accept_high_confidence(request.to_scope(), actor, request.threshold)
    return {
        "attempted": result.attempted,
        "accepted": result.accepted,
        "conflicts": result.conflicts,
        "accepted_ids": result.accepted_ids,
        "conflicted_ids": result.conflicted_ids,
    }


@app.post("/api/reconciliation/suggestions/{suggestion_id}/accept")
def accept_suggestion(suggestion_id: str, actor: Actor = Depends(get_actor)):
    return orchestrator.accept_suggestion(suggestion_id, actor).to_dict()


@app.post("/api/reconciliation/suggestions/{suggestion_id}/reject")
def reject_suggestion(
    suggestion_id: str,
    request: Optional[ReasonRequest] = None,
    actor: Actor = Depends(get_actor),
):
    reason = request.reason if request else None
    return orchestrator.reject_suggestion(suggestion_id, actor, reason).to_dict()


@app.post("/api/reconciliation/manual")
def reconcile_manual(request: ManualReconciliationRequest, actor: Actor = Depends(get_actor)):
    suggestion = orchestrator.reconcile_manual(
        request.org_id,
        request.shape,
        request.statement_ids,
        request.transaction_ids,
        actor,
        account_id=request.account_id,
    )
    return suggestion.to_dict()


@app.post("/api/reconciliation/transactions/{transaction_id}/desconciliar")
def desconciliar_transacao(
    transaction_id: str,
    request: Optional[ReasonRequest] = None,
    actor: Actor = Depends(get_actor),
):
    reason = request.reason if request else None
    counts = orchestrator.desconciliar_transacao(transaction_id, actor, reason)
    return {**counts.to_dict(), "total_lines_released": counts.total_lines_released}


@app.post("/api/counting/sessions")
def open_session(request: OpenSessionRequest, actor: Actor = Depends(get_actor)):
    counting_session = counting.open_sessao_contagem(
        request.org_id,
        request.service_date,
        request.period,
        actor=actor,
        branch_id=request.branch_id,
        event_id=request.event_id,
        tolerance_cents=request.tolerance_cents,
        compare_level=request.compare_level,
    )
    return counting_session.to_dict()


@app.get("/api/counting/sessions/{session_id}")
def get_session(session_id: str):
    return counting.get_session(session_id).to_dict()


@app.post("/api/counting/sessions/{session_id}/counts")
def submit_count(session_id: str, request: SubmitCountRequest, actor: Actor = Depends(get_actor)):
    submission = counting.submit_contagem(session_id, actor.user_id, request.values_by_category)
    return {
        "id": submission.id,
        "session_id": submission.session_id,
        "counter_id": submission.counter_id,
        "sequence": submission.sequence,
        "values_by_category": submission.values_by_category,
        "total_cents": submission.total_cents,
    }


@app.post("/api/counting/sessions/{session_id}/confront")
def confront_session(session_id: str, actor: Actor = Depends(get_actor)):
    return counting.confrontar_contagens(session_id, actor).to_dict()


@app.post("/api/counting/sessions/{session_id}/finalize")
def finalize_session(
    session_id: str,
    request: Optional[FinalizeRequest] = None,
    actor: Actor = Depends(get_actor),
):
    override_reason = request.override_reason if request else None
    return counting.finalizar_sessao(session_id, actor, override_reason).to_dict()


@app.post("/api/counting/sessions/{session_id}/reject")
def reject_session(session_id: str, request: RejectSessionRequest, actor: Actor = Depends(get_actor)):
    return counting.rejeitar_sessao(session_id, actor, request.reason).to_dict()


@app.get("/api/counting/sync-window")
def sync_window(org_id: str, branch_id: Optional[str] = None):
    window = counting.sync_window(org_id, branch_id)
    return {
        "start": window.start.isoformat(),
        "end": window.end.isoformat(),
        "last_closed_session_id": window.last_closed_session_id,
    }
