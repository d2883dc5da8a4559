"""
Engagement Engine API Routes.

Thin HTTP layer over ``EngagementEngine``. The engine instance is built at
startup and lives on ``app.state.engine``.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field, field_validator

from database.models import naive_utc
from scheduler.engine import EngagementEngine
from scheduler.errors import ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/engine")


# Models
class ProcessRequest(BaseModel):
    """Optional clock override for a sweep."""
    now: Optional[datetime] = None

    @field_validator("now")
    @classmethod
    def as_naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return naive_utc(value)


class InboundMessage(BaseModel):
    """Customer reply received from the SMS gateway."""
    body: str = Field(..., min_length=1)
    from_number: Optional[str] = None
    received_at: Optional[datetime] = None

    @field_validator("received_at")
    @classmethod
    def as_naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return naive_utc(value)


class InboundResponse(BaseModel):
    message_id: str
    lead_id: str
    opted_out: bool
    pending_human_response: bool
    response_deadline: Optional[datetime] = None


class SequenceResponse(BaseModel):
    lead_id: str
    entries: int
    status: str


class PauseRequest(BaseModel):
    reason: str = "manual"


class PauseResponse(BaseModel):
    lead_id: str
    paused: bool


def get_engine(request: Request) -> EngagementEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Engagement engine not initialized")
    return engine


def _http_error(error: ValidationError) -> HTTPException:
    status_code = 404 if "not found" in str(error).lower() else 400
    return HTTPException(status_code=status_code, detail=str(error))


# Routes
@router.post("/process")
async def process_sweep(request: Request, payload: Optional[ProcessRequest] = None) -> Dict[str, Any]:
    """Run one engagement sweep and return its report."""
    engine = get_engine(request)
    now = payload.now if payload else None
    report = await engine.process(now=now)
    return report.to_dict()


@router.post("/leads/{lead_id}/inbound", response_model=InboundResponse)
async def record_inbound(lead_id: str, message: InboundMessage, request: Request):
    """Record a customer reply and arm the AI takeover timer."""
    engine = get_engine(request)
    try:
        result = await engine.record_inbound(
            lead_id, message.body, now=message.received_at, from_number=message.from_number
        )
    except ValidationError as e:
        raise _http_error(e)
    return InboundResponse(lead_id=lead_id, **result)


@router.post("/leads/{lead_id}/aggressive-sequence", response_model=SequenceResponse)
async def start_aggressive_sequence(lead_id: str, request: Request):
    """Plan the 14-day aggressive sequence for an unresponsive lead."""
    engine = get_engine(request)
    try:
        entries = await engine.start_aggressive_sequence(lead_id)
    except ValidationError as e:
        raise _http_error(e)
    logger.info(f"Aggressive sequence started for lead {lead_id} ({entries} entries)")
    return SequenceResponse(lead_id=lead_id, entries=entries, status="scheduled")


@router.post("/leads/{lead_id}/aggressive-sequence/pause", response_model=PauseResponse)
async def pause_aggressive_sequence(lead_id: str, request: Request, payload: Optional[PauseRequest] = None):
    engine = get_engine(request)
    reason = payload.reason if payload else "manual"
    paused = await engine.pause_aggressive_sequence(lead_id, reason=reason)
    if not paused:
        raise HTTPException(status_code=404, detail=f"Lead {lead_id} not found")
    return PauseResponse(lead_id=lead_id, paused=True)


@router.post("/leads/{lead_id}/aggressive-sequence/resume", response_model=SequenceResponse)
async def resume_aggressive_sequence(lead_id: str, request: Request):
    engine = get_engine(request)
    try:
        remaining = await engine.resume_aggressive_sequence(lead_id)
    except ValidationError as e:
        raise _http_error(e)
    return SequenceResponse(lead_id=lead_id, entries=remaining, status="resumed")


@router.get("/insights")
async def get_insights(request: Request, limit: int = Query(10, ge=1, le=100)) -> List[Dict[str, Any]]:
    """Most recent optimization insights from the learning loop."""
    engine = get_engine(request)
    return await engine.learning.get_optimization_insights(limit=limit)


@router.get("/triggers/pending")
async def get_pending_triggers(request: Request, limit: int = Query(50, ge=1, le=500)) -> List[Dict[str, Any]]:
    engine = get_engine(request)
    return await engine.trigger_engine.get_pending_triggers(limit=limit)


@router.post("/triggers/{trigger_id}/processed")
async def mark_trigger_processed(trigger_id: str, request: Request) -> Dict[str, Any]:
    engine = get_engine(request)
    if not await engine.trigger_engine.mark_trigger_processed(trigger_id):
        raise HTTPException(status_code=404, detail=f"Trigger {trigger_id} not found")
    return {"trigger_id": trigger_id, "processed": True}


@router.get("/leads/{lead_id}/prediction")
async def get_prediction(lead_id: str, request: Request) -> Dict[str, Any]:
    """Conversion probability, churn risk and optimal contact time for a lead."""
    engine = get_engine(request)
    prediction = await engine.scorer.predict(lead_id)
    if prediction is None:
        raise HTTPException(status_code=404, detail=f"Lead {lead_id} not found")
    return {
        "prediction": prediction.to_dict(),
        "decisions": [d.to_dict() for d in engine.scorer.decide(prediction)],
    }


@router.get("/leads/{lead_id}/analysis")
async def get_analysis(lead_id: str, request: Request) -> Dict[str, Any]:
    engine = get_engine(request)
    analysis = await engine.analyze_lead(lead_id)
    if analysis is None:
        raise HTTPException(status_code=404, detail=f"Lead {lead_id} not found")
    return analysis


@router.get("/leads/{lead_id}/triggers/context")
async def get_trigger_context(lead_id: str, request: Request) -> Dict[str, Any]:
    """Behavioral metrics the trigger rules are evaluated against."""
    engine = get_engine(request)
    context = await engine.trigger_engine.get_detailed_context(lead_id)
    if context is None:
        raise HTTPException(status_code=404, detail=f"Lead {lead_id} not found")
    return context
