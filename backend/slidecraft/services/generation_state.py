from __future__ import annotations

import logging
from enum import Enum

from slidecraft.db import SessionLocal
from slidecraft.errors import InvalidPhaseTransition, RequestNotFound
from slidecraft.models import GenerationRequest, utcnow


logger = logging.getLogger("slidecraft.jobs")


class Phase(str, Enum):
    RESEARCH = "research"
    DRAFTING = "drafting"
    PERSISTING = "persisting"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_PHASES = {Phase.COMPLETED, Phase.FAILED}

_NEXT_PHASE = {
    Phase.RESEARCH: Phase.DRAFTING,
    Phase.DRAFTING: Phase.PERSISTING,
    Phase.PERSISTING: Phase.FINALIZING,
    Phase.FINALIZING: Phase.COMPLETED,
}

PHASE_LABELS = {
    Phase.RESEARCH: "Researching content",
    Phase.DRAFTING: "Drafting slides",
    Phase.PERSISTING: "Saving slides",
    Phase.FINALIZING: "Finalizing presentation",
    Phase.COMPLETED: "Presentation ready",
    Phase.FAILED: "Generation failed",
}


def validate_transition(current: Phase, new: Phase) -> bool:
    if current in TERMINAL_PHASES:
        return False
    if new == current or new == Phase.FAILED:
        return True
    return _NEXT_PHASE.get(current) == new


def _status_for(phase: Phase) -> str:
    if phase == Phase.COMPLETED:
        return "completed"
    if phase == Phase.FAILED:
        return "failed"
    return "running"


def advance(
    request_id: str,
    phase: Phase | str,
    progress: int,
    message: str | None = None,
    *,
    error_message: str | None = None,
) -> GenerationRequest:
    """Write phase, progress and message together, enforcing the phase machine."""
    new_phase = Phase(phase)
    if not 0 <= progress <= 100:
        raise InvalidPhaseTransition(f"Progress out of range: {progress}")

    db = SessionLocal()
    try:
        # Row lock where the backend supports it; sqlite serializes writers anyway.
        row = db.get(GenerationRequest, request_id, with_for_update=True)
        if row is None:
            raise RequestNotFound(request_id)

        current = Phase(row.phase)
        if not validate_transition(current, new_phase):
            raise InvalidPhaseTransition(f"{current.value} -> {new_phase.value} is not allowed")
        if new_phase != Phase.FAILED and progress < row.progress:
            raise InvalidPhaseTransition(f"Progress cannot move backward ({row.progress} -> {progress})")

        now = utcnow()
        row.phase = new_phase.value
        row.progress = progress
        row.message = message if message is not None else PHASE_LABELS[new_phase]
        row.status = _status_for(new_phase)
        row.updated_at = now
        if error_message is not None:
            row.error_message = error_message
        if new_phase in TERMINAL_PHASES:
            row.completed_at = now
        db.add(row)
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

    logger.info(
        "state_update request=%s phase=%s progress=%d message=%s",
        request_id,
        new_phase.value,
        progress,
        row.message,
    )
    return row


def get_state(request_id: str) -> GenerationRequest:
    db = SessionLocal()
    try:
        row = db.get(GenerationRequest, request_id)
        if row is None:
            raise RequestNotFound(request_id)
        return row
    finally:
        db.close()
