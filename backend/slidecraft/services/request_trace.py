from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from slidecraft.config import settings
from slidecraft.db import SessionLocal
from slidecraft.models import RequestEvent, utcnow


logger = logging.getLogger("slidecraft.jobs")


def _safe_json(value: Any) -> str:
    try:
        return json.dumps(value if value is not None else {}, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return "{}"


def record_request_event(
    *,
    request_id: str,
    stage: str,
    event_type: str,
    payload: dict[str, Any] | None = None,
    severity: str = "info",
) -> None:
    if not settings.persist_request_events:
        return
    db = SessionLocal()
    try:
        row = RequestEvent(
            request_id=request_id,
            ts=utcnow(),
            stage=stage,
            event_type=event_type,
            payload_json=_safe_json(payload),
            severity=severity,
        )
        db.add(row)
        db.commit()
    except SQLAlchemyError:
        # Trace persistence must never break the pipeline.
        db.rollback()
        logger.debug("request_event_persist_failed request=%s event=%s", request_id, event_type)
    finally:
        db.close()


def _event_stage_from_message(message: str) -> str:
    lower = str(message or "").lower()
    for stage in ("research", "draft", "persist", "final", "prompt", "retry"):
        if stage in lower:
            return {"draft": "drafting", "persist": "persisting", "final": "finalizing"}.get(stage, stage)
    if "state_update" in lower:
        return "state"
    return "job"


def request_log(request_id: str, message: str, **fields) -> None:
    """Log a pipeline step and persist it as a request trace event."""
    if request_id:
        record_request_event(
            request_id=request_id,
            stage=_event_stage_from_message(message),
            event_type=message,
            payload=fields,
            severity="warning" if any(word in message for word in ("warning", "failed", "deferred", "fallback")) else "info",
        )

    if not settings.verbose_ai_trace and not message.endswith(("_start", "_complete", "_failed")):
        return
    details = " ".join(
        f"{key}={json.dumps(value, ensure_ascii=False, default=str)}" for key, value in fields.items() if value is not None
    )
    if details:
        logger.info("request=%s %s | %s", request_id, message, details)
    else:
        logger.info("request=%s %s", request_id, message)


def list_request_events(request_id: str, *, limit: int = 400) -> list[RequestEvent]:
    db = SessionLocal()
    try:
        rows = db.scalars(
            select(RequestEvent)
            .where(RequestEvent.request_id == request_id)
            .order_by(RequestEvent.ts.asc(), RequestEvent.id.asc())
            .limit(max(1, min(limit, settings.request_events_page_size)))
        ).all()
        return list(rows)
    finally:
        db.close()


def decode_payload(payload_json: str | None) -> dict[str, Any]:
    if not payload_json:
        return {}
    try:
        parsed = json.loads(payload_json)
        return parsed if isinstance(parsed, dict) else {"value": parsed}
    except ValueError:
        return {}
