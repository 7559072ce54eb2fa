from __future__ import annotations

import json
import logging

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import select
from sqlalchemy.orm import Session

from slidecraft.config import settings
from slidecraft.db import Base, engine, get_db
from slidecraft.errors import RequestNotFound
from slidecraft.models import GenerationRequest, Slide
from slidecraft.schemas import (
    DeadLetterOut,
    GenerateDeckRequest,
    GenerationStateOut,
    PromptTaskOut,
    QueueStatsOut,
    RequestEventOut,
    RetryOut,
    RetryRequest,
    SlideOut,
)
from slidecraft.services import prompt_queue
from slidecraft.services.generation_state import get_state
from slidecraft.services.image_prompt_service import list_slide_prompts
from slidecraft.services.orchestrator import create_generation_request
from slidecraft.services.request_trace import decode_payload, list_request_events
from slidecraft.services.retry_service import retry
from slidecraft.tasks import dispatch_prompt_tasks, run_generation_job, shutdown_local_dispatcher


logger = logging.getLogger("slidecraft")

app = FastAPI(title=settings.app_name)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_origin, "*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class _AccessLogPathFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not settings.suppress_request_poll_access_logs:
            return True

        message = record.getMessage()
        if '"GET /api/requests/' in message:
            return False
        if '"OPTIONS /api/requests/' in message:
            return False
        return True


def _configure_runtime_logging() -> None:
    level = getattr(logging, str(settings.log_level).upper(), logging.INFO)
    logging.getLogger("slidecraft").setLevel(level)

    if settings.suppress_httpx_info_logs:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
        logging.getLogger("openai").setLevel(logging.WARNING)
        logging.getLogger("anthropic").setLevel(logging.WARNING)

    access_logger = logging.getLogger("uvicorn.access")
    if settings.suppress_request_poll_access_logs and not any(
        isinstance(row, _AccessLogPathFilter) for row in access_logger.filters
    ):
        access_logger.addFilter(_AccessLogPathFilter())


@app.on_event("startup")
def on_startup():
    _configure_runtime_logging()
    Base.metadata.create_all(bind=engine)


@app.on_event("shutdown")
def on_shutdown():
    shutdown_local_dispatcher()


@app.get("/health")
def health():
    return {"status": "ok"}


def _require_request(db: Session, request_id: str) -> GenerationRequest:
    row = db.get(GenerationRequest, request_id)
    if not row:
        raise HTTPException(status_code=404, detail="Generation request not found")
    return row


@app.post(f"{settings.api_prefix}/decks/generate", response_model=GenerationStateOut)
def generate_deck(payload: GenerateDeckRequest):
    row = create_generation_request(**payload.model_dump())
    run_generation_job.delay(row.id)
    return row


@app.get(f"{settings.api_prefix}/requests/{{request_id}}", response_model=GenerationStateOut)
def get_generation_state(request_id: str):
    try:
        return get_state(request_id)
    except RequestNotFound:
        raise HTTPException(status_code=404, detail="Generation request not found")


@app.get(f"{settings.api_prefix}/requests/{{request_id}}/events", response_model=list[RequestEventOut])
def get_request_events(
    request_id: str,
    limit: int = Query(default=200, ge=1, le=2000),
    db: Session = Depends(get_db),
):
    _require_request(db, request_id)
    return [
        RequestEventOut(
            id=row.id,
            request_id=row.request_id,
            ts=row.ts,
            stage=row.stage,
            event_type=row.event_type,
            payload=decode_payload(row.payload_json),
            severity=row.severity,
        )
        for row in list_request_events(request_id, limit=limit)
    ]


@app.get(f"{settings.api_prefix}/requests/{{request_id}}/slides", response_model=list[SlideOut])
def get_request_slides(request_id: str, db: Session = Depends(get_db)):
    _require_request(db, request_id)
    rows = db.scalars(select(Slide).where(Slide.request_id == request_id).order_by(Slide.sort_order.asc())).all()
    return [
        SlideOut(
            id=row.id,
            sort_order=row.sort_order,
            title=row.title,
            content=json.loads(row.content_json or "[]"),
            speaker_notes=row.speaker_notes,
            image_prompt=row.image_prompt,
            image_prompts=[prompt.text for prompt in list_slide_prompts(db, row.id)],
            prompt_state=row.prompt_state,
            prompt_error=row.prompt_error,
        )
        for row in rows
    ]


@app.get(f"{settings.api_prefix}/requests/{{request_id}}/tasks", response_model=list[PromptTaskOut])
def get_request_tasks(request_id: str, db: Session = Depends(get_db)):
    _require_request(db, request_id)
    return prompt_queue.list_tasks(request_id)


@app.post(f"{settings.api_prefix}/requests/{{request_id}}/retry", response_model=RetryOut)
def retry_prompt_generation(request_id: str, payload: RetryRequest, db: Session = Depends(get_db)):
    _require_request(db, request_id)
    result = retry(request_id, payload.slide_id)
    if result.ok and result.task_ids:
        try:
            dispatch_prompt_tasks(result.task_ids)
        except Exception as exc:
            # Enqueued durably; the periodic batch picks the tasks up.
            logger.warning("retry_dispatch_deferred request=%s reason=%s", request_id, exc)
    return RetryOut(ok=result.ok, task_ids=result.task_ids, error=result.error)


@app.get(f"{settings.api_prefix}/queue/stats", response_model=QueueStatsOut)
def get_queue_stats():
    return QueueStatsOut(**prompt_queue.queue_stats())


@app.get(f"{settings.api_prefix}/queue/dead-letters", response_model=list[DeadLetterOut])
def get_dead_letters(
    request_id: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
):
    return prompt_queue.list_dead_letters(request_id, limit=limit)
