from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from slidecraft.db import SessionLocal
from slidecraft.models import DeadLetterPromptTask, GenerationRequest, PromptTask, Slide
from slidecraft.services.prompt_queue import FAILED, enqueue_in_batch, mark_slide_requeued


logger = logging.getLogger("slidecraft.queue")


@dataclass
class RetryResult:
    ok: bool
    task_ids: list[str] = field(default_factory=list)
    error: str | None = None


def retry(request_id: str, slide_id: str | None = None) -> RetryResult:
    """Re-enqueue one slide's task, or every failed task of a request, at attempts=0.

    Reports only whether the enqueue succeeded; generation runs later.
    """
    db = SessionLocal()
    try:
        request = db.get(GenerationRequest, request_id)
        if request is None:
            return RetryResult(ok=False, error="Request not found")

        if slide_id:
            slide = db.get(Slide, slide_id)
            if slide is None or slide.request_id != request_id:
                return RetryResult(ok=False, error="Slide not found")
            targets = [slide_id]
        else:
            dead = db.scalars(
                select(DeadLetterPromptTask.id).where(DeadLetterPromptTask.request_id == request_id)
            ).all()
            failed_in_place = db.scalars(
                select(PromptTask.id).where(PromptTask.request_id == request_id, PromptTask.status == FAILED)
            ).all()
            targets = sorted(set(dead) | set(failed_in_place))

        for task_id in targets:
            enqueue_in_batch(db, slide_id=task_id, request_id=request_id, owner_id=request.owner_id, attempts=0)
            mark_slide_requeued(db, task_id, None)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("retry_enqueue_failed request=%s slide=%s", request_id, slide_id)
        return RetryResult(ok=False, error=str(exc))
    finally:
        db.close()

    logger.info("retry_enqueued request=%s slide=%s count=%d", request_id, slide_id, len(targets))
    return RetryResult(ok=True, task_ids=targets)
