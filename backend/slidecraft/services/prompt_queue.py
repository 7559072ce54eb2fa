"""Durable queue of per-slide image-prompt tasks.

Every mutation that must be atomic (claim, requeue, dead-letter move) is a
single transaction whose UPDATE/DELETE re-checks the row state in its WHERE
clause, so concurrent workers never act on a task they do not own.

A claimed task carries its ``processed_at`` value as a fencing token: the
success and failure paths only touch the row while it is still the same
claim. A task recovered by the stale-claim sweeper and re-claimed by another
worker is therefore left alone by the original (late) worker.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from slidecraft.config import settings
from slidecraft.db import SessionLocal
from slidecraft.models import DeadLetterPromptTask, PromptTask, Slide, utcnow
from slidecraft.services.prompt_state import allowed_sources


logger = logging.getLogger("slidecraft.queue")

QUEUED = "queued"
PROCESSING = "processing"
FAILED = "failed"

REQUEUED = "requeued"
DEAD_LETTERED = "dead_lettered"
FAILED_IN_PLACE = "failed_in_place"
SKIPPED = "skipped"


@dataclass(frozen=True)
class TaskClaim:
    task_id: str
    slide_id: str
    request_id: str
    owner_id: str
    attempts: int
    claimed_at: datetime


def _error_text(error: BaseException | str | None) -> str:
    if error is None:
        return "Unknown error"
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    return str(error) or "Unknown error"


def set_slide_prompt_state(db: Session, slide_id: str, state: str, error: str | None = None) -> bool:
    """Stage a slide prompt-state change; illegal transitions are skipped, not written."""
    result = db.execute(
        update(Slide)
        .where(Slide.id == slide_id, Slide.prompt_state.in_(allowed_sources(state)))
        .values(prompt_state=state, prompt_error=error, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.debug("slide_prompt_state_unchanged slide=%s target=%s", slide_id, state)
        return False
    return True


def mark_slide_requeued(db: Session, slide_id: str, error: str | None) -> None:
    # generating/partial cannot go straight back to queued; record the failure first.
    set_slide_prompt_state(db, slide_id, FAILED, error)
    set_slide_prompt_state(db, slide_id, QUEUED, error)


def enqueue_in_batch(
    db: Session,
    *,
    slide_id: str,
    request_id: str,
    owner_id: str,
    attempts: int = 0,
) -> PromptTask:
    """Stage the idempotent upsert on ``db``; the caller commits.

    Any dead-letter copy of the slide's task is removed in the same write, so
    a task is never live and dead-lettered at once.
    """
    now = utcnow()
    db.execute(
        delete(DeadLetterPromptTask)
        .where(DeadLetterPromptTask.id == slide_id)
        .execution_options(synchronize_session=False)
    )
    row = db.get(PromptTask, slide_id)
    if row is None:
        row = PromptTask(id=slide_id)
        db.add(row)
    row.slide_id = slide_id
    row.request_id = request_id
    row.owner_id = owner_id
    row.status = QUEUED
    row.attempts = attempts
    row.priority = attempts
    row.queued_at = now
    row.processed_at = None
    row.failed_at = None
    return row


def enqueue(slide_id: str, request_id: str, owner_id: str, attempts: int = 0) -> None:
    for attempt in range(2):
        db = SessionLocal()
        try:
            enqueue_in_batch(db, slide_id=slide_id, request_id=request_id, owner_id=owner_id, attempts=attempts)
            db.commit()
            logger.info("task_enqueued task=%s request=%s attempts=%d", slide_id, request_id, attempts)
            return
        except IntegrityError:
            # A concurrent enqueue inserted the row first; the second pass updates it.
            db.rollback()
            if attempt:
                raise
        finally:
            db.close()


def get_task(task_id: str) -> PromptTask | None:
    db = SessionLocal()
    try:
        return db.get(PromptTask, task_id)
    finally:
        db.close()


def list_tasks(request_id: str) -> list[PromptTask]:
    db = SessionLocal()
    try:
        rows = db.scalars(
            select(PromptTask).where(PromptTask.request_id == request_id).order_by(PromptTask.queued_at.asc())
        ).all()
        return list(rows)
    finally:
        db.close()


def claim_task(task_id: str) -> TaskClaim | None:
    """Move one task from queued to processing; ``None`` when another worker owns it."""
    db = SessionLocal()
    try:
        now = utcnow()
        result = db.execute(
            update(PromptTask)
            .where(PromptTask.id == task_id, PromptTask.status == QUEUED)
            .values(status=PROCESSING, processed_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.rollback()
            return None

        row = db.get(PromptTask, task_id)
        claim = TaskClaim(
            task_id=row.id,
            slide_id=row.slide_id,
            request_id=row.request_id,
            owner_id=row.owner_id,
            attempts=row.attempts,
            claimed_at=now,
        )
        db.commit()
        return claim
    except SQLAlchemyError:
        db.rollback()
        raise
    finally:
        db.close()


def _claimed_by(claim: TaskClaim):
    return (
        PromptTask.id == claim.task_id,
        PromptTask.status == PROCESSING,
        PromptTask.processed_at == claim.claimed_at,
    )


def complete_task(claim: TaskClaim) -> bool:
    db = SessionLocal()
    try:
        result = db.execute(delete(PromptTask).where(*_claimed_by(claim)).execution_options(synchronize_session=False))
        db.commit()
        deleted = result.rowcount == 1
        if not deleted:
            logger.warning("task_complete_skipped task=%s reason=claim_superseded", claim.task_id)
        return deleted
    finally:
        db.close()


def fail_task(claim: TaskClaim, error: BaseException | str | None) -> str:
    """Record a failed attempt: requeue below the ceiling, dead-letter at it."""
    message = _error_text(error)
    attempts = claim.attempts + 1

    if attempts >= settings.prompt_queue_max_attempts:
        moved = move_to_dead_letter(claim.task_id, message, attempts=attempts, claimed_at=claim.claimed_at)
        if moved is None:
            return SKIPPED
        return DEAD_LETTERED if moved else FAILED_IN_PLACE

    db = SessionLocal()
    try:
        result = db.execute(
            update(PromptTask)
            .where(*_claimed_by(claim))
            .values(
                status=QUEUED,
                attempts=attempts,
                priority=attempts,
                queued_at=utcnow(),
                processed_at=None,
                error=message,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.rollback()
            logger.warning("task_requeue_skipped task=%s reason=claim_superseded", claim.task_id)
            return SKIPPED
        mark_slide_requeued(db, claim.slide_id, message)
        db.commit()
    finally:
        db.close()

    logger.info("task_requeued task=%s attempts=%d error=%s", claim.task_id, attempts, message)
    return REQUEUED


def requeue_with_progress(claim: TaskClaim, note: str | None = None) -> bool:
    """Put a task that made progress back at the head of the queue with a fresh attempt budget."""
    db = SessionLocal()
    try:
        result = db.execute(
            update(PromptTask)
            .where(*_claimed_by(claim))
            .values(
                status=QUEUED,
                attempts=0,
                priority=0,
                queued_at=utcnow(),
                processed_at=None,
                error=note,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.rollback()
            logger.warning("task_requeue_skipped task=%s reason=claim_superseded", claim.task_id)
            return False
        db.commit()
    finally:
        db.close()

    logger.info("task_requeued_with_progress task=%s note=%s", claim.task_id, note)
    return True


def move_to_dead_letter(
    task_id: str,
    reason: str,
    *,
    attempts: int,
    claimed_at: datetime | None = None,
) -> bool | None:
    """Copy the task into the dead-letter table and delete it, atomically.

    Returns True when moved, False when the store failed and the task was
    flagged ``failed`` in place instead, None when there was nothing to move.
    """
    db = SessionLocal()
    try:
        row = db.get(PromptTask, task_id)
        if row is None:
            return None

        stmt = delete(PromptTask).where(PromptTask.id == task_id)
        if claimed_at is not None:
            stmt = stmt.where(PromptTask.status == PROCESSING, PromptTask.processed_at == claimed_at)
        result = db.execute(stmt.execution_options(synchronize_session=False))
        if result.rowcount != 1:
            db.rollback()
            logger.warning("dead_letter_skipped task=%s reason=claim_superseded", task_id)
            return None

        now = utcnow()
        db.merge(
            DeadLetterPromptTask(
                id=row.id,
                slide_id=row.slide_id,
                request_id=row.request_id,
                owner_id=row.owner_id,
                status=FAILED,
                attempts=attempts,
                priority=attempts,
                queued_at=row.queued_at,
                processed_at=row.processed_at,
                error=reason,
                failed_at=now,
            )
        )
        set_slide_prompt_state(db, row.slide_id, FAILED, reason)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("dead_letter_move_failed task=%s", task_id)
        _mark_failed_in_place(task_id, reason, attempts)
        return False
    finally:
        db.close()

    logger.warning("task_dead_lettered task=%s attempts=%d error=%s", task_id, attempts, reason)
    return True


def _mark_failed_in_place(task_id: str, reason: str, attempts: int) -> None:
    db = SessionLocal()
    try:
        db.execute(
            update(PromptTask)
            .where(PromptTask.id == task_id)
            .values(status=FAILED, attempts=attempts, priority=attempts, error=reason, failed_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        row = db.get(PromptTask, task_id)
        if row is not None:
            set_slide_prompt_state(db, row.slide_id, FAILED, reason)
        db.commit()
    finally:
        db.close()


def sweep_stale_claims(limit: int | None = None, timeout_seconds: int | None = None) -> int:
    """Return abandoned claims to the queue without charging an attempt."""
    limit = int(limit or settings.prompt_queue_batch_size)
    timeout_seconds = int(timeout_seconds or settings.prompt_queue_stale_claim_seconds)
    cutoff = utcnow() - timedelta(seconds=timeout_seconds)
    message = f"Claim timed out after {timeout_seconds}s"

    db = SessionLocal()
    try:
        stale = db.execute(
            select(PromptTask.id, PromptTask.processed_at)
            .where(PromptTask.status == PROCESSING, PromptTask.processed_at < cutoff)
            .order_by(PromptTask.processed_at.asc())
            .limit(limit)
        ).all()

        recovered = 0
        for task_id, processed_at in stale:
            result = db.execute(
                update(PromptTask)
                .where(
                    PromptTask.id == task_id,
                    PromptTask.status == PROCESSING,
                    PromptTask.processed_at == processed_at,
                )
                .values(status=QUEUED, processed_at=None, error=message)
                .execution_options(synchronize_session=False)
            )
            recovered += result.rowcount
        db.commit()
    finally:
        db.close()

    if recovered:
        logger.warning("stale_claims_recovered count=%d timeout_sec=%d", recovered, timeout_seconds)
    return recovered


def select_dispatch_batch(limit: int | None = None) -> list[str]:
    """Queued task ids, fewest attempts first, oldest first within a tier."""
    limit = int(limit or settings.prompt_queue_batch_size)
    db = SessionLocal()
    try:
        rows = db.scalars(
            select(PromptTask.id)
            .where(PromptTask.status == QUEUED)
            .order_by(PromptTask.priority.asc(), PromptTask.queued_at.asc(), PromptTask.id.asc())
            .limit(limit)
        ).all()
        return list(rows)
    finally:
        db.close()


def garbage_collect_dead_letters(retention_days: int | None = None, batch_size: int | None = None) -> int:
    retention_days = int(retention_days or settings.dead_letter_retention_days)
    batch_size = int(batch_size or settings.dead_letter_gc_batch_size)
    cutoff = utcnow() - timedelta(days=retention_days)

    db = SessionLocal()
    try:
        ids = db.scalars(
            select(DeadLetterPromptTask.id)
            .where(DeadLetterPromptTask.failed_at < cutoff)
            .order_by(DeadLetterPromptTask.failed_at.asc())
            .limit(batch_size)
        ).all()
        if not ids:
            return 0
        db.execute(
            delete(DeadLetterPromptTask)
            .where(DeadLetterPromptTask.id.in_(ids))
            .execution_options(synchronize_session=False)
        )
        db.commit()
    finally:
        db.close()

    logger.info("dead_letters_collected count=%d retention_days=%d", len(ids), retention_days)
    return len(ids)


def list_dead_letters(request_id: str | None = None, limit: int = 100) -> list[DeadLetterPromptTask]:
    db = SessionLocal()
    try:
        stmt = select(DeadLetterPromptTask)
        if request_id:
            stmt = stmt.where(DeadLetterPromptTask.request_id == request_id)
        rows = db.scalars(stmt.order_by(DeadLetterPromptTask.failed_at.desc()).limit(max(1, limit))).all()
        return list(rows)
    finally:
        db.close()


def queue_stats() -> dict[str, int]:
    db = SessionLocal()
    try:
        counts = {QUEUED: 0, PROCESSING: 0, FAILED: 0}
        for status, count in db.execute(select(PromptTask.status, func.count()).group_by(PromptTask.status)).all():
            counts[status] = int(count)
        counts[DEAD_LETTERED] = int(db.scalar(select(func.count()).select_from(DeadLetterPromptTask)) or 0)
        return counts
    finally:
        db.close()
