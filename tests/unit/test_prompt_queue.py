import threading
from datetime import timedelta

import pytest
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from slidecraft.db import SessionLocal
from slidecraft.models import DeadLetterPromptTask, PromptTask, Slide, utcnow
from slidecraft.services import prompt_queue


@pytest.fixture
def seeded(make_request, make_slide):
    make_request()
    for slide_id in ("s1", "s2", "s3"):
        make_slide(slide_id)


def _set_task(task_id: str, **values) -> None:
    db = SessionLocal()
    try:
        db.execute(update(PromptTask).where(PromptTask.id == task_id).values(**values))
        db.commit()
    finally:
        db.close()


def _slide(slide_id: str) -> Slide:
    db = SessionLocal()
    try:
        return db.get(Slide, slide_id)
    finally:
        db.close()


def _dead_letter(task_id: str) -> DeadLetterPromptTask | None:
    db = SessionLocal()
    try:
        return db.get(DeadLetterPromptTask, task_id)
    finally:
        db.close()


def test_enqueue_is_idempotent_per_slide(seeded):
    prompt_queue.enqueue("s1", "req-1", "teacher-1")
    prompt_queue.enqueue("s1", "req-1", "teacher-1", attempts=2)

    tasks = prompt_queue.list_tasks("req-1")
    assert len(tasks) == 1
    task = tasks[0]
    assert task.id == "s1"
    assert task.status == prompt_queue.QUEUED
    assert task.attempts == 2
    assert task.priority == 2
    assert task.processed_at is None


def test_claim_moves_task_to_processing(seeded):
    prompt_queue.enqueue("s1", "req-1", "teacher-1")

    claim = prompt_queue.claim_task("s1")

    assert claim is not None
    assert claim.slide_id == "s1"
    assert claim.request_id == "req-1"
    assert claim.attempts == 0
    task = prompt_queue.get_task("s1")
    assert task.status == prompt_queue.PROCESSING
    assert task.processed_at == claim.claimed_at


def test_claim_returns_none_for_missing_or_owned_task(seeded):
    assert prompt_queue.claim_task("missing") is None

    prompt_queue.enqueue("s1", "req-1", "teacher-1")
    assert prompt_queue.claim_task("s1") is not None
    assert prompt_queue.claim_task("s1") is None


def test_concurrent_claims_have_exactly_one_winner(seeded):
    prompt_queue.enqueue("s1", "req-1", "teacher-1")
    workers = 6
    barrier = threading.Barrier(workers)
    results = []
    lock = threading.Lock()

    def contend():
        barrier.wait()
        claim = prompt_queue.claim_task("s1")
        with lock:
            results.append(claim)

    threads = [threading.Thread(target=contend) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert len(results) == workers
    assert len([row for row in results if row is not None]) == 1


def test_complete_task_deletes_row(seeded):
    prompt_queue.enqueue("s1", "req-1", "teacher-1")
    claim = prompt_queue.claim_task("s1")

    assert prompt_queue.complete_task(claim) is True
    assert prompt_queue.get_task("s1") is None
    assert prompt_queue.complete_task(claim) is False


def test_failures_increment_attempts_and_priority(seeded):
    prompt_queue.enqueue("s1", "req-1", "teacher-1")

    for expected in (1, 2, 3):
        claim = prompt_queue.claim_task("s1")
        assert prompt_queue.fail_task(claim, RuntimeError("provider timeout")) == prompt_queue.REQUEUED
        task = prompt_queue.get_task("s1")
        assert task.status == prompt_queue.QUEUED
        assert task.attempts == expected
        assert task.priority == expected
        assert task.error == "provider timeout"
        assert task.processed_at is None

    slide = _slide("s1")
    assert slide.prompt_state == prompt_queue.QUEUED
    assert slide.prompt_error == "provider timeout"


def test_fourth_attempt_requeues_fifth_dead_letters(seeded):
    prompt_queue.enqueue("s1", "req-1", "teacher-1", attempts=3)
    claim = prompt_queue.claim_task("s1")
    assert prompt_queue.fail_task(claim, "boom") == prompt_queue.REQUEUED
    assert prompt_queue.get_task("s1").attempts == 4

    claim = prompt_queue.claim_task("s1")
    assert prompt_queue.fail_task(claim, "boom again") == prompt_queue.DEAD_LETTERED

    assert prompt_queue.get_task("s1") is None
    dead = _dead_letter("s1")
    assert dead is not None
    assert dead.attempts == 5
    assert dead.status == prompt_queue.FAILED
    assert dead.error == "boom again"
    assert dead.failed_at is not None
    slide = _slide("s1")
    assert slide.prompt_state == prompt_queue.FAILED
    assert slide.prompt_error == "boom again"


def test_late_worker_cannot_touch_recovered_claim(seeded):
    prompt_queue.enqueue("s1", "req-1", "teacher-1")
    stale_claim = prompt_queue.claim_task("s1")
    _set_task("s1", processed_at=utcnow() - timedelta(seconds=600))

    assert prompt_queue.sweep_stale_claims(timeout_seconds=300) == 1
    fresh_claim = prompt_queue.claim_task("s1")
    assert fresh_claim is not None

    assert prompt_queue.complete_task(stale_claim) is False
    assert prompt_queue.fail_task(stale_claim, "late") == prompt_queue.SKIPPED
    task = prompt_queue.get_task("s1")
    assert task.status == prompt_queue.PROCESSING
    assert task.processed_at == fresh_claim.claimed_at


def test_sweep_recovers_only_expired_claims(seeded):
    for slide_id in ("s1", "s2"):
        prompt_queue.enqueue(slide_id, "req-1", "teacher-1")
        prompt_queue.claim_task(slide_id)
    _set_task("s1", processed_at=utcnow() - timedelta(seconds=301))
    _set_task("s2", processed_at=utcnow() - timedelta(seconds=30))

    recovered = prompt_queue.sweep_stale_claims(timeout_seconds=300)

    assert recovered == 1
    task = prompt_queue.get_task("s1")
    assert task.status == prompt_queue.QUEUED
    assert task.processed_at is None
    assert task.attempts == 0
    assert task.error == "Claim timed out after 300s"
    assert prompt_queue.get_task("s2").status == prompt_queue.PROCESSING


def test_enqueue_clears_dead_letter_copy(seeded):
    prompt_queue.enqueue("s1", "req-1", "teacher-1", attempts=4)
    claim = prompt_queue.claim_task("s1")
    assert prompt_queue.fail_task(claim, "boom") == prompt_queue.DEAD_LETTERED
    assert _dead_letter("s1") is not None

    prompt_queue.enqueue("s1", "req-1", "teacher-1")

    task = prompt_queue.get_task("s1")
    assert task.status == prompt_queue.QUEUED
    assert task.attempts == 0
    assert _dead_letter("s1") is None
    assert prompt_queue.queue_stats()["dead_lettered"] == 0


def test_sweep_limit_caps_recovered_claims(seeded):
    task_ids = [f"t{idx}" for idx in range(12)]
    for task_id in task_ids:
        prompt_queue.enqueue(task_id, "req-1", "teacher-1")
        prompt_queue.claim_task(task_id)
        _set_task(task_id, processed_at=utcnow() - timedelta(seconds=600))

    assert prompt_queue.sweep_stale_claims(limit=10, timeout_seconds=300) == 10

    statuses = [prompt_queue.get_task(task_id).status for task_id in task_ids]
    assert statuses.count(prompt_queue.QUEUED) == 10
    assert statuses.count(prompt_queue.PROCESSING) == 2
    assert prompt_queue.sweep_stale_claims(limit=10, timeout_seconds=300) == 2


def test_completed_slide_is_not_moved_back_to_queued(seeded):
    db = SessionLocal()
    try:
        db.execute(update(Slide).where(Slide.id == "s1").values(prompt_state="completed"))
        db.commit()
        assert prompt_queue.set_slide_prompt_state(db, "s1", prompt_queue.QUEUED) is False
        assert prompt_queue.set_slide_prompt_state(db, "s2", prompt_queue.QUEUED) is True
        db.commit()
    finally:
        db.close()

    assert _slide("s1").prompt_state == "completed"
    assert _slide("s2").prompt_state == prompt_queue.QUEUED


def test_requeue_with_progress_resets_attempt_budget(seeded):
    prompt_queue.enqueue("s1", "req-1", "teacher-1", attempts=3)
    claim = prompt_queue.claim_task("s1")

    assert prompt_queue.requeue_with_progress(claim, "1 of 3 prompts missing") is True
    assert prompt_queue.requeue_with_progress(claim, "late") is False

    task = prompt_queue.get_task("s1")
    assert task.status == prompt_queue.QUEUED
    assert task.attempts == 0
    assert task.priority == 0
    assert task.processed_at is None
    assert task.error == "1 of 3 prompts missing"


def test_dispatch_batch_orders_by_priority_then_age(seeded):
    now = utcnow()
    prompt_queue.enqueue("s1", "req-1", "teacher-1", attempts=2)
    prompt_queue.enqueue("s2", "req-1", "teacher-1")
    prompt_queue.enqueue("s3", "req-1", "teacher-1")
    _set_task("s2", queued_at=now - timedelta(minutes=1))
    _set_task("s3", queued_at=now - timedelta(minutes=5))

    assert prompt_queue.select_dispatch_batch(10) == ["s3", "s2", "s1"]
    assert prompt_queue.select_dispatch_batch(2) == ["s3", "s2"]


def test_dead_letter_gc_respects_retention_boundary(seeded):
    now = utcnow()
    db = SessionLocal()
    try:
        for task_id, age in (("old", timedelta(days=30, minutes=1)), ("young", timedelta(days=29, hours=23))):
            db.add(
                DeadLetterPromptTask(
                    id=task_id,
                    slide_id=task_id,
                    request_id="req-1",
                    owner_id="teacher-1",
                    status=prompt_queue.FAILED,
                    attempts=5,
                    priority=5,
                    queued_at=now - age,
                    error="boom",
                    failed_at=now - age,
                )
            )
        db.commit()
    finally:
        db.close()

    assert prompt_queue.garbage_collect_dead_letters(retention_days=30) == 1
    assert _dead_letter("old") is None
    assert _dead_letter("young") is not None
    assert prompt_queue.garbage_collect_dead_letters(retention_days=30) == 0


def test_dead_letter_store_failure_marks_task_failed_in_place(seeded, monkeypatch):
    prompt_queue.enqueue("s1", "req-1", "teacher-1", attempts=4)
    claim = prompt_queue.claim_task("s1")

    def broken_merge(self, instance, **kwargs):
        raise SQLAlchemyError("dead letter table unavailable")

    with monkeypatch.context() as patch:
        patch.setattr(Session, "merge", broken_merge)
        assert prompt_queue.fail_task(claim, "boom") == prompt_queue.FAILED_IN_PLACE

    task = prompt_queue.get_task("s1")
    assert task is not None
    assert task.status == prompt_queue.FAILED
    assert task.attempts == 5
    assert task.error == "boom"
    assert task.failed_at is not None
    assert _dead_letter("s1") is None
    assert prompt_queue.select_dispatch_batch(10) == []


def test_queue_stats_counts_each_state(seeded):
    prompt_queue.enqueue("s1", "req-1", "teacher-1")
    prompt_queue.enqueue("s2", "req-1", "teacher-1")
    prompt_queue.enqueue("s3", "req-1", "teacher-1", attempts=4)
    prompt_queue.claim_task("s2")
    prompt_queue.fail_task(prompt_queue.claim_task("s3"), "boom")

    assert prompt_queue.queue_stats() == {
        "queued": 1,
        "processing": 1,
        "failed": 0,
        "dead_lettered": 1,
    }
    assert [row.id for row in prompt_queue.list_dead_letters("req-1")] == ["s3"]
    assert prompt_queue.list_dead_letters("req-other") == []
