import pytest
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from slidecraft.db import SessionLocal
from slidecraft.models import DeadLetterPromptTask, Slide
from slidecraft.services import prompt_queue
from slidecraft.services.retry_service import retry


def _exhaust(task_id):
    prompt_queue.enqueue(task_id, "req-1", "teacher-1", attempts=4)
    claim = prompt_queue.claim_task(task_id)
    assert prompt_queue.fail_task(claim, "boom") == prompt_queue.DEAD_LETTERED


def _dead_letter_ids():
    db = SessionLocal()
    try:
        return sorted(row.id for row in db.query(DeadLetterPromptTask).all())
    finally:
        db.close()


@pytest.fixture
def seeded(make_request, make_slide):
    make_request()
    for slide_id in ("s1", "s2", "s3"):
        make_slide(slide_id)


def test_retry_single_dead_lettered_slide(seeded):
    _exhaust("s1")

    result = retry("req-1", "s1")

    assert result.ok is True
    assert result.task_ids == ["s1"]
    assert _dead_letter_ids() == []
    task = prompt_queue.get_task("s1")
    assert task.status == prompt_queue.QUEUED
    assert task.attempts == 0
    assert task.priority == 0
    db = SessionLocal()
    try:
        assert db.get(Slide, "s1").prompt_state == prompt_queue.QUEUED
    finally:
        db.close()


def test_retry_all_failed_tasks_of_request(seeded, monkeypatch):
    _exhaust("s1")
    prompt_queue.enqueue("s2", "req-1", "teacher-1", attempts=4)
    claim = prompt_queue.claim_task("s2")
    with monkeypatch.context() as patch:

        def broken_merge(self, instance, **kwargs):
            raise SQLAlchemyError("dead letter table unavailable")

        patch.setattr(Session, "merge", broken_merge)
        assert prompt_queue.fail_task(claim, "boom") == prompt_queue.FAILED_IN_PLACE
    prompt_queue.enqueue("s3", "req-1", "teacher-1", attempts=2)

    result = retry("req-1")

    assert result.ok is True
    assert result.task_ids == ["s1", "s2"]
    assert _dead_letter_ids() == []
    tasks = {task.id: task for task in prompt_queue.list_tasks("req-1")}
    assert tasks["s1"].attempts == 0
    assert tasks["s2"].attempts == 0
    assert tasks["s2"].status == prompt_queue.QUEUED
    # Untouched: still in its normal retry cycle.
    assert tasks["s3"].attempts == 2


def test_retry_with_nothing_failed_is_ok_and_empty(seeded):
    result = retry("req-1")

    assert result.ok is True
    assert result.task_ids == []


def test_retry_unknown_request_or_slide(seeded, make_request, make_slide):
    assert retry("missing").ok is False
    assert retry("missing").error == "Request not found"

    make_request("req-2")
    make_slide("other", request_id="req-2")
    result = retry("req-1", "other")
    assert result.ok is False
    assert result.error == "Slide not found"
