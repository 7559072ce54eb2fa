from __future__ import annotations

import logging
import threading

from slidecraft.celery_app import celery_app
from slidecraft.config import settings
from slidecraft.services import prompt_queue
from slidecraft.services.dispatcher import BatchDispatcher, ImmediateDispatcher, NOT_CLAIMED
from slidecraft.services.image_prompt_service import generate_image_prompt_for_slide
from slidecraft.services.orchestrator import GenerationOrchestrator


logger = logging.getLogger("slidecraft.jobs")

_local_dispatcher: ImmediateDispatcher | None = None
_local_dispatcher_lock = threading.Lock()


def _configure_worker_logging() -> None:
    level = getattr(logging, str(settings.log_level).upper(), logging.INFO)
    logging.getLogger("slidecraft").setLevel(level)
    if settings.suppress_httpx_info_logs:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
        logging.getLogger("openai").setLevel(logging.WARNING)
        logging.getLogger("anthropic").setLevel(logging.WARNING)


_configure_worker_logging()


def _schedule_with_countdown(delay_seconds: float, task_id: str) -> None:
    run_prompt_task_now.apply_async(args=[task_id], countdown=delay_seconds)


def get_local_dispatcher() -> ImmediateDispatcher:
    """Process-wide in-process dispatcher, used when ``dispatch_backend`` is ``local``."""
    global _local_dispatcher
    with _local_dispatcher_lock:
        if _local_dispatcher is None:
            _local_dispatcher = ImmediateDispatcher(generate_image_prompt_for_slide)
        return _local_dispatcher


def shutdown_local_dispatcher() -> None:
    global _local_dispatcher
    with _local_dispatcher_lock:
        dispatcher, _local_dispatcher = _local_dispatcher, None
    if dispatcher is not None:
        dispatcher.shutdown(wait=False)


def dispatch_prompt_tasks(task_ids: list[str]) -> None:
    """Start prompt tasks now instead of waiting for the next batch cycle."""
    for task_id in task_ids:
        if settings.dispatch_backend == "local":
            get_local_dispatcher().dispatch(task_id)
        else:
            run_prompt_task_now.delay(task_id)


@celery_app.task(name="slidecraft.tasks.run_generation_job")
def run_generation_job(request_id: str) -> None:
    GenerationOrchestrator(dispatch=dispatch_prompt_tasks).run(request_id)


@celery_app.task(name="slidecraft.tasks.run_prompt_task_now")
def run_prompt_task_now(task_id: str) -> str:
    claim = prompt_queue.claim_task(task_id)
    if claim is None:
        return NOT_CLAIMED
    dispatcher = ImmediateDispatcher(generate_image_prompt_for_slide, scheduler=_schedule_with_countdown)
    return dispatcher.process_claim(claim)


@celery_app.task(name="slidecraft.tasks.run_prompt_queue_batch")
def run_prompt_queue_batch() -> int:
    return BatchDispatcher(generate_image_prompt_for_slide).run_cycle()


@celery_app.task(name="slidecraft.tasks.cleanup_dead_letters")
def cleanup_dead_letters() -> int:
    total = 0
    while True:
        deleted = prompt_queue.garbage_collect_dead_letters()
        total += deleted
        if deleted < settings.dead_letter_gc_batch_size:
            break
    logger.info("dead_letter_cleanup_done deleted=%d", total)
    return total
