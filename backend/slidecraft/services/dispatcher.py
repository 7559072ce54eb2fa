from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from time import perf_counter

from slidecraft.config import settings
from slidecraft.errors import PartialGeneration
from slidecraft.services import prompt_queue
from slidecraft.services.prompt_queue import REQUEUED, SKIPPED, TaskClaim


logger = logging.getLogger("slidecraft.queue")

COMPLETED = "completed"
PARTIAL = "partial"
NOT_CLAIMED = "not_claimed"

ProcessFn = Callable[[TaskClaim], None]
RetryScheduler = Callable[[float, str], None]


def backoff_delay_ms(attempts: int) -> int:
    return min(settings.immediate_retry_base_ms * (2**attempts), settings.immediate_retry_max_ms)


def run_claimed(claim: TaskClaim, process_fn: ProcessFn) -> str:
    """Invoke ``process_fn`` for an owned task and settle the task record."""
    started = perf_counter()
    try:
        process_fn(claim)
    except PartialGeneration as exc:
        logger.info("task_partial task=%s saved=%d missing=%d", claim.task_id, exc.saved, exc.missing)
        return PARTIAL if prompt_queue.requeue_with_progress(claim, str(exc)) else SKIPPED
    except Exception as exc:
        logger.warning(
            "task_attempt_failed task=%s attempt=%d duration_sec=%.2f reason=%s",
            claim.task_id,
            claim.attempts + 1,
            perf_counter() - started,
            exc,
        )
        return prompt_queue.fail_task(claim, exc)

    if not prompt_queue.complete_task(claim):
        return SKIPPED
    logger.info(
        "task_completed task=%s attempt=%d duration_sec=%.2f",
        claim.task_id,
        claim.attempts + 1,
        perf_counter() - started,
    )
    return COMPLETED


class BatchDispatcher:
    def __init__(self, process_fn: ProcessFn, *, batch_size: int | None = None, max_workers: int | None = None):
        self.process_fn = process_fn
        self.batch_size = int(batch_size or settings.prompt_queue_batch_size)
        self.max_workers = int(max_workers or settings.prompt_queue_max_workers)

    def _process_one(self, task_id: str) -> str:
        claim = prompt_queue.claim_task(task_id)
        if claim is None:
            return NOT_CLAIMED
        return run_claimed(claim, self.process_fn)

    def run_cycle(self) -> int:
        recovered = prompt_queue.sweep_stale_claims(limit=self.batch_size)
        task_ids = prompt_queue.select_dispatch_batch(self.batch_size)
        if not task_ids:
            return 0

        completed = 0
        outcomes: dict[str, int] = {}
        with ThreadPoolExecutor(max_workers=max(1, min(self.max_workers, len(task_ids)))) as pool:
            future_map = {pool.submit(self._process_one, task_id): task_id for task_id in task_ids}
            for future in as_completed(future_map):
                task_id = future_map[future]
                try:
                    outcome = future.result()
                except Exception:
                    # A store error on one task leaves it to the sweeper; the rest of the batch proceeds.
                    logger.exception("batch_task_error task=%s", task_id)
                    outcome = "error"
                outcomes[outcome] = outcomes.get(outcome, 0) + 1
                if outcome == COMPLETED:
                    completed += 1

        logger.info(
            "batch_cycle_done selected=%d recovered=%d completed=%d outcomes=%s",
            len(task_ids),
            recovered,
            completed,
            outcomes,
        )
        return completed


class ImmediateDispatcher:
    """Low-latency path for one task, typically a user-triggered retry.

    ``dispatch`` claims synchronously and hands the attempt to an executor, so
    the caller only learns whether the claim succeeded. A failed attempt that
    is requeued schedules its own retry after ``backoff_delay_ms``; the
    default scheduler uses daemon timers, worker processes pass one backed
    by Celery countdowns.
    """

    def __init__(
        self,
        process_fn: ProcessFn,
        *,
        executor: ThreadPoolExecutor | None = None,
        scheduler: RetryScheduler | None = None,
    ):
        self.process_fn = process_fn
        self._executor = executor
        self._owns_executor = executor is None
        self._scheduler = scheduler or self._schedule_with_timer
        self._timers: set[threading.Timer] = set()
        self._lock = threading.Lock()
        self._closed = False

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=settings.prompt_queue_max_workers,
                    thread_name_prefix="prompt-immediate",
                )
            return self._executor

    def dispatch(self, task_id: str) -> Future | None:
        if self._closed:
            return None
        claim = prompt_queue.claim_task(task_id)
        if claim is None:
            logger.info("immediate_dispatch_skipped task=%s reason=not_claimed", task_id)
            return None
        return self._get_executor().submit(self.process_claim, claim)

    def process_claim(self, claim: TaskClaim) -> str:
        outcome = run_claimed(claim, self.process_fn)
        if outcome == REQUEUED:
            delay_ms = backoff_delay_ms(claim.attempts + 1)
            logger.info(
                "immediate_retry_scheduled task=%s attempts=%d delay_ms=%d",
                claim.task_id,
                claim.attempts + 1,
                delay_ms,
            )
            self._scheduler(delay_ms / 1000.0, claim.task_id)
        elif outcome == PARTIAL:
            logger.info("immediate_continue_scheduled task=%s", claim.task_id)
            self._scheduler(0.0, claim.task_id)
        return outcome

    def _retry(self, task_id: str) -> None:
        try:
            self.dispatch(task_id)
        except Exception:
            # Detached timer callback; the task stays queued for the batch dispatcher.
            logger.exception("immediate_retry_failed task=%s", task_id)

    def _schedule_with_timer(self, delay_seconds: float, task_id: str) -> None:
        def fire() -> None:
            with self._lock:
                self._timers.discard(timer)
            self._retry(task_id)

        timer = threading.Timer(delay_seconds, fire)
        timer.daemon = True
        with self._lock:
            if self._closed:
                return
            self._timers.add(timer)
        timer.start()

    def pending_retries(self) -> int:
        with self._lock:
            return len(self._timers)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
            timers = list(self._timers)
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=wait)
