from celery import Celery

from slidecraft.config import settings

celery_app = Celery("slidecraft", broker=settings.redis_url, backend=settings.redis_url, include=["slidecraft.tasks"])
celery_app.conf.update(
    task_track_started=True,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    beat_schedule={
        "prompt-queue-batch": {
            "task": "slidecraft.tasks.run_prompt_queue_batch",
            "schedule": settings.prompt_queue_poll_seconds,
        },
        "dead-letter-cleanup": {
            "task": "slidecraft.tasks.cleanup_dead_letters",
            "schedule": settings.dead_letter_gc_seconds,
        },
    },
)
