from __future__ import annotations

import json
import logging
from collections.abc import Callable
from time import perf_counter
from uuid import uuid4

from sqlalchemy import update

from slidecraft.db import SessionLocal
from slidecraft.models import GenerationRequest, Slide, utcnow
from slidecraft.providers.base import SlideDraft
from slidecraft.providers.factory import get_provider
from slidecraft.services.generation_state import TERMINAL_PHASES, Phase, advance, get_state
from slidecraft.services.prompt_queue import QUEUED, enqueue_in_batch
from slidecraft.services.request_trace import request_log
from slidecraft.services.research_service import combine_research, unique_sources
from slidecraft.storage import deck_content_path, write_json


logger = logging.getLogger("slidecraft.jobs")

DispatchHook = Callable[[list[str]], None]

# (phase, progress, message) written as each stage starts.
RESEARCH_STEP = (Phase.RESEARCH, 10, "Researching your topic")
DRAFTING_STEP = (Phase.DRAFTING, 50, "Drafting slide content")
PERSISTING_STEP = (Phase.PERSISTING, 90, "Saving slides")
FINALIZING_STEP = (Phase.FINALIZING, 95, "Finalizing your slide deck")
COMPLETED_STEP = (Phase.COMPLETED, 100, "Presentation ready")
PLACEHOLDER_COMPLETED_STEP = (Phase.COMPLETED, 100, "Presentation ready with placeholder content")


def create_generation_request(
    *,
    owner_id: str,
    topic: str,
    grade_level: str = "",
    subject: str = "",
    source_material: str = "",
    slide_count: int = 8,
    use_web_search: bool = False,
    provider: str | None = None,
    extra_instructions: str | None = None,
) -> GenerationRequest:
    db = SessionLocal()
    try:
        row = GenerationRequest(
            id=str(uuid4()),
            owner_id=owner_id,
            topic=topic,
            grade_level=grade_level,
            subject=subject,
            source_material=source_material,
            slide_count=slide_count,
            use_web_search=use_web_search,
            provider=provider,
            extra_instructions=extra_instructions,
            status="queued",
            phase=Phase.RESEARCH.value,
            progress=0,
            message="Starting your deck",
        )
        db.add(row)
        db.commit()
        return row
    finally:
        db.close()


class GenerationOrchestrator:
    """Drives one request through research, drafting, persisting and finalizing.

    Drafting seeds one slide row and one prompt task per slide in a single
    transaction; finalizing hands the seeded task ids to ``dispatch`` so
    illustration prompts start without waiting for the periodic batch.
    """

    def __init__(self, *, dispatch: DispatchHook | None = None):
        self.dispatch = dispatch

    def run(self, request_id: str) -> None:
        started_at = perf_counter()
        request = get_state(request_id)
        if Phase(request.phase) in TERMINAL_PHASES:
            logger.info("generation_skipped request=%s phase=%s", request_id, request.phase)
            return

        request_log(
            request_id,
            "generation_job_start",
            provider=request.provider,
            slide_count=request.slide_count,
            use_web_search=request.use_web_search,
        )
        try:
            advance(request_id, *RESEARCH_STEP)
            research_chunks = combine_research(
                request.topic,
                request.source_material,
                use_web_search=request.use_web_search,
            )
            request_log(request_id, "research_ready", chunks=len(research_chunks))

            advance(request_id, *DRAFTING_STEP)
            provider = get_provider(request.provider)
            drafts = provider.generate_slides(
                topic=request.topic,
                grade_level=request.grade_level,
                subject=request.subject,
                research_chunks=research_chunks,
                slide_count=request.slide_count,
                extra_instructions=request.extra_instructions,
            )
            if not drafts:
                raise ValueError("Provider returned no slides")
            task_ids = self._seed_slides(request, drafts)
            request_log(
                request_id,
                "draft_slides_seeded",
                slides=len(task_ids),
                warnings=list(provider.last_warnings)[:5] or None,
            )
            if provider.used_fallback:
                request_log(request_id, "draft_fallback_used", warnings=list(provider.last_warnings)[:5])

            advance(request_id, *PERSISTING_STEP)
            sources = unique_sources(research_chunks, request.source_material)
            self._persist_content(request, drafts, task_ids, sources)

            advance(request_id, *FINALIZING_STEP)
            if self.dispatch is not None and task_ids:
                try:
                    self.dispatch(task_ids)
                except Exception as exc:
                    # Tasks are committed as queued; the periodic batch picks them up.
                    request_log(request_id, "prompt_dispatch_deferred", tasks=len(task_ids), reason=str(exc))
                else:
                    request_log(request_id, "prompt_dispatch_requested", tasks=len(task_ids))

            advance(request_id, *(PLACEHOLDER_COMPLETED_STEP if provider.used_fallback else COMPLETED_STEP))
            request_log(
                request_id,
                "generation_job_complete",
                duration_sec=f"{perf_counter() - started_at:.2f}",
                slides=len(task_ids),
            )
        except Exception as exc:
            request_log(request_id, "generation_job_failed", reason=str(exc))
            self._fail(request_id, exc)
            raise

    def _seed_slides(self, request: GenerationRequest, drafts: list[SlideDraft]) -> list[str]:
        task_ids: list[str] = []
        db = SessionLocal()
        try:
            for index, draft in enumerate(drafts):
                slide_id = str(uuid4())
                db.add(
                    Slide(
                        id=slide_id,
                        request_id=request.id,
                        owner_id=request.owner_id,
                        sort_order=index,
                        title=draft.title,
                        content_json=json.dumps(draft.content, ensure_ascii=False),
                        speaker_notes=draft.speaker_notes,
                        prompt_state=QUEUED,
                    )
                )
                enqueue_in_batch(db, slide_id=slide_id, request_id=request.id, owner_id=request.owner_id)
                task_ids.append(slide_id)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        return task_ids

    def _persist_content(
        self,
        request: GenerationRequest,
        drafts: list[SlideDraft],
        slide_ids: list[str],
        sources: list[str],
    ) -> None:
        path = deck_content_path(request.id)
        write_json(
            path,
            {
                "request_id": request.id,
                "topic": request.topic,
                "grade_level": request.grade_level,
                "subject": request.subject,
                "sources": sources,
                "slides": [
                    {
                        "id": slide_id,
                        "sort_order": index,
                        "title": draft.title,
                        "content": draft.content,
                        "speaker_notes": draft.speaker_notes,
                    }
                    for index, (slide_id, draft) in enumerate(zip(slide_ids, drafts))
                ],
            },
        )
        db = SessionLocal()
        try:
            db.execute(
                update(GenerationRequest)
                .where(GenerationRequest.id == request.id)
                .values(content_path=str(path), sources_json=json.dumps(sources), updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            db.commit()
        finally:
            db.close()

    def _fail(self, request_id: str, exc: Exception) -> None:
        try:
            current = get_state(request_id)
            if Phase(current.phase) in TERMINAL_PHASES:
                return
            advance(request_id, Phase.FAILED, current.progress, "Generation failed", error_message=str(exc))
        except Exception:
            # The original error is re-raised by the caller; this only logs the secondary failure.
            logger.exception("generation_fail_state_write_failed request=%s", request_id)
