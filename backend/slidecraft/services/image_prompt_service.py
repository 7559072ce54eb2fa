from __future__ import annotations

import json
import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from slidecraft.config import settings
from slidecraft.db import SessionLocal
from slidecraft.errors import GenerationError, PartialGeneration
from slidecraft.models import GenerationRequest, Slide, SlideImagePrompt, utcnow
from slidecraft.providers.factory import get_provider
from slidecraft.services.prompt_queue import TaskClaim, set_slide_prompt_state
from slidecraft.services.prompt_state import PromptState


logger = logging.getLogger("slidecraft.jobs")


def _load_content(content_json: str) -> list[str]:
    try:
        value = json.loads(content_json or "[]")
    except ValueError:
        return []
    return [str(row) for row in value] if isinstance(value, list) else []


def prompt_id(slide_id: str, position: int) -> str:
    return f"{slide_id}-p{position}"


def list_slide_prompts(db: Session, slide_id: str) -> list[SlideImagePrompt]:
    return list(
        db.scalars(
            select(SlideImagePrompt).where(SlideImagePrompt.slide_id == slide_id).order_by(SlideImagePrompt.position)
        ).all()
    )


def _save_prompt(db: Session, slide: Slide, position: int, text: str) -> bool:
    """Insert one prompt keyed by slide and position; a row already there wins."""
    if db.get(SlideImagePrompt, prompt_id(slide.id, position)) is not None:
        return False
    db.add(
        SlideImagePrompt(
            id=prompt_id(slide.id, position),
            slide_id=slide.id,
            request_id=slide.request_id,
            position=position,
            text=text,
        )
    )
    if position == 0:
        slide.image_prompt = text
    slide.updated_at = utcnow()
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return False
    return True


def _set_state(db: Session, slide_id: str, state: PromptState, error: str | None = None) -> None:
    set_slide_prompt_state(db, slide_id, state.value, error)
    db.commit()


def generate_image_prompt_for_slide(claim: TaskClaim) -> None:
    """Process function for one prompt task. Safe to run more than once per slide.

    Fills the slide up to ``settings.prompts_per_slide`` prompts, committing
    each one as it arrives. When this pass saved some prompts but not all,
    the slide is left ``partial`` and :class:`PartialGeneration` is raised so
    the queue can give the task a fresh attempt budget.
    """
    db = SessionLocal()
    try:
        slide = db.get(Slide, claim.slide_id)
        request = db.get(GenerationRequest, claim.request_id)
        if slide is None or request is None:
            logger.warning(
                "image_prompt_skipped task=%s slide=%s request=%s reason=missing_record",
                claim.task_id,
                claim.slide_id,
                claim.request_id,
            )
            return

        target = max(1, settings.prompts_per_slide)
        _set_state(db, slide.id, PromptState.GENERATING)
        existing = list_slide_prompts(db, slide.id)
        if len(existing) >= target:
            _set_state(db, slide.id, PromptState.COMPLETED)
            return

        provider = get_provider(request.provider)
        taken = {row.position for row in existing}
        texts = [row.text for row in existing]
        saved = 0
        last_error: GenerationError | None = None
        for position in range(target):
            if position in taken:
                continue
            try:
                text = provider.generate_image_prompt(
                    topic=request.topic,
                    subject=request.subject,
                    grade_level=request.grade_level,
                    slide_title=slide.title,
                    slide_content=_load_content(slide.content_json),
                    existing_prompts=list(texts),
                )
            except GenerationError as exc:
                logger.warning(
                    "image_prompt_variant_failed task=%s position=%d reason=%s", claim.task_id, position, exc
                )
                last_error = exc
                continue
            if _save_prompt(db, slide, position, text):
                saved += 1
                texts.append(text)
                logger.info(
                    "image_prompt_saved task=%s slide=%s position=%d attempt=%d chars=%d",
                    claim.task_id,
                    claim.slide_id,
                    position,
                    claim.attempts + 1,
                    len(text),
                )

        missing = target - len(list_slide_prompts(db, slide.id))
        if missing <= 0:
            _set_state(db, slide.id, PromptState.COMPLETED)
            return
        if saved:
            _set_state(db, slide.id, PromptState.PARTIAL, str(last_error))
            raise PartialGeneration(saved, missing, str(last_error))
        raise last_error or GenerationError(f"{missing} image prompt(s) could not be saved")
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
