import json
import logging
from time import perf_counter
from typing import Any

from openai import OpenAI

from slidecraft.config import settings
from slidecraft.errors import GenerationError
from slidecraft.providers.base import BaseLLMProvider, SlideDraft
from slidecraft.services.prompt_templates import build_image_prompt_prompts, build_slide_prompts


logger = logging.getLogger("slidecraft.providers")

SLIDES_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "slides": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "title": {"type": "string"},
                    "content": {"type": "array", "items": {"type": "string"}},
                    "speaker_notes": {"type": "string"},
                },
                "required": ["title", "content", "speaker_notes"],
                "additionalProperties": False,
            },
        }
    },
    "required": ["slides"],
    "additionalProperties": False,
}

IMAGE_PROMPT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {"prompt": {"type": "string"}},
    "required": ["prompt"],
    "additionalProperties": False,
}


def _preview_text(text: str, limit: int | None = None) -> str:
    raw = str(text or "").replace("\r", " ").replace("\n", " ").strip()
    cap = int(limit or settings.log_preview_chars)
    if len(raw) <= cap:
        return raw
    return raw[:cap].rstrip() + " ..."


def parse_slides_payload(payload: dict[str, Any]) -> list[SlideDraft]:
    slides: list[SlideDraft] = []
    for row in payload.get("slides", []) or []:
        if not isinstance(row, dict):
            continue
        title = str(row.get("title") or "").strip()
        if not title:
            continue
        slides.append(
            SlideDraft(
                title=title,
                content=[str(item) for item in (row.get("content") or []) if str(item).strip()],
                speaker_notes=str(row.get("speaker_notes") or ""),
            )
        )
    return slides


class OpenAIProvider(BaseLLMProvider):
    name = "openai"

    def __init__(self, api_key: str):
        super().__init__()
        self.client = OpenAI(api_key=api_key)

    def _run_structured_request(
        self,
        *,
        system: str,
        user: str,
        output_schema: dict[str, Any],
        request_label: str = "structured",
        retries: int = 2,
    ) -> dict[str, Any]:
        last_error: Exception | None = None

        for attempt in range(retries + 1):
            started = perf_counter()
            logger.info(
                "openai_request_start label=%s model=%s attempt=%d/%d input_chars=%d user_preview=%s",
                request_label,
                settings.openai_model,
                attempt + 1,
                retries + 1,
                len(system) + len(user),
                _preview_text(user, 220),
            )
            try:
                response = self.client.responses.create(
                    model=settings.openai_model,
                    input=[
                        {"role": "system", "content": system},
                        {"role": "user", "content": user},
                    ],
                    text={
                        "format": {
                            "type": "json_schema",
                            "name": request_label,
                            "schema": output_schema,
                            "strict": True,
                        }
                    },
                )
                text = (response.output_text or "").strip()
                if not text:
                    raise ValueError("OpenAI returned empty structured output")
                logger.info(
                    "openai_request_done label=%s duration_sec=%.2f output_chars=%d",
                    request_label,
                    perf_counter() - started,
                    len(text),
                )
                return json.loads(text)
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "openai_request_error label=%s attempt=%d/%d duration_sec=%.2f reason=%s",
                    request_label,
                    attempt + 1,
                    retries + 1,
                    perf_counter() - started,
                    exc,
                )

        if last_error:
            raise last_error
        raise RuntimeError("OpenAI structured request failed with unknown error")

    def generate_slides(self, *, topic, grade_level, subject, research_chunks, slide_count, extra_instructions=None):
        self.reset_warnings()
        system, user = build_slide_prompts(
            topic=topic,
            grade_level=grade_level,
            subject=subject,
            research_chunks=research_chunks,
            slide_count=slide_count,
            extra_instructions=extra_instructions,
        )
        try:
            payload = self._run_structured_request(
                system=system,
                user=user,
                output_schema=SLIDES_SCHEMA,
                request_label="generate_slides",
            )
        except Exception as exc:
            return self.fallback_slides(
                topic,
                slide_count,
                f"OpenAI request failed; fallback content was used ({exc}).",
            )

        slides = parse_slides_payload(payload)[:slide_count]
        if not slides:
            return self.fallback_slides(
                topic,
                slide_count,
                "OpenAI returned no usable slides; fallback content was used.",
            )
        return slides

    def generate_image_prompt(self, *, topic, subject, grade_level, slide_title, slide_content, existing_prompts=None):
        system, user = build_image_prompt_prompts(
            topic=topic,
            subject=subject,
            grade_level=grade_level,
            slide_title=slide_title,
            slide_content=slide_content,
            existing_prompts=existing_prompts,
        )
        # One call per attempt; retries belong to the prompt queue.
        try:
            payload = self._run_structured_request(
                system=system,
                user=user,
                output_schema=IMAGE_PROMPT_SCHEMA,
                request_label="image_prompt",
                retries=0,
            )
        except Exception as exc:
            raise GenerationError(f"OpenAI image prompt request failed: {exc}") from exc

        prompt = str(payload.get("prompt") or "").strip()
        if not prompt:
            raise GenerationError("OpenAI returned an empty image prompt")
        return prompt
