import json
import logging
import time
from time import perf_counter

from anthropic import Anthropic

from slidecraft.config import settings
from slidecraft.errors import GenerationError
from slidecraft.providers.base import BaseLLMProvider
from slidecraft.providers.openai_provider import parse_slides_payload
from slidecraft.services.prompt_templates import build_image_prompt_prompts, build_slide_prompts


logger = logging.getLogger("slidecraft.providers")


def _extract_json(text: str) -> dict:
    raw = (text or "").strip()
    if raw.startswith("```"):
        raw = raw.strip("`")
        if raw.lower().startswith("json"):
            raw = raw[4:]
    start = raw.find("{")
    end = raw.rfind("}")
    if start == -1 or end <= start:
        raise ValueError("No JSON object in model output")
    payload = json.loads(raw[start : end + 1])
    if not isinstance(payload, dict):
        raise ValueError("Model output is not a JSON object")
    return payload


class AnthropicProvider(BaseLLMProvider):
    name = "anthropic"

    def __init__(self, api_key: str):
        super().__init__()
        self.client = Anthropic(api_key=api_key)

    def _messages_create_with_retry(
        self,
        *,
        request_label: str,
        system: str,
        user: str,
        max_tokens: int,
        temperature: float,
        retries: int = 2,
    ) -> str:
        last_error: Exception | None = None
        for attempt in range(retries + 1):
            started = perf_counter()
            logger.info(
                "anthropic_request_start label=%s model=%s attempt=%d/%d input_chars=%d",
                request_label,
                settings.anthropic_model,
                attempt + 1,
                retries + 1,
                len(system) + len(user),
            )
            try:
                response = self.client.messages.create(
                    model=settings.anthropic_model,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                )
                text = "".join(block.text for block in response.content if hasattr(block, "text"))
                logger.info(
                    "anthropic_request_done label=%s duration_sec=%.2f output_chars=%d",
                    request_label,
                    perf_counter() - started,
                    len(text),
                )
                return text
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "anthropic_request_error label=%s attempt=%d/%d duration_sec=%.2f reason=%s",
                    request_label,
                    attempt + 1,
                    retries + 1,
                    perf_counter() - started,
                    exc,
                )
                if attempt < retries:
                    time.sleep(0.6 * (2**attempt))

        if last_error:
            raise last_error
        raise RuntimeError("Anthropic request failed with unknown error")

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
            text = self._messages_create_with_retry(
                request_label="generate_slides",
                system=system,
                user=user,
                max_tokens=settings.anthropic_max_tokens,
                temperature=0.4,
            )
            slides = parse_slides_payload(_extract_json(text))[:slide_count]
        except Exception as exc:
            return self.fallback_slides(
                topic,
                slide_count,
                f"Anthropic request failed; fallback content was used ({exc}).",
            )

        if not slides:
            return self.fallback_slides(
                topic,
                slide_count,
                "Anthropic returned no usable slides; fallback content was used.",
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
        try:
            text = self._messages_create_with_retry(
                request_label="image_prompt",
                system=system,
                user=user,
                max_tokens=400,
                temperature=0.7,
                retries=0,
            )
            prompt = str(_extract_json(text).get("prompt") or "").strip()
        except Exception as exc:
            raise GenerationError(f"Anthropic image prompt request failed: {exc}") from exc

        if not prompt:
            raise GenerationError("Anthropic returned an empty image prompt")
        return prompt
