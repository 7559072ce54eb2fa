import json
import logging
from types import SimpleNamespace

import pytest

from slidecraft.config import settings
from slidecraft.errors import GenerationError
from slidecraft.providers.anthropic_provider import _extract_json
from slidecraft.providers.factory import get_provider
from slidecraft.providers.mock_provider import MockProvider
from slidecraft.providers.openai_provider import OpenAIProvider, parse_slides_payload


class _FakeResponses:
    def __init__(self, outputs):
        self.outputs = list(outputs)
        self.calls = 0

    def create(self, **kwargs):
        self.calls += 1
        value = self.outputs.pop(0)
        if isinstance(value, Exception):
            raise value
        return SimpleNamespace(output_text=value)


def _openai_with(outputs):
    provider = OpenAIProvider("sk-test")
    provider.client = SimpleNamespace(responses=_FakeResponses(outputs))
    return provider


def test_parse_slides_payload_skips_untitled_rows():
    slides = parse_slides_payload(
        {
            "slides": [
                {"title": "Magma", "content": ["Molten rock", " "], "speaker_notes": "Start here"},
                {"title": "", "content": ["ignored"]},
                "not a slide",
            ]
        }
    )

    assert len(slides) == 1
    assert slides[0].title == "Magma"
    assert slides[0].content == ["Molten rock"]
    assert slides[0].speaker_notes == "Start here"


def test_extract_json_handles_fenced_output():
    assert _extract_json('```json\n{"prompt": "A volcano cross-section"}\n```') == {
        "prompt": "A volcano cross-section"
    }
    with pytest.raises(ValueError):
        _extract_json("no json here")


def test_factory_falls_back_to_mock_without_keys(monkeypatch, caplog):
    monkeypatch.setattr(settings, "openai_api_key", None)
    monkeypatch.setattr(settings, "anthropic_api_key", None)
    monkeypatch.setattr(settings, "default_llm_provider", "mock")

    with caplog.at_level(logging.WARNING, logger="slidecraft.providers"):
        assert isinstance(get_provider("openai"), MockProvider)
        assert isinstance(get_provider("anthropic"), MockProvider)
        assert isinstance(get_provider(None), MockProvider)

    missing = [record.getMessage() for record in caplog.records if "provider_key_missing" in record.getMessage()]
    assert len(missing) == 2
    assert "provider=openai" in missing[0]


def test_factory_builds_keyed_provider_and_rejects_unknown_names(monkeypatch):
    monkeypatch.setattr(settings, "openai_api_key", "sk-test")

    assert isinstance(get_provider("OpenAI"), OpenAIProvider)
    with pytest.raises(ValueError, match="Unknown LLM provider"):
        get_provider("gemini")


def test_fallback_slides_flag_the_provider():
    provider = _openai_with([RuntimeError("boom")] * 3)

    provider.generate_slides(
        topic="Volcanoes",
        grade_level="Grade 7",
        subject="Geography",
        research_chunks=[],
        slide_count=2,
    )

    assert provider.used_fallback is True
    provider.reset_warnings()
    assert provider.used_fallback is False


def test_mock_image_prompts_vary_with_existing_prompts():
    provider = MockProvider()
    first = provider.generate_image_prompt(
        topic="Volcanoes",
        subject="Geography",
        grade_level="Grade 7",
        slide_title="Magma",
        slide_content=["Molten rock"],
    )
    second = provider.generate_image_prompt(
        topic="Volcanoes",
        subject="Geography",
        grade_level="Grade 7",
        slide_title="Magma",
        slide_content=["Molten rock"],
        existing_prompts=[first],
    )

    assert first != second
    assert second.startswith("Clean educational illustration for 'Magma'")


def test_openai_image_prompt_makes_a_single_attempt():
    provider = _openai_with([RuntimeError("429 rate limited"), json.dumps({"prompt": "unused"})])

    with pytest.raises(GenerationError):
        provider.generate_image_prompt(
            topic="Volcanoes",
            subject="Geography",
            grade_level="Grade 7",
            slide_title="Magma",
            slide_content=["Molten rock"],
        )
    assert provider.client.responses.calls == 1


def test_openai_image_prompt_returns_prompt_text():
    provider = _openai_with([json.dumps({"prompt": "  Labelled volcano diagram  "})])

    prompt = provider.generate_image_prompt(
        topic="Volcanoes",
        subject="Geography",
        grade_level="Grade 7",
        slide_title="Magma",
        slide_content=["Molten rock"],
    )

    assert prompt == "Labelled volcano diagram"


def test_openai_slides_fall_back_when_requests_keep_failing():
    provider = _openai_with([RuntimeError("boom")] * 3)

    slides = provider.generate_slides(
        topic="Volcanoes",
        grade_level="Grade 7",
        subject="Geography",
        research_chunks=[],
        slide_count=2,
    )

    assert len(slides) == 2
    assert provider.client.responses.calls == 3
    assert provider.last_warnings
