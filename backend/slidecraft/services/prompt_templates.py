from __future__ import annotations

import json


def _research_digest(research_chunks: list[dict], max_chunks: int = 8) -> list[dict]:
    digest: list[dict] = []
    for chunk in research_chunks[:max_chunks]:
        digest.append(
            {
                "source_id": chunk.get("source_id"),
                "title": chunk.get("title"),
                "url": chunk.get("url"),
                "excerpt": str(chunk.get("excerpt") or chunk.get("snippet") or "")[:900],
            }
        )
    return digest


def build_slide_prompts(
    *,
    topic: str,
    grade_level: str,
    subject: str,
    research_chunks: list[dict],
    slide_count: int,
    extra_instructions: str | None,
) -> tuple[str, str]:
    system = (
        "You are an experienced teacher building a classroom slide deck. "
        "Write accurate, age-appropriate content. Each slide has a short title, "
        "3 to 5 concise bullet points and brief speaker notes. "
        "Use the research excerpts when they are relevant and never invent citations. "
        "Return JSON only."
    )
    payload = {
        "topic": topic,
        "grade_level": grade_level,
        "subject": subject,
        "slide_count": slide_count,
        "research": _research_digest(research_chunks),
        "extra_instructions": extra_instructions or "",
        "output_contract": {
            "slides": [{"title": "string", "content": ["string"], "speaker_notes": "string"}],
        },
    }
    return system, json.dumps(payload, ensure_ascii=False, indent=2)


def build_image_prompt_prompts(
    *,
    topic: str,
    subject: str,
    grade_level: str,
    slide_title: str,
    slide_content: list[str],
    existing_prompts: list[str] | None = None,
) -> tuple[str, str]:
    system = (
        "You write prompts for an image generation model. "
        "Describe a single clear educational illustration for one slide: subject, composition, "
        "style and colour palette. No text inside the image. At most 80 words. "
        "When earlier prompts are given, choose a different angle or composition. "
        "Return JSON only."
    )
    payload = {
        "topic": topic,
        "subject": subject,
        "grade_level": grade_level,
        "slide_title": slide_title,
        "slide_content": list(slide_content)[:6],
        "earlier_prompts": list(existing_prompts or []),
        "output_contract": {"prompt": "string"},
    }
    return system, json.dumps(payload, ensure_ascii=False, indent=2)
