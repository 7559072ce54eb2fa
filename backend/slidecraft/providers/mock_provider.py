from slidecraft.providers.base import BaseLLMProvider, SlideDraft


_VIEWS = ["labelled diagram", "close-up detail", "real-world scene"]


class MockProvider(BaseLLMProvider):
    """Deterministic offline provider used in development and tests."""

    name = "mock"

    def generate_slides(self, *, topic, grade_level, subject, research_chunks, slide_count, extra_instructions=None):
        self.reset_warnings()
        titles = [str(chunk.get("title", "")).strip() for chunk in research_chunks if chunk.get("title")]
        slides: list[SlideDraft] = []
        for idx in range(max(1, slide_count)):
            heading = titles[idx] if idx < len(titles) else f"{topic} - part {idx + 1}"
            slides.append(
                SlideDraft(
                    title=heading,
                    content=[
                        f"{subject or 'General'} concept {idx + 1} for {grade_level or 'all levels'}",
                        f"Why it matters for {topic}",
                    ],
                    speaker_notes=f"Walk through part {idx + 1} of {topic}.",
                )
            )
        return slides

    def generate_image_prompt(
        self, *, topic, subject, grade_level, slide_title, slide_content, existing_prompts=None
    ):
        detail = "; ".join(str(row) for row in slide_content[:2])
        prompt = f"Clean educational illustration for '{slide_title}' ({subject}, {grade_level}): {detail or topic}"
        variant = len(existing_prompts or [])
        if variant:
            prompt = f"{prompt} (view {variant + 1}: {_VIEWS[variant % len(_VIEWS)]})"
        return prompt
