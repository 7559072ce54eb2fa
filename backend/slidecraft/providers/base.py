from dataclasses import dataclass, field


@dataclass
class SlideDraft:
    title: str
    content: list[str] = field(default_factory=list)
    speaker_notes: str = ""


class BaseLLMProvider:
    name = "base"
    last_warnings: list[str]
    used_fallback: bool

    def __init__(self):
        self.last_warnings = []
        self.used_fallback = False

    def reset_warnings(self) -> None:
        self.last_warnings = []
        self.used_fallback = False

    def generate_slides(
        self,
        *,
        topic: str,
        grade_level: str,
        subject: str,
        research_chunks: list[dict],
        slide_count: int,
        extra_instructions: str | None = None,
    ) -> list[SlideDraft]:
        raise NotImplementedError

    def generate_image_prompt(
        self,
        *,
        topic: str,
        subject: str,
        grade_level: str,
        slide_title: str,
        slide_content: list[str],
        existing_prompts: list[str] | None = None,
    ) -> str:
        """Return one illustration prompt distinct from ``existing_prompts``; raise on failure so the queue can retry."""
        raise NotImplementedError

    def fallback_slides(self, topic: str, slide_count: int, warning: str) -> list[SlideDraft]:
        """Placeholder slides used when the model gives nothing usable; flags the provider."""
        self.last_warnings.append(warning)
        self.used_fallback = True
        return [
            SlideDraft(
                title=f"{topic.strip() or 'Lesson'}: part {idx + 1}",
                content=[f"Key idea {idx + 1} about {topic.strip() or 'the topic'}"],
            )
            for idx in range(max(1, slide_count))
        ]
