"""Exceptions raised by the generation pipeline."""


class SlidecraftError(Exception):
    """Base exception for pipeline errors."""


class RequestNotFound(SlidecraftError):
    """Raised when a generation request id does not exist."""


class InvalidPhaseTransition(SlidecraftError):
    """Raised when a GenerationState write would break the phase state machine."""


class GenerationError(SlidecraftError):
    """Raised when the external generation service fails for one slide."""


class PartialGeneration(SlidecraftError):
    """Raised when some of a slide's prompts were saved and the rest still need another pass."""

    def __init__(self, saved: int, missing: int, reason: str):
        super().__init__(f"{missing} prompt(s) still missing after saving {saved}: {reason}")
        self.saved = saved
        self.missing = missing
