"""Per-slide illustration prompt states and their legal transitions."""

from __future__ import annotations

from enum import Enum


class PromptState(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    GENERATING = "generating"
    PARTIAL = "partial"
    COMPLETED = "completed"
    FAILED = "failed"


INITIAL_STATES = {PromptState.PENDING, PromptState.QUEUED, PromptState.GENERATING}

_TRANSITIONS: dict[PromptState, set[PromptState]] = {
    PromptState.PENDING: {PromptState.QUEUED, PromptState.GENERATING, PromptState.FAILED},
    PromptState.QUEUED: {PromptState.GENERATING, PromptState.FAILED},
    PromptState.GENERATING: {PromptState.PARTIAL, PromptState.COMPLETED, PromptState.FAILED},
    PromptState.PARTIAL: {PromptState.GENERATING, PromptState.COMPLETED, PromptState.FAILED},
    PromptState.FAILED: {PromptState.QUEUED, PromptState.GENERATING},
    PromptState.COMPLETED: set(),
}


def validate_prompt_transition(current: PromptState | str | None, new: PromptState | str) -> bool:
    new_state = PromptState(new)
    if current is None:
        return new_state in INITIAL_STATES
    current_state = PromptState(current)
    if current_state == new_state:
        return True
    return new_state in _TRANSITIONS[current_state]


def allowed_sources(new: PromptState | str) -> list[str]:
    """States from which a slide may move to ``new``."""
    return [state.value for state in PromptState if validate_prompt_transition(state, new)]
