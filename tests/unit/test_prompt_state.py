import pytest

from slidecraft.services.prompt_state import PromptState, allowed_sources, validate_prompt_transition


@pytest.mark.parametrize(
    "current, new",
    [
        (None, "pending"),
        (None, "queued"),
        ("pending", "queued"),
        ("queued", "generating"),
        ("generating", "partial"),
        ("partial", "generating"),
        ("partial", "completed"),
        ("generating", "failed"),
        ("failed", "queued"),
        ("queued", "queued"),
    ],
)
def test_legal_transitions(current, new):
    assert validate_prompt_transition(current, new) is True


@pytest.mark.parametrize(
    "current, new",
    [
        (None, "completed"),
        ("completed", "queued"),
        ("completed", "generating"),
        ("queued", "completed"),
        ("generating", "queued"),
        ("failed", "completed"),
    ],
)
def test_illegal_transitions(current, new):
    assert validate_prompt_transition(current, new) is False


def test_unknown_state_is_rejected():
    with pytest.raises(ValueError):
        validate_prompt_transition("queued", "archived")


def test_allowed_sources_for_queued():
    assert sorted(allowed_sources(PromptState.QUEUED)) == ["failed", "pending", "queued"]
