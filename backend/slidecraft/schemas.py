from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class GenerateDeckRequest(BaseModel):
    owner_id: str = Field(min_length=1)
    topic: str = Field(min_length=3)
    grade_level: str = ""
    subject: str = ""
    source_material: str = ""
    slide_count: int = Field(default=8, ge=1, le=30)
    use_web_search: bool = False
    provider: Literal["openai", "anthropic", "mock"] | None = None
    extra_instructions: str | None = None


class GenerationStateOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    status: str
    phase: str
    progress: int
    message: str
    error_message: str | None = None
    started_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None


class SlideOut(BaseModel):
    id: str
    sort_order: int
    title: str
    content: list[str] = Field(default_factory=list)
    speaker_notes: str = ""
    image_prompt: str | None = None
    image_prompts: list[str] = Field(default_factory=list)
    prompt_state: str
    prompt_error: str | None = None


class RetryRequest(BaseModel):
    slide_id: str | None = None


class RetryOut(BaseModel):
    ok: bool
    task_ids: list[str] = Field(default_factory=list)
    error: str | None = None


class PromptTaskOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    slide_id: str
    request_id: str
    status: str
    attempts: int
    priority: int
    queued_at: datetime
    processed_at: datetime | None = None
    error: str | None = None


class DeadLetterOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    slide_id: str
    request_id: str
    attempts: int
    error: str | None = None
    failed_at: datetime


class QueueStatsOut(BaseModel):
    queued: int = 0
    processing: int = 0
    failed: int = 0
    dead_lettered: int = 0


class RequestEventOut(BaseModel):
    id: int
    request_id: str
    ts: datetime
    stage: str
    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    severity: str = "info"
