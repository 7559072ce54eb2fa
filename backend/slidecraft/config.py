from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


PROJECT_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_STORAGE_ROOT = PROJECT_ROOT / "storage"
DEFAULT_DB_PATH = DEFAULT_STORAGE_ROOT / "slidecraft.db"


class Settings(BaseSettings):
    app_name: str = "Slidecraft Generation API"
    api_prefix: str = "/api"

    storage_root: Path = DEFAULT_STORAGE_ROOT
    database_url: str = f"sqlite:///{DEFAULT_DB_PATH.as_posix()}"
    redis_url: str = "redis://localhost:6379/0"
    frontend_origin: str = "http://localhost:5173"

    default_llm_provider: str = "mock"
    openai_api_key: str | None = None
    openai_model: str = "gpt-5-mini"
    anthropic_api_key: str | None = None
    anthropic_model: str = "claude-sonnet-4-20250514"
    anthropic_max_tokens: int = 8192
    exa_api_key: str | None = None
    exa_search_url: str = "https://api.exa.ai/search"

    prompts_per_slide: int = 3
    dispatch_backend: str = "celery"
    prompt_queue_batch_size: int = 10
    prompt_queue_max_attempts: int = 5
    prompt_queue_stale_claim_seconds: int = 300
    prompt_queue_poll_seconds: float = 60.0
    prompt_queue_max_workers: int = 10
    immediate_retry_base_ms: int = 1000
    immediate_retry_max_ms: int = 30000
    dead_letter_retention_days: int = 30
    dead_letter_gc_batch_size: int = 100
    dead_letter_gc_seconds: float = 86400.0

    progress_tick_seconds: float = 1.5

    log_level: str = "INFO"
    suppress_request_poll_access_logs: bool = True
    suppress_httpx_info_logs: bool = True
    verbose_ai_trace: bool = True
    log_preview_chars: int = 180
    persist_request_events: bool = True
    request_events_page_size: int = 400

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


settings = Settings()

for folder in [
    settings.storage_root,
    settings.storage_root / "decks",
]:
    folder.mkdir(parents=True, exist_ok=True)
