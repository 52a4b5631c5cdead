from functools import lru_cache

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env(name: str) -> AliasChoices:
    return AliasChoices(name, f"CREATOR_FLOW_{name}")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
    )

    app_name: str = "creator-flow"
    environment: str = Field(default="local", validation_alias=_env("ENVIRONMENT"))
    database_url: str = Field(
        default="postgresql+asyncpg://postgres:postgres@db:5432/creator_flow",
        validation_alias=_env("DATABASE_URL"),
    )
    redis_url: str = Field(default="redis://redis:6379/0", validation_alias=_env("REDIS_URL"))
    admin_password: str | None = Field(default=None, validation_alias=_env("ADMIN_PASSWORD"))

    # LLM providers
    llm_provider: str = Field(default="openai", validation_alias=_env("LLM_PROVIDER"))
    llm_api_key: str | None = Field(default=None, validation_alias=_env("LLM_API_KEY"))
    llm_model: str | None = Field(default=None, validation_alias=_env("LLM_MODEL"))
    llm_base_url: str | None = Field(default=None, validation_alias=_env("LLM_BASE_URL"))
    llm_max_tokens: str | None = Field(default=None, validation_alias=_env("LLM_MAX_TOKENS"))
    llm_response_language: str | None = Field(default=None, validation_alias=_env("LLM_RESPONSE_LANGUAGE"))
    openai_api_key: str | None = Field(default=None, validation_alias=_env("OPENAI_API_KEY"))
    openai_model: str = Field(default="gpt-4o-mini", validation_alias=_env("OPENAI_MODEL"))
    openrouter_api_key: str | None = Field(default=None, validation_alias=_env("OPENROUTER_API_KEY"))
    openrouter_model: str = Field(default="google/gemini-2.0-flash-exp:free", validation_alias=_env("OPENROUTER_MODEL"))
    openrouter_site_url: str = Field(default="http://localhost", validation_alias=_env("OPENROUTER_SITE_URL"))
    openrouter_app_name: str = Field(default="creator-flow-studio", validation_alias=_env("OPENROUTER_APP_NAME"))
    ai_http_timeout_ms: int = Field(default=20000, validation_alias=_env("AI_HTTP_TIMEOUT_MS"))
    ai_test_mode: str | None = Field(default=None, validation_alias=_env("AI_TEST_MODE"))
    ai_settings_encryption_key: str | None = Field(default=None, validation_alias=_env("AI_SETTINGS_ENCRYPTION_KEY"))

    # Generation
    script_max_chars: int = Field(default=4000, validation_alias=_env("SCRIPT_MAX_CHARS"))
    video_sample_url: str = Field(
        default="https://samplelib.com/lib/preview/mp4/sample-5s.mp4",
        validation_alias=_env("VIDEO_SAMPLE_URL"),
    )
    storage_root: str = Field(default="storage/assets", validation_alias=_env("STORAGE_ROOT"))

    # Queue / worker
    queue_attempts: int = Field(default=3, validation_alias=_env("QUEUE_ATTEMPTS"))
    queue_backoff_ms: int = Field(default=1500, validation_alias=_env("QUEUE_BACKOFF_MS"))
    queue_backoff_strategy: str = Field(default="fixed", validation_alias=_env("QUEUE_BACKOFF_STRATEGY"))
    worker_concurrency: int = Field(default=2, validation_alias=_env("WORKER_CONCURRENCY"))

    # Rate limits
    ai_settings_test_rate_limit: int = Field(default=6, validation_alias=_env("AI_SETTINGS_TEST_RATE_LIMIT"))
    ai_settings_test_rate_window_ms: int = Field(default=60000, validation_alias=_env("AI_SETTINGS_TEST_RATE_WINDOW_MS"))
    auth_rate_limit_login_per_minute: int = Field(default=8, validation_alias=_env("AUTH_RATE_LIMIT_LOGIN_PER_MINUTE"))
    auth_rate_limit_refresh_per_minute: int = Field(default=30, validation_alias=_env("AUTH_RATE_LIMIT_REFRESH_PER_MINUTE"))
    auth_rate_limit_logout_per_minute: int = Field(default=60, validation_alias=_env("AUTH_RATE_LIMIT_LOGOUT_PER_MINUTE"))

    @property
    def async_database_url(self) -> str:
        if self.database_url.startswith("postgresql+"):
            return self.database_url
        if self.database_url.startswith("postgresql://"):
            return self.database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return self.database_url

    @property
    def ai_http_timeout_sec(self) -> float:
        """Provider HTTP deadline, clamped to 1s..120s."""
        return min(max(self.ai_http_timeout_ms, 1000), 120000) / 1000


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
