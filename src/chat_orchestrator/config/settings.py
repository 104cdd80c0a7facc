"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "chat-orchestrator"
    app_env: str = "dev"
    app_debug: bool = False
    admin_token: str = ""
    database_url: str = ""

    max_retry_attempts: int = Field(default=3, ge=0)
    rate_limit_per_minute: int = Field(default=10, ge=1)
    pairing_token_ttl_minutes: int = Field(default=60, ge=1)

    queue_max_size: int = Field(default=100, ge=1)
    queue_drain_delay_s: float = Field(default=0.1, ge=0.0)
    dedup_window_s: float = Field(default=300.0, gt=0.0)
    rate_limit_sweep_s: float = Field(default=60.0, gt=0.0)
    pairing_sweep_s: float = Field(default=3600.0, gt=0.0)

    llm_provider: str = "mock"
    llm_model: str = "gpt-4o-mini"
    llm_base_url: str = "https://api.openai.com/v1"
    llm_temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    llm_max_tokens: int = Field(default=1500, ge=1)
    llm_timeout_s: float = Field(default=30.0, ge=0.5)
    llm_max_retries: int = Field(default=1, ge=0)
    llm_backoff_s: float = Field(default=0.2, ge=0.0)
    openai_api_key: str = ""

    tool_timeout_s: float = Field(default=30.0, ge=0.01)
    tools_reminders_enabled: bool = True
    tools_system_info_enabled: bool = True
    tools_files_readonly_enabled: bool = True
    tools_files_write_enabled: bool = False
    tools_web_sandbox_enabled: bool = False
    tools_system_exec_enabled: bool = False

    files_safe_root: str = str(PROJECT_ROOT / "data" / "safe_root")
    files_max_size_mb: float = Field(default=10.0, gt=0.0)
    files_allowed_extensions: list[str] = Field(
        default_factory=lambda: [".txt", ".md", ".json", ".csv", ".log", ".yaml", ".yml"]
    )
    reminders_max_per_user: int = Field(default=50, ge=1)
    web_allowed_domains: list[str] = Field(default_factory=list)
    web_timeout_s: float = Field(default=10.0, ge=0.1)
    web_max_response_mb: float = Field(default=5.0, gt=0.0)
    system_exec_allowed_commands: list[str] = Field(
        default_factory=lambda: ["echo", "ls", "cat", "df", "du", "uptime", "whoami", "date"]
    )
    system_exec_blocked_commands: list[str] = Field(default_factory=list)
    system_exec_allowed_working_dirs: list[str] = Field(default_factory=list)
    system_exec_timeout_s: float = Field(default=15.0, ge=1.0, le=120.0)
    system_exec_max_output_bytes: int = Field(default=20_000, ge=1024, le=1_048_576)

    model_config = SettingsConfigDict(
        env_prefix="CHAT_ORCHESTRATOR_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_database_url(self) -> str:
        return self.database_url or os.getenv("DATABASE_URL", "")

    def resolved_openai_api_key(self) -> str:
        return self.openai_api_key or os.getenv("OPENAI_API_KEY", "")

    def tool_enabled(self, name: str) -> bool:
        return bool(getattr(self, f"tools_{name}_enabled", False))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
