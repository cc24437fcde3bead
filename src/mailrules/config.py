"""Configuration management for mailrules."""

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class IMAPConfig(BaseModel):
    """IMAP server configuration."""

    host: str
    port: int = 993
    username: str
    password: str
    use_ssl: bool = True
    archive_folder: str = "Archive"
    spam_folder: str = "Spam"
    drafts_folder: str = "Drafts"
    sent_folder: str = "Sent"


class LLMConfig(BaseModel):
    """LLM provider configuration."""

    provider: str = "ollama"  # "anthropic" or "ollama"
    model: str = "gpt-oss:20b"  # Ollama model name or Anthropic model ID
    max_tokens: int = 512
    temperature: float = 0.1
    # Ollama settings
    ollama_base_url: str = "http://localhost:11434"
    ollama_context_length: int = 24576


class MatchingConfig(BaseModel):
    """Rule matching settings."""

    # Classifications below this confidence count as "no confident match"
    ai_confidence_threshold: float = 0.8


class ScheduledActionConfig(BaseModel):
    """Settings for delayed actions."""

    queue_name: str = "scheduled-actions"
    max_retry_attempts: int = 3
    retry_delay_minutes: int = 15


class AutomationConfig(BaseModel):
    """Settings for the recurring automation job scheduler."""

    batch_size: int = 100
    queue_name: str = "automation-jobs"
    parallelism: int = 3
    poll_interval_seconds: int = 60
    timezone: str = "UTC"


class QueueConfig(BaseModel):
    """In-process task queue delivery settings."""

    max_delivery_attempts: int = 3
    redelivery_delay_seconds: int = 30


class ServiceConfig(BaseModel):
    """Configuration for the background service."""

    enabled: bool = False
    summary_output_dir: Path | None = None  # Default: <data_dir>/summaries


class Settings(BaseSettings):
    """Application settings loaded from environment and config files."""

    model_config = SettingsConfigDict(
        env_prefix="MAILRULES_",
        env_nested_delimiter="__",
    )

    # Paths
    config_dir: Path = Field(default_factory=lambda: Path.home() / ".config" / "mailrules")
    data_dir: Path = Field(default_factory=lambda: Path.home() / ".local" / "share" / "mailrules")
    db_path: Path | None = None
    db_busy_timeout: float = 10.0  # seconds

    # API keys (loaded from environment)
    anthropic_api_key: str | None = None

    # Email providers
    imap_accounts: dict[str, IMAPConfig] = Field(default_factory=dict)

    llm: LLMConfig = Field(default_factory=LLMConfig)
    matching: MatchingConfig = Field(default_factory=MatchingConfig)
    scheduled_actions: ScheduledActionConfig = Field(default_factory=ScheduledActionConfig)
    automation: AutomationConfig = Field(default_factory=AutomationConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    service: ServiceConfig = Field(default_factory=ServiceConfig)

    def __init__(self, **data: Any) -> None:
        super().__init__(**data)
        if self.db_path is None:
            self.db_path = self.data_dir / "mailrules.db"

    def ensure_dirs(self) -> None:
        """Create necessary directories."""
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.data_dir.mkdir(parents=True, exist_ok=True)

    @property
    def summary_dir(self) -> Path:
        return self.service.summary_output_dir or self.data_dir / "summaries"


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries, with override taking precedence.

    Nested dicts are merged recursively. Lists and other values are replaced.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_settings(config_dir: Path | None = None) -> Settings:
    """Load settings from environment and config files.

    Loads config.yaml first, then merges config.local.yaml on top if it
    exists (user-editable overrides).
    """
    config_dir = config_dir or Path.home() / ".config" / "mailrules"
    config_file = config_dir / "config.yaml"
    local_config_file = config_dir / "config.local.yaml"

    file_settings: dict[str, Any] = {}

    if config_file.exists():
        with open(config_file) as f:
            file_settings = yaml.safe_load(f) or {}

    if local_config_file.exists():
        with open(local_config_file) as f:
            local_settings = yaml.safe_load(f) or {}
        file_settings = _deep_merge(file_settings, local_settings)

    # Expand ~ in path settings
    for key in ("config_dir", "data_dir", "db_path"):
        if isinstance(file_settings.get(key), str):
            file_settings[key] = Path(file_settings[key]).expanduser()

    return Settings(**file_settings)
