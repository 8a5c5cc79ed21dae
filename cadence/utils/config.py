"""Configuration management for Cadence using pydantic-settings."""

import os
import re
from functools import lru_cache
from pathlib import Path
from typing import Any

import structlog
import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

# Ensure .env is loaded so ${VAR} expansion and os.environ lookups work
load_dotenv(dotenv_path=Path(".") / ".env", override=False)

logger = structlog.get_logger(__name__)

KNOWN_PROVIDERS = ("anthropic", "openrouter", "nvidia", "ollama")

API_KEY_ENV_VARS = {
    "anthropic_api_key": "ANTHROPIC_API_KEY",
    "openrouter_api_key": "OPENROUTER_API_KEY",
    "nvidia_api_key": "NVIDIA_API_KEY",
    "slack_bot_token": "SLACK_BOT_TOKEN",
    "slack_app_token": "SLACK_APP_TOKEN",
}

CONFIG_SEARCH_PATHS = (
    Path("config/settings.local.yaml"),
    Path("config/settings.yaml"),
    Path.home() / ".config/cadence/settings.yaml",
)

_ENV_VAR_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


def _expand_env_vars(data: Any) -> Any:
    """Recursively replace ${VAR} and ${VAR:-default} in string values."""
    if isinstance(data, dict):
        return {key: _expand_env_vars(value) for key, value in data.items()}
    if isinstance(data, list):
        return [_expand_env_vars(item) for item in data]
    if isinstance(data, str):
        return _ENV_VAR_RE.sub(lambda m: os.environ.get(m.group(1), m.group(2) or ""), data)
    return data


def _find_config_file() -> Path | None:
    for path in CONFIG_SEARCH_PATHS:
        if path.exists():
            return path
    return None


class StreamingConfig(BaseModel):
    """Streaming delivery configuration (buffering, pacing, timeouts)."""

    # Hard cap for one outbound chat message
    max_message_length: int = Field(default=1950, ge=100)
    # Prose buffer is force-flushed at this size
    flush_buffer_size: int = Field(default=500, ge=1)
    # Unterminated code blocks are force-flushed at this size
    flush_buffer_size_code_block: int = Field(default=15000, ge=1)
    inactivity_timeout_seconds: float = Field(default=120.0, gt=0)

    # 0 = none, 1 = light, 2 = medium (typing simulation), 3 = heavy (sentence flushing)
    humanizer_degree: int = Field(default=1, ge=0, le=3)
    type_speed_ms_per_char: float = Field(default=10.0, ge=0)
    min_typing_ms: float = Field(default=750.0, ge=0)
    max_typing_ms: float = Field(default=4000.0, ge=0)
    min_pause_ms: float = Field(default=250.0, ge=0)
    max_pause_ms: float = Field(default=1500.0, ge=0)
    thinking_pause_chance: float = Field(default=0.25, ge=0, le=1)
    # None = derive from humanizer_degree (on for heavy)
    sentence_flush: bool | None = None


class AnthropicLLMConfig(BaseModel):
    """Anthropic Claude configuration. Uses ANTHROPIC_API_KEY."""

    model: str = "claude-sonnet-4-20250514"
    max_tokens: int = 4096
    temperature: float = 0.7
    timeout: int = 120


class OpenRouterLLMConfig(BaseModel):
    """OpenRouter (400+ models via one API). Uses OPENROUTER_API_KEY."""

    model: str = "anthropic/claude-3.5-sonnet"
    base_url: str = "https://openrouter.ai/api/v1"
    max_tokens: int = 4096
    temperature: float = 0.7
    timeout: int = 120
    use_free_models: bool = False  # Use openrouter/free (no cost, may have rate limits)


class NvidiaLLMConfig(BaseModel):
    """NVIDIA NIM (integrate.api.nvidia.com). Uses NVIDIA_API_KEY."""

    model: str = "moonshotai/kimi-k2.5"
    base_url: str = "https://integrate.api.nvidia.com/v1"
    max_tokens: int = 16384
    temperature: float = 0.7
    timeout: int = 120


class OllamaLLMConfig(BaseModel):
    """Local Ollama configuration."""

    model: str = "llama3.2:8b"
    base_url: str = "http://localhost:11434"
    temperature: float = 0.7
    timeout: int = 60


class LLMConfig(BaseModel):
    """Upstream generation provider selection."""

    provider: str = "anthropic"
    anthropic: AnthropicLLMConfig = Field(default_factory=AnthropicLLMConfig)
    openrouter: OpenRouterLLMConfig = Field(default_factory=OpenRouterLLMConfig)
    nvidia: NvidiaLLMConfig = Field(default_factory=NvidiaLLMConfig)
    ollama: OllamaLLMConfig = Field(default_factory=OllamaLLMConfig)


class SlackChannelConfig(BaseModel):
    """Slack channel configuration."""

    enabled: bool = True
    bot_token: str = ""
    app_token: str = ""
    allowed_channels: list[str] = Field(default_factory=list)
    reply_in_thread: bool = True


class ChannelsConfig(BaseModel):
    """All channels configuration."""

    slack: SlackChannelConfig = Field(default_factory=SlackChannelConfig)


class AssistantConfig(BaseModel):
    """Conversation loop configuration."""

    name: str = "Cadence"
    system_prompt: str = "You are Cadence, a friendly assistant chatting with people in a group chat."
    max_tool_iterations: int = Field(default=15, ge=0)  # Tool-call rounds per user message
    max_history_messages: int = Field(default=40, ge=1)
    # Idle conversations beyond this are forgotten, least recently used first
    max_conversations: int = Field(default=500, ge=1)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "json"
    # Empty disables the log file
    file: str = "./data/logs/cadence.log"
    max_size_mb: int = 100
    backup_count: int = 5
    # SDK loggers that chatter on every HTTP request
    quiet_loggers: list[str] = Field(
        default_factory=lambda: ["httpx", "httpcore", "slack_bolt", "slack_sdk", "anthropic", "openai"]
    )
    quiet_level: str = "WARNING"


class Settings(BaseSettings):
    """Main settings class that loads from YAML and environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CADENCE_",
        env_nested_delimiter="__",
        extra="ignore",
        populate_by_name=True,
    )

    streaming: StreamingConfig = Field(default_factory=StreamingConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    channels: ChannelsConfig = Field(default_factory=ChannelsConfig)
    assistant: AssistantConfig = Field(default_factory=AssistantConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    # API keys from environment
    anthropic_api_key: str = Field(default="", alias="ANTHROPIC_API_KEY")
    openrouter_api_key: str = Field(default="", alias="OPENROUTER_API_KEY")
    nvidia_api_key: str = Field(default="", alias="NVIDIA_API_KEY")
    slack_bot_token: str = Field(default="", alias="SLACK_BOT_TOKEN")
    slack_app_token: str = Field(default="", alias="SLACK_APP_TOKEN")

    @classmethod
    def from_yaml(cls, config_path: str | Path | None = None) -> "Settings":
        """
        Load settings from a YAML file.

        ``${VAR}`` and ``${VAR:-default}`` anywhere in a string value are
        replaced from the environment. API keys missing from the file are
        taken from their environment variables.
        """
        path = Path(config_path) if config_path else _find_config_file()
        config_data: dict[str, Any] = {}
        if path is not None and path.exists():
            config_data = yaml.safe_load(path.read_text()) or {}
            logger.debug("Loaded settings file", path=str(path))

        config_data = _expand_env_vars(config_data)
        for field_name, env_var in API_KEY_ENV_VARS.items():
            config_data.setdefault(field_name, os.environ.get(env_var, ""))

        try:
            instance = cls(**config_data)
        except ValidationError as e:
            raise ValueError(f"Invalid config: {e}") from e
        instance.validate()
        return instance

    def validate(self) -> None:
        """Validate critical config. Raises ValueError on failure."""
        errors: list[str] = []
        streaming = self.streaming
        if streaming.flush_buffer_size_code_block < streaming.flush_buffer_size:
            errors.append(
                "streaming.flush_buffer_size_code_block must be >= streaming.flush_buffer_size"
            )
        if streaming.min_typing_ms > streaming.max_typing_ms:
            errors.append("streaming.min_typing_ms must be <= streaming.max_typing_ms")
        if streaming.min_pause_ms > streaming.max_pause_ms:
            errors.append("streaming.min_pause_ms must be <= streaming.max_pause_ms")
        if self.llm.provider.lower().strip() not in KNOWN_PROVIDERS:
            errors.append(
                f"llm.provider must be one of {', '.join(KNOWN_PROVIDERS)} (got {self.llm.provider!r})"
            )
        if errors:
            raise ValueError("Config validation failed: " + "; ".join(errors))

    def ensure_directories(self) -> None:
        """Ensure all required directories exist."""
        if self.logging.file:
            Path(self.logging.file).expanduser().parent.mkdir(parents=True, exist_ok=True)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings.from_yaml()


def reload_settings() -> Settings:
    """Reload settings (clears cache)."""
    get_settings.cache_clear()
    return get_settings()
