"""Configuration management - Pydantic model with YAML loading and CLI overrides."""

from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator

DEFAULT_CONFIG_DIR = Path.home() / ".agent-engine"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"
DEFAULT_SESSIONS_DIR = DEFAULT_CONFIG_DIR / "sessions"

OLLAMA_DEFAULT_API_BASE = "http://localhost:11434"

_EXAMPLE_CONFIG = (
    "For LiteLLM proxy / OpenAI-compatible APIs:\n"
    "  model: litellm/gpt-4o\n"
    "  api_base: http://localhost:4000\n\n"
    f"For local Ollama models (api_base defaults to {OLLAMA_DEFAULT_API_BASE}):\n"
    "  model: ollama_chat/llama3.2"
)


def is_ollama_model(model: str) -> bool:
    """Return True if the model string uses the Ollama provider prefix."""
    return model.startswith(("ollama/", "ollama_chat/"))


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""


class EngineConfig(BaseModel):
    """Engine configuration with validation."""

    model_config = ConfigDict(extra="forbid")

    model: str
    api_base: str | None = None
    api_key: str | None = None
    https_proxy: str | None = None

    # Model sampling parameters
    temperature: float = 0.0
    max_output_tokens: int = 4096
    top_p: float = 1.0

    # Context management
    max_context_tokens: int = 128000
    llm_summaries: bool = False

    # Turn loop
    max_rounds: int = 25
    request_timeout: float | None = 300.0
    tool_timeout: float | None = 120.0
    permission_timeout: float | None = None
    retry_max_attempts: int = 4
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0

    # Events, permissions, persistence
    event_queue_size: int = 1000
    bypass_permissions: bool = False
    persistence_failures_fatal: bool = False
    sessions_dir: str | None = None
    workspace_root: str | None = None

    # Logging
    log_level: str = "WARNING"
    log_file: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _apply_ollama_defaults(cls, values: dict) -> dict:
        """Auto-set api_base for Ollama models when not explicitly provided."""
        if isinstance(values, dict) and not values.get("api_base"):
            if is_ollama_model(values.get("model", "")):
                values = dict(values)
                values["api_base"] = OLLAMA_DEFAULT_API_BASE
        return values

    @field_validator("api_base")
    @classmethod
    def validate_api_base(cls, v: str | None) -> str | None:
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("Must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("max_rounds", "retry_max_attempts", "max_output_tokens", "max_context_tokens", "event_queue_size")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Must be at least 1")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError("Must be one of DEBUG, INFO, WARNING, ERROR, CRITICAL")
        return level

    @property
    def context_budget(self) -> int:
        """Tokens available for history once room for the response is reserved."""
        return max(1, self.max_context_tokens - self.max_output_tokens)

    def __repr__(self) -> str:
        api_key_display = "***" if self.api_key else "None"
        return (
            f"EngineConfig(model={self.model!r}, "
            f"api_base={self.api_base!r}, "
            f"api_key={api_key_display!r}, "
            f"temperature={self.temperature!r}, "
            f"max_output_tokens={self.max_output_tokens!r}, "
            f"max_rounds={self.max_rounds!r})"
        )

    def __str__(self) -> str:
        return self.__repr__()


def _format_validation_error(error: ValidationError) -> str:
    lines = []
    for err in error.errors():
        field = ".".join(str(loc) for loc in err["loc"])
        lines.append(f"  - {field}: {err['msg']}")
    return "\n".join(lines)


def load_config(config_path: Path | None = None) -> EngineConfig:
    """Load and validate config from YAML file.

    Args:
        config_path: Path to config file. Defaults to ~/.agent-engine/config.yaml.

    Returns:
        Validated EngineConfig instance.

    Raises:
        ConfigError: If file is missing, empty, or contains invalid config.
    """
    path = config_path or DEFAULT_CONFIG_FILE

    if not path.exists():
        raise ConfigError(
            f"Configuration file not found.\n\n"
            f"Expected location: {path}\n\n"
            f"{_EXAMPLE_CONFIG}\n\n"
            f"Optional fields: api_key, https_proxy, max_rounds, tool_timeout"
        )

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}\n\n  {e}") from None

    if not isinstance(data, dict):
        raise ConfigError(
            f"Invalid configuration in {path}\n\n"
            f"  Config file is empty or not a valid YAML mapping.\n\n"
            f"{_EXAMPLE_CONFIG}"
        )

    try:
        return EngineConfig(**data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {path}\n\n{_format_validation_error(e)}") from None


def apply_cli_overrides(config: EngineConfig, **overrides: object) -> EngineConfig:
    """Apply CLI flag overrides to config. Returns a new EngineConfig instance.

    Override precedence: Defaults → YAML → CLI flags. None values are ignored.
    """
    overrides = {key: value for key, value in overrides.items() if value is not None}
    if not overrides:
        return config

    try:
        return EngineConfig.model_validate(config.model_dump() | overrides)
    except ValidationError as e:
        raise ConfigError(f"Invalid CLI override:\n\n{_format_validation_error(e)}") from None
