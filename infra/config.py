"""
Configuration Manager
---------------------
Centralized configuration for toolsmith.
YAML file, environment overrides, pydantic validation.

Rules:
- Secrets never in the config file
- API keys come from environment variables only
- Environment variables override file values (TOOLSMITH_<SECTION>_<KEY>)
- Invalid configuration fails loudly with the offending field
"""

from pathlib import Path
from typing import Any, Dict, List, Optional
import logging
import os

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

ENV_PREFIX = "TOOLSMITH_"

DEFAULT_CONFIG_PATH = "config/toolsmith.yaml"

DEFAULT_SYSTEM_PROMPT = (
    "You are Toolsmith, a helpful assistant that can use tools. "
    "When no existing tool fits a task, you may write a new one with "
    "create_tool. Tool code is the body of a Python function that receives "
    "a dict named `args` and returns the result as a string."
)


class ConfigError(Exception):
    """Configuration could not be loaded or validated."""
    pass


class ProviderSettings(BaseModel):
    """Model backend selection."""
    name: str = "openai"
    model: str = "gpt-4o-mini"
    base_url: Optional[str] = None
    api_key_env: Optional[str] = None
    max_tokens: int = Field(default=4096, gt=0)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    timeout_seconds: float = Field(default=60.0, gt=0)

    @field_validator("name")
    @classmethod
    def _lowercase_name(cls, value: str) -> str:
        return value.strip().lower()


class SecuritySettings(BaseModel):
    """Policy applied to dynamic tool definitions and invocations."""
    allowed_domains: List[str] = Field(default_factory=lambda: [
        "wikipedia.org", "github.com", "stackoverflow.com", "docs.rs",
    ])
    allowed_capabilities: List[str] = Field(default_factory=lambda: [
        "math", "json", "re", "datetime", "statistics", "random", "network",
    ])
    blocked_tools: List[str] = Field(default_factory=list)
    max_code_bytes: int = Field(default=20_000, gt=0)
    max_argument_bytes: int = Field(default=16_384, gt=0)
    invocations_per_minute: int = Field(default=60, gt=0)
    invocation_burst: int = Field(default=10, gt=0)


class ExecutionSettings(BaseModel):
    """Execution engine limits."""
    default_timeout_seconds: float = Field(default=5.0, gt=0)
    network_timeout_seconds: float = Field(default=15.0, gt=0)


class OrchestratorSettings(BaseModel):
    """Conversation loop limits."""
    max_steps: int = Field(default=10, ge=1)
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    result_part_chars: int = Field(default=800, gt=0)
    max_context_messages: int = Field(default=20, ge=2)
    max_context_chars: int = Field(default=100_000, gt=0)
    trimmed_context_chars: int = Field(default=80_000, gt=0)


class StorageSettings(BaseModel):
    """Where durable state lives."""
    db_path: str = "toolsmith.db"
    session_id: str = "default"
    log_dir: str = "logs"


class ToolsmithConfig(BaseModel):
    """Complete validated configuration."""
    provider: ProviderSettings = Field(default_factory=ProviderSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    execution: ExecutionSettings = Field(default_factory=ExecutionSettings)
    orchestrator: OrchestratorSettings = Field(default_factory=OrchestratorSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)


def _apply_env_overrides(raw: Dict[str, Any], environ: Dict[str, str]) -> Dict[str, Any]:
    """
    Overlay TOOLSMITH_<SECTION>_<KEY> variables onto the raw config.

    List values are comma separated. Scalar coercion is left to pydantic.
    """
    merged: Dict[str, Any] = {}
    for section, values in raw.items():
        if values is None:
            values = {}
        if not isinstance(values, dict):
            raise ConfigError(
                f"Invalid configuration: section '{section}' must be a mapping, "
                f"got {type(values).__name__}"
            )
        merged[section] = dict(values)

    for section, model in ToolsmithConfig.model_fields.items():
        section_model = model.annotation
        for key, field_info in section_model.model_fields.items():
            env_key = f"{ENV_PREFIX}{section.upper()}_{key.upper()}"
            if env_key not in environ:
                continue
            value: Any = environ[env_key]
            if getattr(field_info.annotation, "__origin__", None) in (list, List):
                value = [item.strip() for item in value.split(",") if item.strip()]
            merged.setdefault(section, {})[key] = value

    return merged


class ConfigManager:
    """
    Loads configuration from YAML with environment variable overrides.

    The validated result is exposed as `config`; dot-notation lookups via
    get() read from it.
    """

    def __init__(
        self,
        config_path: Optional[str] = None,
        environ: Optional[Dict[str, str]] = None,
    ):
        self._config_path = Path(config_path or DEFAULT_CONFIG_PATH)
        self._environ = dict(os.environ if environ is None else environ)
        self._logger = logging.getLogger("toolsmith.infra.config")
        self.config = self._load_config()

    def _load_config(self) -> ToolsmithConfig:
        """Read, overlay and validate."""
        raw: Dict[str, Any] = {}
        if self._config_path.exists():
            with open(self._config_path, "r", encoding="utf-8") as f:
                try:
                    raw = yaml.safe_load(f) or {}
                except yaml.YAMLError as e:
                    raise ConfigError(f"Invalid YAML in {self._config_path}: {e}") from e
            if not isinstance(raw, dict):
                raise ConfigError(f"Config root must be a mapping: {self._config_path}")
            self._logger.info(f"Loaded config from {self._config_path}")
        else:
            self._logger.warning(f"Config file not found: {self._config_path}, using defaults")

        raw = _apply_env_overrides(raw, self._environ)

        try:
            return ToolsmithConfig.model_validate(raw)
        except ValidationError as e:
            first = e.errors()[0]
            location = ".".join(str(part) for part in first["loc"])
            raise ConfigError(f"Invalid configuration at '{location}': {first['msg']}") from e

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a configuration value using dot notation: 'section.key'.
        """
        value: Any = self.config
        for part in key.split("."):
            if isinstance(value, BaseModel) and part in type(value).model_fields:
                value = getattr(value, part)
            else:
                return default
        return value

    def reload(self) -> ToolsmithConfig:
        """Reload configuration from file."""
        self.config = self._load_config()
        return self.config


class SecretManager:
    """
    Resolves provider API keys from the environment.

    Rules:
    - Never store secrets in code or config
    - Only names are ever logged, never values
    """

    PROVIDER_KEYS: Dict[str, str] = {
        "openai": "OPENAI_API_KEY",
        "anthropic": "ANTHROPIC_API_KEY",
        "groq": "GROQ_API_KEY",
        "together": "TOGETHER_API_KEY",
        "ollama": "OLLAMA_API_KEY",
        "custom": "TOOLSMITH_API_KEY",
    }

    def __init__(self, environ: Optional[Dict[str, str]] = None):
        self._environ = dict(os.environ if environ is None else environ)
        self._logger = logging.getLogger("toolsmith.infra.secrets")

    def env_var_for(self, provider: str, override: Optional[str] = None) -> Optional[str]:
        """Name of the environment variable holding a provider's key."""
        return override or self.PROVIDER_KEYS.get(provider)

    def get_api_key(self, provider: str, override_env: Optional[str] = None) -> Optional[str]:
        """Look up the API key for a provider."""
        env_var = self.env_var_for(provider, override_env)
        if env_var is None:
            return None
        value = self._environ.get(env_var)
        if value:
            self._logger.debug(f"Loaded secret: {env_var}")
        else:
            self._logger.debug(f"Secret not set: {env_var}")
        return value or None

    def list_available(self) -> List[str]:
        """List names of provider keys present (not values!)."""
        return [
            provider for provider, env_var in self.PROVIDER_KEYS.items()
            if self._environ.get(env_var)
        ]


def load_config(
    config_path: Optional[str] = None,
    environ: Optional[Dict[str, str]] = None,
) -> ToolsmithConfig:
    """Convenience wrapper returning the validated configuration."""
    return ConfigManager(config_path, environ).config
