"""
Configuration management and loading.

Handles application settings and environment variables.
"""

import os
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from ..core.errors import ConfigurationError
from ..core.resources import ResourceLimits
from ..core.retry import BackoffConfig

DEFAULT_CONFIG_PATH = "cipher-coder.yaml"
DEFAULT_ENDPOINT = "https://api.openai.com/v1"
DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_HISTORY_PATH = ".cipher-coder.db"

ENV_API_KEY = "CIPHER_CODER_API_KEY"
ENV_FALLBACK_API_KEY = "OPENAI_API_KEY"
ENV_ENDPOINT = "CIPHER_CODER_ENDPOINT"
ENV_MODEL_PATH = "CIPHER_CODER_MODEL_PATH"


@dataclass(frozen=True)
class ExternalLLMConfig:
    """Remote OpenAI-compatible API settings."""
    api_key: Optional[str] = None
    endpoint: str = DEFAULT_ENDPOINT
    default_model: str = DEFAULT_MODEL

    def __post_init__(self):
        """Validate endpoint and model."""
        if not self.endpoint.startswith(("http://", "https://")):
            raise ConfigurationError("external_llm.endpoint must be an http(s) URL")
        if not self.default_model.strip():
            raise ConfigurationError("external_llm.default_model cannot be empty")

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_key.strip())


@dataclass(frozen=True)
class LocalLLMConfig:
    """Local model settings."""
    model_path: Optional[str] = None
    model_type: Optional[str] = None
    use_gpu: bool = True

    @property
    def has_valid_model(self) -> bool:
        """Whether the configured model path exists on disk."""
        return bool(self.model_path) and Path(self.model_path).expanduser().exists()


@dataclass(frozen=True)
class InferenceConfig:
    """Default sampling parameters and transport timeout."""
    timeout: float = 30.0
    max_tokens: int = 512
    temperature: float = 0.7
    top_p: float = 1.0
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0

    def __post_init__(self):
        """Validate ranges."""
        if self.timeout <= 0:
            raise ConfigurationError("inference.timeout must be > 0")
        if not 1 <= self.max_tokens <= 4096:
            raise ConfigurationError("inference.max_tokens must be between 1 and 4096")
        if not 0 <= self.temperature <= 2:
            raise ConfigurationError("inference.temperature must be between 0 and 2")
        if not 0 <= self.top_p <= 1:
            raise ConfigurationError("inference.top_p must be between 0 and 1")
        for name in ("frequency_penalty", "presence_penalty"):
            if not -2 <= getattr(self, name) <= 2:
                raise ConfigurationError(f"inference.{name} must be between -2 and 2")


@dataclass(frozen=True)
class RetryConfig:
    """Retry and backoff settings for remote calls."""
    max_retries: int = 3
    base_delay_ms: float = 1000.0
    max_delay_ms: float = 10000.0
    max_override_delay_ms: float = 60000.0

    def __post_init__(self):
        """Validate retry count and delay bounds."""
        if self.max_retries < 0:
            raise ConfigurationError("retry.max_retries must be >= 0")
        try:
            self.backoff()
        except ValueError as e:
            raise ConfigurationError(f"retry: {e}") from e

    def backoff(self) -> BackoffConfig:
        return BackoffConfig(
            base_delay_ms=self.base_delay_ms,
            max_delay_ms=self.max_delay_ms,
            max_override_delay_ms=self.max_override_delay_ms,
        )


@dataclass(frozen=True)
class ChatConfig:
    """Chat history settings."""
    context_window: int = 10
    save_history: bool = True
    history_path: str = DEFAULT_HISTORY_PATH

    def __post_init__(self):
        """Validate the context window."""
        if self.context_window < 1:
            raise ConfigurationError("chat.context_window must be >= 1")
        if not self.history_path.strip():
            raise ConfigurationError("chat.history_path cannot be empty")


@dataclass(frozen=True)
class AppConfig:
    """Complete application configuration."""
    external_llm: ExternalLLMConfig = field(default_factory=ExternalLLMConfig)
    local_llm: LocalLLMConfig = field(default_factory=LocalLLMConfig)
    inference: InferenceConfig = field(default_factory=InferenceConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    resources: ResourceLimits = field(default_factory=ResourceLimits)
    chat: ChatConfig = field(default_factory=ChatConfig)


# key -> accepted types, per section
_SCHEMA: Dict[str, Tuple[type, Dict[str, Tuple[type, ...]]]] = {
    "external_llm": (ExternalLLMConfig, {
        "api_key": (str, type(None)),
        "endpoint": (str,),
        "default_model": (str,),
    }),
    "local_llm": (LocalLLMConfig, {
        "model_path": (str, type(None)),
        "model_type": (str, type(None)),
        "use_gpu": (bool,),
    }),
    "inference": (InferenceConfig, {
        "timeout": (int, float),
        "max_tokens": (int,),
        "temperature": (int, float),
        "top_p": (int, float),
        "frequency_penalty": (int, float),
        "presence_penalty": (int, float),
    }),
    "retry": (RetryConfig, {
        "max_retries": (int,),
        "base_delay_ms": (int, float),
        "max_delay_ms": (int, float),
        "max_override_delay_ms": (int, float),
    }),
    "resources": (ResourceLimits, {
        "max_concurrent": (int,),
        "memory_multiplier": (int, float),
        "minimum_memory_mb": (int, float),
        "system_memory_buffer_mb": (int, float),
        "max_cpu_usage_percent": (int, float),
    }),
    "chat": (ChatConfig, {
        "context_window": (int,),
        "save_history": (bool,),
        "history_path": (str,),
    }),
}


def _parse_section(name: str, data: Any) -> Any:
    """Parse and validate one configuration section.

    Args:
        name: Section name, used in error messages
        data: Raw YAML mapping for the section

    Returns:
        The section's frozen dataclass

    Raises:
        ConfigurationError: If the section is malformed
    """
    section_cls, allowed = _SCHEMA[name]
    if data is None:
        return section_cls()
    if not isinstance(data, dict):
        raise ConfigurationError(f"'{name}' must be a dictionary")

    unknown_keys = set(data.keys()) - set(allowed.keys())
    if unknown_keys:
        raise ConfigurationError(f"Unknown keys in {name}: {unknown_keys}")

    values = {}
    for key, value in data.items():
        types = allowed[key]
        # bool is an int subclass; reject it where a number is expected
        if isinstance(value, bool) and bool not in types:
            raise ConfigurationError(f"'{key}' in {name} must be a number")
        if not isinstance(value, types):
            expected = " or ".join(t.__name__ for t in types if t is not type(None))
            raise ConfigurationError(f"'{key}' in {name} must be {expected}")
        values[key] = value

    try:
        return section_cls(**values)
    except ConfigurationError:
        raise
    except ValueError as e:
        raise ConfigurationError(f"Invalid {name} configuration: {e}") from e


def apply_env_overrides(config: AppConfig, env: Optional[Mapping[str, str]] = None) -> AppConfig:
    """Override credentials, endpoint and model path from the environment.

    Args:
        config: Configuration loaded from file or defaults
        env: Environment mapping (defaults to ``os.environ``)

    Returns:
        A new AppConfig with overrides applied
    """
    env = os.environ if env is None else env

    external = config.external_llm
    api_key = env.get(ENV_API_KEY) or (None if external.has_credentials else env.get(ENV_FALLBACK_API_KEY))
    if api_key:
        external = replace(external, api_key=api_key)
    if env.get(ENV_ENDPOINT):
        external = replace(external, endpoint=env[ENV_ENDPOINT])

    local = config.local_llm
    if env.get(ENV_MODEL_PATH):
        local = replace(local, model_path=env[ENV_MODEL_PATH])

    return replace(config, external_llm=external, local_llm=local)


def load_config(path: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> AppConfig:
    """Load and validate configuration from a YAML file.

    Strict validation ensures no silent misconfiguration: unknown sections
    and keys are rejected, and every value is type and range checked. All
    sections are optional; without a path the defaults are used.

    Args:
        path: Path to YAML configuration file, or None for defaults
        env: Environment mapping for overrides (defaults to ``os.environ``)

    Returns:
        Validated AppConfig object

    Raises:
        ConfigurationError: If the file is missing, unreadable or invalid
    """
    raw_config: Any = {}
    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigurationError(f"Config file not found: {path}")

        with open(config_path, 'r', encoding='utf-8') as f:
            try:
                raw_config = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid YAML in config file {path}: {e}") from e

    if raw_config is None:
        raw_config = {}
    if not isinstance(raw_config, dict):
        raise ConfigurationError("Configuration must be a mapping of sections")

    unknown_keys = set(raw_config.keys()) - set(_SCHEMA.keys())
    if unknown_keys:
        raise ConfigurationError(f"Unknown configuration keys: {unknown_keys}")

    sections = {name: _parse_section(name, raw_config.get(name)) for name in _SCHEMA}
    return apply_env_overrides(AppConfig(**sections), env)


def resolve_config_path(path: Optional[str] = None) -> Optional[str]:
    """Pick the config file to load.

    An explicit path always wins; otherwise the default file is used when it
    exists in the working directory.
    """
    if path is not None:
        return path
    if Path(DEFAULT_CONFIG_PATH).exists():
        return DEFAULT_CONFIG_PATH
    return None


def render_default_config() -> str:
    """YAML text for a config file holding every default.

    Credentials are left out; they belong in the environment.
    """
    defaults = asdict(AppConfig())
    defaults["external_llm"].pop("api_key")
    return yaml.safe_dump(defaults, sort_keys=False)
