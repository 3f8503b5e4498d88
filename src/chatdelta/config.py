"""
Configuration loading for chatdelta.

Settings come from three layers, lowest to highest precedence:

1. Defaults
2. The ``[chatdelta]`` section of a TOML file
3. ``CHATDELTA_*`` environment variables that are explicitly set

Command-line options are applied on top with ``apply_overrides``.

TOML Configuration Example:
    [chatdelta]
    timeout = 45             # Per-attempt timeout in seconds (default: 30)
    max_retries = 2          # Retries after the first attempt (default: 0)
    retry_strategy = "linear"  # exponential | linear | fixed (default: exponential)
    retry_delay = 0.5        # Base backoff delay in seconds (default: 1.0)
    temperature = 0.7        # Optional, 0.0 - 2.0
    max_tokens = 2048        # Response token budget (default: 1024)
    summary_priority = ["claude", "gemini", "gpt"]
    log_dir = "~/.chatdelta/logs"

    [chatdelta.models]
    gpt = "gpt-4o-mini"
    claude = "claude-3-haiku-20240307"

Environment Variables:
    - CHATDELTA_TIMEOUT
    - CHATDELTA_MAX_RETRIES
    - CHATDELTA_RETRY_STRATEGY
    - CHATDELTA_RETRY_DELAY
    - CHATDELTA_TEMPERATURE
    - CHATDELTA_MAX_TOKENS
    - CHATDELTA_SUMMARY_PRIORITY (comma-separated)
    - CHATDELTA_LOG_DIR
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

try:
    import tomllib
except ImportError:
    import tomli as tomllib  # Python < 3.11 fallback

from chatdelta.core.providers.base import Provider
from chatdelta.core.resilience import (
    DEFAULT_MAX_TOKENS,
    DEFAULT_TIMEOUT,
    ClientConfiguration,
    RetryStrategy,
)
from chatdelta.core.summarizer import DEFAULT_SUMMARY_PRIORITY

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATHS = (
    Path("chatdelta.toml"),
    Path(".chatdelta.toml"),
    Path.home() / ".config" / "chatdelta" / "config.toml",
)

ENV_PREFIX = "CHATDELTA_"


@dataclass
class ChatDeltaConfig:
    """
    Resolved chatdelta settings.

    Attributes:
        timeout: Per-attempt timeout in seconds
        max_retries: Retries after the first attempt
        retry_strategy: Backoff policy name
        retry_delay: Base backoff delay in seconds
        temperature: Sampling temperature, None for provider default
        max_tokens: Response token budget
        summary_priority: Provider tags in summarizer priority order
        log_dir: Directory for session log files (None = default)
        models: Per-provider model overrides keyed by provider tag
    """

    timeout: float = DEFAULT_TIMEOUT
    max_retries: int = 0
    retry_strategy: str = "exponential"
    retry_delay: float = 1.0
    temperature: Optional[float] = None
    max_tokens: int = DEFAULT_MAX_TOKENS
    summary_priority: List[str] = field(
        default_factory=lambda: [p.value for p in DEFAULT_SUMMARY_PRIORITY]
    )
    log_dir: Optional[str] = None
    models: Dict[str, str] = field(default_factory=dict)

    def validate(self) -> None:
        """
        Validate the configuration.

        Raises:
            ValueError: If any setting is invalid
        """
        self.to_client_configuration()
        self.summary_providers()
        for name in self.models:
            Provider.parse(name)

    def to_client_configuration(self) -> ClientConfiguration:
        """Build the immutable configuration shared by every provider."""
        return ClientConfiguration(
            timeout=self.timeout,
            max_retries=self.max_retries,
            retry_strategy=RetryStrategy.parse(self.retry_strategy, self.retry_delay),
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )

    def summary_providers(self) -> List[Provider]:
        return [Provider.parse(name) for name in self.summary_priority]

    def model_for(self, provider: Provider) -> str:
        """Configured model for a provider, falling back to its default."""
        for name, model in self.models.items():
            if Provider.parse(name) is provider:
                return model
        return provider.profile.default_model

    def apply_overrides(self, **overrides: Any) -> "ChatDeltaConfig":
        """
        Apply command-line overrides in place; ``None`` values are ignored.

        A ``models`` override is merged into the existing model table.
        """
        known = {f.name for f in fields(self)}
        for key, value in overrides.items():
            if value is None:
                continue
            if key not in known:
                raise ValueError(f"Unknown configuration key: {key}")
            if key == "models":
                self.models.update({k: v for k, v in value.items() if v})
            else:
                setattr(self, key, value)
        return self

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatDeltaConfig":
        """Create a config from a dictionary (typically the [chatdelta] section)."""
        config = cls()

        if "timeout" in data:
            config.timeout = float(data["timeout"])
        if "max_retries" in data:
            config.max_retries = int(data["max_retries"])
        if "retry_strategy" in data:
            config.retry_strategy = str(data["retry_strategy"])
        if "retry_delay" in data:
            config.retry_delay = float(data["retry_delay"])
        if data.get("temperature") is not None:
            config.temperature = float(data["temperature"])
        if "max_tokens" in data:
            config.max_tokens = int(data["max_tokens"])
        if "log_dir" in data:
            config.log_dir = str(data["log_dir"])

        if "summary_priority" in data:
            priority = data["summary_priority"]
            if isinstance(priority, list):
                config.summary_priority = [str(p) for p in priority]
            else:
                logger.warning(
                    "Invalid summary_priority format (expected list): %s", type(priority)
                )

        if "models" in data:
            models = data["models"]
            if isinstance(models, dict):
                config.models = {str(k): str(v) for k, v in models.items()}
            else:
                logger.warning("Invalid models format (expected table): %s", type(models))

        return config

    @classmethod
    def from_toml(cls, path: Path) -> "ChatDeltaConfig":
        """
        Load configuration from a TOML file.

        Raises:
            FileNotFoundError: If the config file doesn't exist
        """
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path, "rb") as f:
            data = tomllib.load(f)

        return cls.from_dict(data.get("chatdelta", {}))

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "ChatDeltaConfig":
        """Create a config from ``CHATDELTA_*`` environment variables only."""
        return _apply_env(cls(), os.environ if environ is None else environ)


def _parse_strategy(raw: str) -> str:
    return RetryStrategy.parse(raw, 0.0).kind.value


def _parse_priority(raw: str) -> List[str]:
    names = [p.strip() for p in raw.split(",") if p.strip()]
    for name in names:
        Provider.parse(name)
    return names


_ENV_FIELDS: Dict[str, Callable[[str], Any]] = {
    "timeout": float,
    "max_retries": int,
    "retry_strategy": _parse_strategy,
    "retry_delay": float,
    "temperature": float,
    "max_tokens": int,
    "log_dir": str,
    "summary_priority": _parse_priority,
}


def _apply_env(config: ChatDeltaConfig, environ: Any) -> ChatDeltaConfig:
    for name, convert in _ENV_FIELDS.items():
        var = f"{ENV_PREFIX}{name.upper()}"
        raw = environ.get(var)
        if not raw:
            continue
        try:
            setattr(config, name, convert(raw))
        except ValueError:
            logger.warning("Invalid %s: %s, using configured value", var, raw)
    return config


def load_config(
    config_file: Optional[Path] = None,
    use_env: bool = True,
    environ: Optional[Dict[str, str]] = None,
) -> ChatDeltaConfig:
    """
    Load configuration from TOML with environment overrides.

    Priority (highest to lowest):
    1. Environment variables that are set
    2. TOML config file (explicit path, or first default location found)
    3. Default values

    Raises:
        FileNotFoundError: If an explicit config file does not exist
    """
    config = ChatDeltaConfig()

    if config_file is not None:
        config = ChatDeltaConfig.from_toml(Path(config_file))
        logger.debug("Loaded config from %s", config_file)
    else:
        for path in DEFAULT_CONFIG_PATHS:
            if path.exists():
                try:
                    config = ChatDeltaConfig.from_toml(path)
                    logger.debug("Loaded config from %s", path)
                    break
                except (OSError, ValueError, tomllib.TOMLDecodeError) as e:
                    logger.warning("Failed to load config from %s: %s", path, e)

    if use_env:
        _apply_env(config, os.environ if environ is None else environ)

    return config
