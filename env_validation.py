"""Environment variable validation and provider configuration."""

import logging
import os
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)


class ConfigurationError(RuntimeError):
    """Raised when required configuration values are missing or invalid."""
    pass


_PROVIDER_DEFAULTS: Dict[str, Dict[str, object]] = {
    "gemini": {
        "api_url": "https://generativelanguage.googleapis.com/v1beta",
        "model": "gemini-1.5-pro",
        "history_turns": 10,
    },
    "together": {
        "api_url": "https://api.together.xyz/v1",
        "model": "mistralai/Mixtral-8x7B-Instruct-v0.1",
        "history_turns": 2,
    },
}

KNOWN_PROVIDERS: Tuple[str, ...] = tuple(_PROVIDER_DEFAULTS)


@dataclass(frozen=True)
class ProviderConfig:
    """Connection settings for one LLM provider, captured once at startup."""

    name: str
    api_key: str
    api_url: str
    model: str
    timeout: float = 30.0
    max_retries: int = 2
    backoff_ms: int = 1000
    history_turns: int = 10

    @property
    def has_api_key(self) -> bool:
        return bool(self.api_key)

    def require_api_key(self) -> str:
        if not self.api_key:
            raise ConfigurationError(
                f"API key for {self.name} is not configured ({self.name.upper()}_API_KEY)"
            )
        return self.api_key


def _lookup(environ: Mapping[str, str], name: str) -> Optional[str]:
    value = environ.get(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _int_setting(environ: Mapping[str, str], names: Tuple[str, ...], default: int) -> int:
    for name in names:
        raw = _lookup(environ, name)
        if raw is None:
            continue
        try:
            return int(raw)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid integer for {name}: {raw}") from exc
    return default


def _float_setting(environ: Mapping[str, str], names: Tuple[str, ...], default: float) -> float:
    for name in names:
        raw = _lookup(environ, name)
        if raw is None:
            continue
        try:
            return float(raw)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid number for {name}: {raw}") from exc
    return default


def load_provider_config(name: str, environ: Optional[Mapping[str, str]] = None) -> ProviderConfig:
    """Build the :class:`ProviderConfig` for ``name`` from ``environ``.

    Provider-specific variables (``GEMINI_TIMEOUT``) win over the global
    ``LLM_*`` fallbacks. A missing API key is not an error here; callers
    decide whether to fail or degrade.
    """
    key = name.lower()
    if key not in _PROVIDER_DEFAULTS:
        raise ConfigurationError(f"Unknown provider: {name}")
    env = os.environ if environ is None else environ
    prefix = key.upper()
    defaults = _PROVIDER_DEFAULTS[key]

    api_url = _lookup(env, f"{prefix}_API_URL") or str(defaults["api_url"])
    if not (api_url.startswith("http://") or api_url.startswith("https://")):
        raise ConfigurationError(f"Invalid URL format for {prefix}_API_URL: {api_url}")

    config = ProviderConfig(
        name=key,
        api_key=_lookup(env, f"{prefix}_API_KEY") or "",
        api_url=api_url.rstrip("/"),
        model=_lookup(env, f"{prefix}_MODEL") or str(defaults["model"]),
        timeout=_float_setting(env, (f"{prefix}_TIMEOUT", "LLM_TIMEOUT"), 30.0),
        max_retries=_int_setting(env, (f"{prefix}_MAX_RETRIES", "LLM_MAX_RETRIES"), 2),
        backoff_ms=_int_setting(env, (f"{prefix}_BACKOFF_MS", "LLM_BACKOFF_MS"), 1000),
        history_turns=_int_setting(
            env, (f"{prefix}_HISTORY_TURNS",), int(defaults["history_turns"])  # type: ignore[arg-type]
        ),
    )
    if config.timeout <= 0:
        raise ConfigurationError(f"{prefix}_TIMEOUT must be positive")
    if config.max_retries < 0:
        raise ConfigurationError(f"{prefix}_MAX_RETRIES must not be negative")
    if config.backoff_ms < 0:
        raise ConfigurationError(f"{prefix}_BACKOFF_MS must not be negative")
    return config


def load_all_provider_configs(environ: Optional[Mapping[str, str]] = None) -> Dict[str, ProviderConfig]:
    return {name: load_provider_config(name, environ) for name in KNOWN_PROVIDERS}


def validate_environment() -> None:
    """Validate critical environment variables.

    Raises ConfigurationError if a value is malformed. Missing API keys only
    produce warnings because the tutor degrades to fallback replies.
    """
    defaults = {
        "DB_PATH": os.getenv("DB_PATH") or "data.db",
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    configs = load_all_provider_configs()
    for name, config in configs.items():
        if not config.has_api_key:
            logger.warning(
                "Optional environment variable not set: %s_API_KEY (%s replies will use fallback text)",
                name.upper(),
                name,
            )

    default_provider = (os.getenv("DEFAULT_PROVIDER") or "together").lower()
    if default_provider not in KNOWN_PROVIDERS:
        raise ConfigurationError(f"Invalid DEFAULT_PROVIDER: {default_provider}")

    for var in ("ENGAGEMENT_QUIZ_THRESHOLD", "ENGAGEMENT_PRACTICE_THRESHOLD"):
        raw = os.getenv(var)
        if raw and not raw.strip().isdigit():
            raise ConfigurationError(f"Invalid integer for {var}: {raw}")


def get_env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    try:
        return int(raw) if raw else default
    except ValueError:
        logger.warning("Invalid integer for %s: %r; using %s", name, raw, default)
        return default
