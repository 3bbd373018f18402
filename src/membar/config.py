"""Runtime settings, read from MEMBAR_* environment variables."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from membar.errors import ConfigError
from membar.protocol import default_endpoint

# Selectable refresh intervals in seconds
REFRESH_INTERVALS = (3.0, 5.0, 10.0, 30.0, 60.0)

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(slots=True, frozen=True)
class Settings:
    endpoint: Path = field(default_factory=default_endpoint)
    refresh_interval: float = 5.0
    focused_interval: float = 1.0
    reconnect_delay: float = 1.0
    request_timeout: float | None = None
    detailed: bool = False
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        """Read settings from MEMBAR_* variables, defaulting the rest."""
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}

        if env.get("MEMBAR_ENDPOINT"):
            values["endpoint"] = Path(env["MEMBAR_ENDPOINT"]).expanduser()
        for name in ("refresh_interval", "focused_interval", "reconnect_delay"):
            raw = env.get(f"MEMBAR_{name.upper()}")
            if raw:
                values[name] = _positive_float(f"MEMBAR_{name.upper()}", raw)
        raw = env.get("MEMBAR_REQUEST_TIMEOUT")
        if raw:
            values["request_timeout"] = _positive_float("MEMBAR_REQUEST_TIMEOUT", raw)
        raw = env.get("MEMBAR_DETAILED")
        if raw:
            values["detailed"] = _bool("MEMBAR_DETAILED", raw)
        raw = env.get("MEMBAR_LOG_LEVEL")
        if raw:
            values["log_level"] = log_level(raw)

        return cls(**values)

    def with_overrides(self, **overrides: Any) -> Settings:
        """Copy with every override that is not None applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


def _positive_float(name: str, raw: str) -> float:
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {raw!r}")
    return value


def _bool(name: str, raw: str) -> bool:
    lowered = raw.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ConfigError(f"{name} must be a boolean, got {raw!r}")


def log_level(raw: str) -> str:
    """Normalise a log level name."""
    level = raw.strip().upper()
    if level not in _LOG_LEVELS:
        raise ConfigError(f"unknown log level {raw!r}")
    return level
