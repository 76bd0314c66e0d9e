"""Session configuration loading.

Configuration is treated as data: an optional YAML file supplies values,
environment variables override the endpoint selection, and everything else
falls back to defaults suited to the public demo application id.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any
from urllib.parse import urlencode

import yaml

DEFAULT_ENDPOINT = "wss://ws.derivws.com/websockets/v3"
DEFAULT_APP_ID = "1089"
DEFAULT_LANGUAGE = "EN"

ENV_APP_ID = "DERIV_APP_ID"
ENV_ENDPOINT = "DERIV_API_URL"
ENV_LANGUAGE = "DERIV_LANGUAGE"


class ConfigError(ValueError):
    """Raised when configuration values are missing or inconsistent."""


_NUMERIC_FIELDS = (
    "request_timeout",
    "connect_timeout",
    "retry_base_delay",
    "retry_max_delay",
    "retry_jitter",
    "keepalive_interval",
    "keepalive_timeout",
)


@dataclass(frozen=True)
class SessionConfig:
    """Connection and retry settings for a DerivSession.

    Attributes:
        endpoint: WebSocket endpoint without query string.
        app_id: Application identifier selecting the remote app registration.
        language: Language code passed to the endpoint.
        request_timeout: Deadline for a correlated response (seconds).
        connect_timeout: Deadline for opening the transport (seconds).
        retry_base_delay: First reconnect delay after an unclean drop (seconds).
        retry_max_delay: Cap for the doubling reconnect delay (seconds).
        retry_jitter: Fraction of the delay added at random, in [0, 1].
        keepalive_interval: Seconds between pings while Ready, None disables.
        keepalive_timeout: Deadline for a ping response (seconds).
    """

    endpoint: str = DEFAULT_ENDPOINT
    app_id: str = DEFAULT_APP_ID
    language: str = DEFAULT_LANGUAGE
    request_timeout: float = 5.0
    connect_timeout: float = 15.0
    retry_base_delay: float = 1.0
    retry_max_delay: float = 60.0
    retry_jitter: float = 0.2
    keepalive_interval: float | None = 30.0
    keepalive_timeout: float = 10.0

    def __post_init__(self) -> None:
        if not self.endpoint:
            raise ConfigError("endpoint is required")
        for name in ("endpoint", "language"):
            if not isinstance(getattr(self, name), str):
                raise ConfigError(f"{name} must be a string")
        for name in _NUMERIC_FIELDS:
            value = getattr(self, name)
            if value is None and name == "keepalive_interval":
                continue
            # bool is an int subclass; "true" in YAML is not a duration
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigError(f"{name} must be a number, got {value!r}")
        if not str(self.app_id):
            raise ConfigError("app_id is required")
        for name in (
            "request_timeout",
            "connect_timeout",
            "retry_base_delay",
            "keepalive_timeout",
        ):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")
        if self.retry_max_delay < self.retry_base_delay:
            raise ConfigError("retry_max_delay must not be below retry_base_delay")
        if not 0 <= self.retry_jitter <= 1:
            raise ConfigError("retry_jitter must be within [0, 1]")
        if self.keepalive_interval is not None and self.keepalive_interval <= 0:
            raise ConfigError("keepalive_interval must be positive or None")

    @property
    def url(self) -> str:
        """Full endpoint URL including the application id query."""
        query = urlencode({"app_id": self.app_id, "l": self.language})
        return f"{self.endpoint}?{query}"


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load YAML file with error handling."""
    if not path.exists():
        raise ConfigError(f"File not found: {path}")
    with path.open() as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a mapping at top level of {path}")
    return data


def load_config(
    path: str | Path | None = None,
    *,
    environ: dict[str, str] | None = None,
) -> SessionConfig:
    """Build a SessionConfig from an optional YAML file and the environment.

    Args:
        path: Optional YAML file. Keys match SessionConfig field names; the
            settings may also be nested under a top-level ``session`` key.
        environ: Environment mapping, defaults to ``os.environ``.

    Returns:
        Validated SessionConfig.

    Raises:
        ConfigError: If the file is missing, malformed, or values are invalid.
    """
    env = os.environ if environ is None else environ
    raw: dict[str, Any] = {}

    if path is not None:
        data = _load_yaml(Path(path).expanduser())
        raw = data.get("session", data)
        if not isinstance(raw, dict):
            raise ConfigError(f"Expected a mapping under 'session' in {path}")

    known = {f.name for f in fields(SessionConfig)}
    unknown = set(raw) - known
    if unknown:
        raise ConfigError(f"Unknown config keys: {', '.join(sorted(unknown))}")

    values = dict(raw)
    if env.get(ENV_APP_ID):
        values["app_id"] = env[ENV_APP_ID]
    if env.get(ENV_ENDPOINT):
        values["endpoint"] = env[ENV_ENDPOINT]
    if env.get(ENV_LANGUAGE):
        values["language"] = env[ENV_LANGUAGE]

    if "app_id" in values:
        values["app_id"] = str(values["app_id"])

    return SessionConfig(**values)
