"""Configuration management for the responses proxy."""

from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool) -> bool:
    """Get boolean environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_float(name: str, default: float) -> float:
    """Get float environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    """Get integer environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return int(v.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    """Get string environment variable with fallback."""
    v = os.getenv(name)
    if v is None:
        return default
    return v


@dataclass(frozen=True)
class AppConfig:
    """Application configuration."""

    # Upstream settings (every request is forwarded to this single host)
    upstream_host: str
    upstream_scheme: str

    # Sticky session settings
    session_cookie_name: str

    # Timeouts (read is unbounded so long SSE pauses are not cut off)
    request_timeout_s: float

    # Request body logging
    log_request_bodies: bool
    log_body_max_chars: int

    # Server settings
    port: int
    log_level: str
    log_path: str

    @classmethod
    def from_env(cls) -> AppConfig:
        """Load configuration from environment variables."""
        return cls(
            upstream_host=_env_str("UPSTREAM_HOST", "right.codes").strip(),
            upstream_scheme=_env_str("UPSTREAM_SCHEME", "https").strip().lower(),
            session_cookie_name=_env_str("SESSION_COOKIE_NAME", "rc_session").strip(),
            request_timeout_s=_env_float("REQUEST_TIMEOUT_S", 60.0),
            log_request_bodies=_env_bool("LOG_REQUEST_BODIES", True),
            log_body_max_chars=_env_int("LOG_BODY_MAX_CHARS", 20000),
            port=_env_int("PORT", 8000),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper().strip(),
            log_path=_env_str("LOG_PATH", "/var/log/responses-proxy/responses-proxy.log"),
        )

    @property
    def upstream_base_url(self) -> str:
        return f"{self.upstream_scheme}://{self.upstream_host}"

    def validate(self) -> None:
        """Validate configuration."""
        if not self.upstream_host:
            raise ValueError("UPSTREAM_HOST must be non-empty")
        if "/" in self.upstream_host:
            raise ValueError("UPSTREAM_HOST must be a bare host name, not a URL")
        if self.upstream_scheme not in {"http", "https"}:
            raise ValueError("UPSTREAM_SCHEME must be http or https")
        if not self.session_cookie_name:
            raise ValueError("SESSION_COOKIE_NAME must be non-empty")
        if self.request_timeout_s <= 0:
            raise ValueError("REQUEST_TIMEOUT_S must be > 0")
        if self.log_body_max_chars < 0:
            raise ValueError("LOG_BODY_MAX_CHARS must be >= 0")
        if self.port <= 0:
            raise ValueError("PORT must be > 0")
        if not self.log_path:
            raise ValueError("LOG_PATH must be non-empty")


def load_config() -> AppConfig:
    """Load configuration from environment."""
    return AppConfig.from_env()
