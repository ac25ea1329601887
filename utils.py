"""Utility functions for the responses proxy."""

from __future__ import annotations

import logging
from pathlib import Path

from dotenv import load_dotenv

from logger import LOGGER_NAME

log = logging.getLogger(LOGGER_NAME)


def load_env_files() -> None:
    """Load .env files from program and current directory."""
    this_dir = Path(__file__).resolve().parent
    p1 = this_dir / ".env"
    p2 = Path.cwd() / ".env"

    loaded_any = False
    if p1.exists():
        loaded_any = load_dotenv(dotenv_path=str(p1), override=True) or loaded_any
        log.info("Loaded .env from %s", str(p1))
    else:
        log.info("No .env in program directory: %s", str(p1))

    if p2.exists() and p2 != p1:
        loaded_any = load_dotenv(dotenv_path=str(p2), override=True) or loaded_any
        log.info("Loaded .env from %s", str(p2))
    elif p2 != p1:
        log.info("No .env in current directory: %s", str(p2))

    if not loaded_any:
        log.info(".env not loaded (not found or no variables applied).")


def dump_config(config) -> None:
    """Log effective configuration at startup."""
    log.info("=== Responses proxy startup config ===")
    log.info("UPSTREAM=%s", config.upstream_base_url)
    log.info("SESSION_COOKIE_NAME=%s", config.session_cookie_name)
    log.info("REQUEST_TIMEOUT_S=%s", config.request_timeout_s)
    log.info("LOG_REQUEST_BODIES=%s", config.log_request_bodies)
    log.info("LOG_BODY_MAX_CHARS=%s", config.log_body_max_chars)
    log.info("LOG_LEVEL=%s", config.log_level)
    log.info("LOG_PATH=%s", config.log_path)
    log.info("PORT=%s", config.port)
    log.info("WorkingDir=%s", str(Path.cwd()))
    log.info("ProgramDir=%s", str(Path(__file__).resolve().parent))
    log.info("======================================")
