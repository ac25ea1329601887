"""Logging configuration for the responses proxy."""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any, Dict

import colorlog

LOGGER_NAME = "responses_proxy"


def setup_logging(log_path: str | None = None) -> logging.Logger:
    """
    Configure logging with rotation.

    Logs are written to /var/log/responses-proxy/responses-proxy.log with:
      - maxBytes: 1 MB
      - backupCount: 3

    LOG_LEVEL=DISABLE disables logging entirely.
    """
    level_name = os.getenv("LOG_LEVEL", "INFO").upper().strip()
    logger = logging.getLogger(LOGGER_NAME)

    # Clear existing handlers to avoid duplication
    logger.handlers.clear()

    if level_name == "DISABLE":
        logging.disable(logging.CRITICAL)
        logger.addHandler(logging.NullHandler())
        logger.propagate = False
        return logger

    logging.disable(logging.NOTSET)
    level = getattr(logging, level_name, logging.INFO)
    logger.setLevel(level)

    if not log_path:
        log_path = "/var/log/responses-proxy/responses-proxy.log"

    handler, fallback_err = _create_log_handler(log_path)
    handler.setFormatter(_create_log_formatter())

    logger.addHandler(handler)
    if fallback_err is not None:
        logger.warning(
            "Failed to open log file %r (%s). Falling back to stdout/stderr logging.",
            log_path,
            fallback_err,
        )
    logger.propagate = False
    return logger


def _create_log_handler(log_path: str) -> tuple[logging.Handler, Exception | None]:
    """Create log handler with fallback to StreamHandler on error."""
    try:
        return RotatingFileHandler(
            log_path,
            maxBytes=1_048_576,  # 1 MB
            backupCount=3,
            encoding="utf-8",
        ), None
    except OSError as e:
        return logging.StreamHandler(), e


def _create_log_formatter() -> logging.Formatter:
    """Create log formatter, colored unless LOG_COLOR is off."""
    if os.getenv("LOG_COLOR", "true").lower() in ("true", "1", "yes"):
        return colorlog.ColoredFormatter(
            "%(log_color)s%(asctime)s %(levelname)-8s%(reset)s %(name)s - %(message)s",
            datefmt=None,
            reset=True,
            log_colors={
                'DEBUG': 'cyan',
                'INFO': 'green',
                'WARNING': 'yellow',
                'ERROR': 'red',
                'CRITICAL': 'red,bg_white',
            },
            secondary_log_colors={},
            style='%'
        )
    return logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")


def truncate_for_log(text: str, max_chars: int = 20000) -> str:
    """Cut long text for log lines, noting the original length."""
    if not isinstance(text, str):
        return ""
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    return f"{text[:max_chars]}\n...(truncated, original length={len(text)})"


def request_body_log_line(
    fields: Dict[str, Any],
    original_text: str,
    processed_text: str,
    *,
    original_obj: Any = None,
    processed_obj: Any = None,
    max_chars: int = 20000,
) -> str:
    """
    Build the structured request body log line.

    Body texts are truncated to ``max_chars``; parsed objects are logged whole
    (null when the body was not a JSON object). Output is ASCII-only so any
    handler encoding can write it, lone surrogates included.
    """
    payload: Dict[str, Any] = {"time": datetime.now(timezone.utc).isoformat()}
    payload.update(fields)
    payload["original_body"] = truncate_for_log(original_text, max_chars)
    payload["processed_body"] = truncate_for_log(processed_text, max_chars)
    payload["original_obj"] = original_obj
    payload["processed_obj"] = processed_obj
    return "request_bodies " + json.dumps(payload, ensure_ascii=True, default=str)
