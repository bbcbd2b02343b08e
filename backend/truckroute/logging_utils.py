from __future__ import annotations

import logging
from pathlib import Path
from tempfile import gettempdir
from typing import Any

from pythonjsonlogger import jsonlogger

from .settings import settings

LOGGER_NAME = "truckroute"
LOG_FILE_NAME = "navigation.log.jsonl"

# Attributes LogRecord sets itself; passing any of them through `extra` raises.
_RESERVED_KEYS: frozenset[str] = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}


def _parse_level(name: str) -> int:
    level = logging.getLevelName(str(name).strip().upper())
    return level if isinstance(level, int) else logging.INFO


def _log_dir_candidates(configured_out_dir: str) -> tuple[Path, ...]:
    return (
        Path(configured_out_dir) / "logs",
        Path.cwd() / "out" / "logs",
        Path(gettempdir()) / LOGGER_NAME / "logs",
    )


def _resolve_log_dir(configured_out_dir: str) -> Path | None:
    for log_dir in _log_dir_candidates(configured_out_dir):
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            probe = log_dir / ".writetest"
            probe.touch(exist_ok=True)
            probe.unlink(missing_ok=True)
        except OSError:
            continue
        return log_dir
    return None


def _formatter() -> jsonlogger.JsonFormatter:
    return jsonlogger.JsonFormatter(
        "%(asctime)s %(levelname)s %(message)s",
        rename_fields={"asctime": "ts", "levelname": "level"},
    )


def get_logger() -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)

    # Reloaders import the app twice; configure once.
    if getattr(logger, "_configured", False):
        return logger

    logger.setLevel(_parse_level(settings.log_level))
    logger.propagate = False
    formatter = _formatter()

    stream = logging.StreamHandler()
    stream.setFormatter(formatter)
    logger.addHandler(stream)

    log_dir = _resolve_log_dir(settings.out_dir)
    if log_dir is not None:
        try:
            file_handler = logging.FileHandler(log_dir / LOG_FILE_NAME, encoding="utf-8")
        except OSError:
            file_handler = None
        if file_handler is not None:
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    logger._configured = True  # type: ignore[attr-defined]
    return logger


def _safe_fields(fields: dict[str, Any]) -> dict[str, Any]:
    return {(f"{key}_" if key in _RESERVED_KEYS else key): value for key, value in fields.items()}


def log_event(event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    """Emit one structured line: ``event`` is both the message and a top-level key."""
    logger = get_logger()
    if not logger.isEnabledFor(level):
        return
    logger.log(level, event, extra={"event": event, **_safe_fields(fields)})
