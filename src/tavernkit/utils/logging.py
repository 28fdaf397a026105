"""Structured logging helpers for the tavernkit engine."""

from __future__ import annotations

import logging
import logging.handlers
import os
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from ..services.settings import Settings

__all__ = ["setup_logging", "setup_logging_from_settings", "get_logger", "get_log_path"]

_DEFAULT_LOG_DIR = Path.home() / ".tavernkit" / "logs"
_LOG_FILE_NAME = "tavernkit.log"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpcore", "httpx", "openai")
_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_CONFIGURED = False
_LOG_PATH: Path | None = None


def setup_logging(
    level: int | str = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Configure root logging with a rotating ``tavernkit.log`` and optional console output.

    Repeated calls are no-ops unless ``force`` is set. ``TAVERNKIT_LOG_DIR``
    overrides the default directory when ``log_dir`` is not given.
    """

    global _CONFIGURED, _LOG_PATH
    if _CONFIGURED and not force and _LOG_PATH is not None:
        return _LOG_PATH

    resolved_level = _coerce_level(level)
    target_dir = _resolve_log_dir(log_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / _LOG_FILE_NAME

    formatter = logging.Formatter(fmt=_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    handlers: list[logging.Handler] = []
    file_handler = logging.handlers.RotatingFileHandler(
        log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    file_handler.setLevel(resolved_level)
    file_handler.setFormatter(formatter)
    handlers.append(file_handler)

    if console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(resolved_level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    logging.basicConfig(level=resolved_level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    _tune_external_loggers(resolved_level)

    _CONFIGURED = True
    _LOG_PATH = log_path
    logging.getLogger(__name__).debug("Logging configured at %s -> %s", logging.getLevelName(resolved_level), log_path)
    return log_path


def setup_logging_from_settings(settings: "Settings", **kwargs: object) -> Path:
    """Configure logging at DEBUG when ``settings.debug_logging`` is enabled."""

    level = logging.DEBUG if settings.debug_logging else logging.INFO
    return setup_logging(level, **kwargs)  # type: ignore[arg-type]


def get_logger(name: str) -> logging.Logger:
    """Return a module-specific logger."""

    return logging.getLogger(name)


def get_log_path() -> Path | None:
    """Return the currently configured log file if available."""

    return _LOG_PATH


def _coerce_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).strip().upper())
    return value if isinstance(value, int) else logging.INFO


def _resolve_log_dir(log_dir: Path | str | None) -> Path:
    env_override = os.environ.get("TAVERNKIT_LOG_DIR")
    return Path(log_dir or env_override or _DEFAULT_LOG_DIR).expanduser()


def _tune_external_loggers(root_level: int) -> None:
    quiet_level = logging.WARNING if root_level < logging.WARNING else root_level
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(quiet_level)
