"""Central logging configuration for csalt.

Log records go to stderr because stdout belongs to salt. When the local
settings file has a ``logging.directory`` entry, records are also written to
a file there; an unwritable directory is reported and skipped. Passwords and
tokens are scrubbed from messages and the ``user`` context is always present
to satisfy the format.
"""

from __future__ import annotations

import logging
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

DEFAULT_FILENAME = "csalt.log"
DEFAULT_LEVEL = logging.WARNING

LOG_FORMAT = "%(asctime)s | %(levelname)s | user=%(user)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass(slots=True)
class LoggingConfig:
    """Values from the ``logging`` section of the local settings."""

    directory: Path | None
    filename: str
    level: int


class UserContextFilter(logging.Filter):
    """Ensure every record carries a user name."""

    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - logging hook
        if not getattr(record, "user", None):
            record.user = "-"
        return True


class SecretScrubberFilter(logging.Filter):
    """Remove passwords and tokens from log messages."""

    SECRET_PATTERN = re.compile(r"(password|secret|token)=([^\s]+)", re.IGNORECASE)
    BEARER_PATTERN = re.compile(r"(Authorization['\"]?:\s*['\"]?(?:JWT\s+)?|JWT\s+)([^\s'\",}]+)", re.IGNORECASE)

    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - logging hook
        try:
            message = record.getMessage()
        except Exception:  # pragma: no cover - defensive
            return True

        cleaned = self.SECRET_PATTERN.sub(r"\1=***", message)
        cleaned = self.BEARER_PATTERN.sub(r"\1***", cleaned)
        if cleaned != message:
            record.msg = cleaned
            record.args = ()
        return True


def _level_from_value(raw_level: Any) -> int:
    if isinstance(raw_level, str):
        level = logging.getLevelName(raw_level.upper())
        if isinstance(level, int):
            return level
    if isinstance(raw_level, int) and not isinstance(raw_level, bool):
        return raw_level
    return DEFAULT_LEVEL


def parse_logging_config(local_config: Mapping[str, Any] | None) -> LoggingConfig:
    section = local_config.get("logging") if isinstance(local_config, Mapping) else None
    if not isinstance(section, Mapping):
        section = {}

    directory_value = section.get("directory")
    filename_value = section.get("filename")

    directory = Path(str(directory_value)).expanduser() if directory_value else None
    filename = str(filename_value) if filename_value else DEFAULT_FILENAME
    return LoggingConfig(directory=directory, filename=filename, level=_level_from_value(section.get("level")))


def _ensure_writable_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    probe = path / ".write-test"
    with probe.open("a", encoding="utf-8"):
        probe.touch()
    probe.unlink(missing_ok=True)


def _build_handlers(log_path: Path | None) -> list[logging.Handler]:
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    filters: list[logging.Filter] = [UserContextFilter(), SecretScrubberFilter()]

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_path is not None:
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))

    for handler in handlers:
        handler.setFormatter(formatter)
        for filter_ in filters:
            handler.addFilter(filter_)

    return handlers


def setup_logging(
    local_config: Mapping[str, Any] | None = None, cli_level: int | None = None
) -> logging.Logger:
    """Configure application-wide logging.

    Parameters
    ----------
    local_config:
        Parsed local settings; only the ``logging`` section is used.
    cli_level:
        Level requested on the command line. Overrides ``logging.level``.
    """

    config = parse_logging_config(local_config)
    level = cli_level if cli_level is not None else config.level

    log_path: Path | None = None
    unwritable: Path | None = None
    if config.directory is not None:
        try:
            _ensure_writable_directory(config.directory)
            log_path = config.directory / config.filename
        except OSError:
            unwritable = config.directory

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(level)
    for handler in _build_handlers(log_path):
        root_logger.addHandler(handler)

    logger = logging.getLogger("csalt")
    logger.setLevel(level)
    logger.propagate = True

    if unwritable is not None:
        logger.warning("Logging directory '%s' is not writable. Logging to stderr only.", unwritable)
    if log_path is not None:
        logger.debug("Logging initialized at %s", log_path)
    return logger
