"""Log setup for the command-line front end, plus the structured event helpers every module uses.

Library code only calls :func:`log_event` and :func:`log_context`; handlers
are installed by whoever embeds the client, or by :func:`configure_logging`.
"""

from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import os
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterator, Mapping

from conduit.paths import log_dir

ENV_PREFIX = "CONDUIT_LOG_"
DEFAULT_LOG_FILE = "conduit.log"
DEFAULT_LOG_MAX_BYTES = 5_000_000
DEFAULT_LOG_BACKUPS = 3
_TRUTHY = frozenset({"1", "true", "yes", "on"})

_LOG_CONTEXT: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar("conduit_log_context", default={})


@dataclass(frozen=True)
class LogSettings:
    log_file: Path
    level: int = logging.INFO
    stderr: bool = False
    json: bool = False
    max_bytes: int = DEFAULT_LOG_MAX_BYTES
    backup_count: int = DEFAULT_LOG_BACKUPS

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, *, file_name: str = DEFAULT_LOG_FILE) -> LogSettings:
        """Read ``CONDUIT_LOG_{DIR,LEVEL,STDERR,JSON,MAX_BYTES,BACKUPS}``; bad values fall back to defaults."""
        env = os.environ if environ is None else environ

        def setting(name: str) -> str | None:
            value = env.get(ENV_PREFIX + name)
            return value.strip() if value and value.strip() else None

        directory = Path(setting("DIR") or log_dir())
        directory.mkdir(parents=True, exist_ok=True)
        level_name = (setting("LEVEL") or "").upper()
        return cls(
            log_file=directory / file_name,
            level=logging.getLevelNamesMapping().get(level_name, logging.INFO),
            stderr=(setting("STDERR") or "").lower() in _TRUTHY,
            json=(setting("JSON") or "").lower() in _TRUTHY,
            max_bytes=_as_int(setting("MAX_BYTES"), DEFAULT_LOG_MAX_BYTES),
            backup_count=_as_int(setting("BACKUPS"), DEFAULT_LOG_BACKUPS),
        )


def _as_int(value: str | None, default: int) -> int:
    return int(value) if value is not None and value.isdigit() else default


def configure_logging(settings: LogSettings) -> None:
    """Point the root logger at a rotating file (and optionally stderr); safe to call again."""
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    root.setLevel(settings.level)

    handlers: list[logging.Handler] = [
        RotatingFileHandler(
            settings.log_file,
            maxBytes=settings.max_bytes,
            backupCount=settings.backup_count,
            encoding="utf-8",
        )
    ]
    if settings.stderr:
        handlers.append(logging.StreamHandler())
    formatter = StructuredFormatter(json_lines=settings.json)
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(ContextFilter())
        root.addHandler(handler)


@contextlib.contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Attach fields such as ``session_id`` to every record logged inside the block."""
    merged = {**_LOG_CONTEXT.get(), **{k: v for k, v in fields.items() if v is not None}}
    token = _LOG_CONTEXT.set(merged)
    try:
        yield
    finally:
        _LOG_CONTEXT.reset(token)


def log_event(logger: logging.Logger, event: str, /, *, level: int = logging.INFO, **fields: Any) -> None:
    """Log ``event`` (a dotted name like ``prompt.completed``) with ``key=value`` fields."""
    logger.log(level, event, extra={"event_fields": fields})


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003 - logging API name
        record.context_fields = dict(_LOG_CONTEXT.get())
        if not hasattr(record, "event_fields"):
            record.event_fields = {}
        return True


class StructuredFormatter(logging.Formatter):
    """Text lines with trailing ``key=value`` pairs, or one JSON object per record."""

    def __init__(self, *, json_lines: bool = False) -> None:
        super().__init__("%(asctime)s %(levelname)s %(name)s %(message)s")
        self.json_lines = json_lines

    def format(self, record: logging.LogRecord) -> str:
        context: dict[str, Any] = getattr(record, "context_fields", {})
        fields: dict[str, Any] = getattr(record, "event_fields", {})
        if self.json_lines:
            payload: dict[str, Any] = {
                "timestamp": self.formatTime(record),
                "level": record.levelname,
                "logger": record.name,
                "message": record.getMessage(),
            }
            if context:
                payload["context"] = context
            if fields:
                payload["fields"] = fields
            return json.dumps(payload, ensure_ascii=True, default=str)
        pairs = [
            f"{key}={_render(value)}"
            for group in (context, fields)
            for key, value in sorted(group.items())
            if value is not None
        ]
        line = super().format(record)
        return " ".join([line, *pairs]) if pairs else line


def _render(value: Any) -> str:
    if isinstance(value, str):
        if not value or any(ch.isspace() or ch in '="' for ch in value):
            return json.dumps(value)
        return value
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, ensure_ascii=True, separators=(",", ":"), default=str)
    return str(value)
