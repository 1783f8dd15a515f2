"""Log setup for indexer runs: text or JSON lines on stderr, with token redaction."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict

from marketplace_indexer.utils.validation import sanitize_log_message

# Context the pipeline passes as ``extra={...}``; copied into JSON records
CONTEXT_FIELDS = ("repo", "stage", "page", "slug", "count", "duration_ms")

# Client libraries that log every request at INFO/DEBUG
QUIET_LOGGERS = ("httpx", "httpcore", "github", "urllib3")


def _redact(value: Any) -> Any:
    return sanitize_log_message(value) if isinstance(value, str) else value


class SanitizingFilter(logging.Filter):
    """Redacts GitHub tokens and bearer credentials before a record is emitted."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.msg:
            record.msg = sanitize_log_message(str(record.msg))
        if isinstance(record.args, dict):
            record.args = {key: _redact(value) for key, value in record.args.items()}
        elif record.args:
            record.args = tuple(_redact(arg) for arg in record.args)
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line, carrying any run context set on the record."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(
            {name: getattr(record, name) for name in CONTEXT_FIELDS if hasattr(record, name)}
        )
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable lines; the candidate repo, when known, is shown in brackets."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        repo = getattr(record, "repo", None)
        return f"{line} [{repo}]" if repo else line


def configure_logging(
    level: str = "INFO", format: str = "text", sanitize_logs: bool = True
) -> None:
    """Install a single stderr handler on the root logger.

    stdout is left to command output so ``--json`` reports stay parseable.
    Calling this again replaces the previous handler.

    Args:
        level: Log level name
        format: 'text' or 'json'
        sanitize_logs: Redact tokens from messages and arguments
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if format.lower() == "json" else TextFormatter())
    if sanitize_logs:
        handler.addFilter(SanitizingFilter())

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(numeric_level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
