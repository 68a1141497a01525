"""Logging configuration.

Plain text on stderr for local debugging, or one JSON object per line for
log collectors. Messages may carry a leading ``[TAG]`` which the JSON
formatter lifts into its own field.
"""

import json
import logging
import re
import sys

_TAG_PATTERN = re.compile(r"\[([A-Z_]+)\]\s*(.*)", re.DOTALL)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(self, app_name: str = None):
        super().__init__()
        self.app_name = app_name or "unknown"

    def format(self, record: logging.LogRecord) -> str:
        # Extract tag from message if present: [TAG] message
        tag = None
        message = record.getMessage()
        tag_match = _TAG_PATTERN.match(message)
        if tag_match:
            tag = tag_match.group(1)
            message = tag_match.group(2)

        log_entry = {
            "app": self.app_name,
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "tag": tag,
            "message": message,
            "extra": {
                "function": record.funcName,
                "line": record.lineno,
            },
        }

        if record.exc_info:
            log_entry["extra"]["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class PlainFormatter(logging.Formatter):
    """Plain text formatter for stderr output (local debugging)."""

    def __init__(self):
        super().__init__(
            fmt='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    app_name: str = None,
) -> logging.Logger:
    """Configure the root logger.

    Args:
        level: Log level name.
        json_output: Emit structured JSON lines instead of plain text.
        app_name: Name stamped on every JSON entry.

    Returns:
        Configured root logger.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper())
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter(app_name) if json_output else PlainFormatter())
    root_logger.addHandler(handler)

    # Suppress noisy HTTP client logs
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    return root_logger
