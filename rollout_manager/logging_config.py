"""
Logging setup for the rollout manager.

Records go to the console and to rotating files under the log directory:

    rollout-manager.log   everything at file level
    error.log             errors only
    attempts.log          attempt lifecycle (started, stage failed, finalized)

Records logged inside a LogContext carry the workload (and optionally the
attempt and stage) they belong to; both formatters render those fields.
"""
# mypy: ignore-errors

import contextvars
import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

ATTEMPT_LOGGER = "rollout_manager.attempts"

# Record attributes set through LogContext or ``extra=``
CONTEXT_FIELDS = ("workload", "attempt", "stage", "reference")

NOISY_LOGGERS = ("httpx", "httpcore", "kubernetes", "urllib3")

_log_context: contextvars.ContextVar = contextvars.ContextVar("log_context", default={})


class StructuredFormatter(logging.Formatter):
    """One JSON object per record, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                entry[field] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Plain text with the workload in brackets, optionally coloured by level."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = False):
        super().__init__(
            fmt="%(asctime)s %(levelname)-8s %(name)s%(scope)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        # Work on a copy: handlers share the record
        record = logging.makeLogRecord(record.__dict__)
        workload = getattr(record, "workload", None)
        attempt = getattr(record, "attempt", None)
        if workload and attempt:
            record.scope = f" [{workload} #{attempt}]"
        elif workload:
            record.scope = f" [{workload}]"
        else:
            record.scope = ""
        if self.use_colors and record.levelname in self.COLORS:
            record.levelname = f"{self.COLORS[record.levelname]}{record.levelname}{self.RESET}"
        return super().format(record)


def _rotating_handler(
    path: Path,
    level: int,
    formatter: logging.Formatter,
    max_bytes: int,
    backup_count: int,
) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backup_count
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(
    log_dir: str = "/var/log/rollout-manager",
    console_level: str = "INFO",
    file_level: str = "DEBUG",
    use_json: bool = False,
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 10,
) -> None:
    """
    Configure root and attempt loggers.

    Args:
        log_dir: Directory for log files, created if missing
        console_level: Level for the stderr handler
        file_level: Level for rollout-manager.log
        use_json: Write JSON lines to the log files instead of plain text
        max_bytes: Size at which a log file rotates
        backup_count: Rotated files kept per log

    Raises:
        PermissionError: If ``log_dir`` cannot be created or written
    """
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)
    file_formatter = StructuredFormatter() if use_json else HumanReadableFormatter()

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers.clear()

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(getattr(logging, console_level))
    console.setFormatter(HumanReadableFormatter(use_colors=sys.stderr.isatty()))
    root_logger.addHandler(console)

    root_logger.addHandler(
        _rotating_handler(
            log_path / "rollout-manager.log",
            getattr(logging, file_level),
            file_formatter,
            max_bytes,
            backup_count,
        )
    )
    root_logger.addHandler(
        _rotating_handler(
            log_path / "error.log", logging.ERROR, file_formatter, max_bytes, backup_count
        )
    )

    # Attempt events also propagate, so they show on the console and main log
    attempt_logger = logging.getLogger(ATTEMPT_LOGGER)
    attempt_logger.handlers.clear()
    attempt_logger.setLevel(logging.DEBUG)
    attempt_logger.addHandler(
        _rotating_handler(
            log_path / "attempts.log", logging.DEBUG, file_formatter, max_bytes, backup_count
        )
    )

    context_filter = ContextFilter()
    for handler in root_logger.handlers + attempt_logger.handlers:
        handler.addFilter(context_filter)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    root_logger.debug(
        f"Logging to {log_dir} (console {console_level}, file {file_level}, json={use_json})"
    )


class ContextFilter(logging.Filter):
    """Copy the active LogContext fields onto records passing through a handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _log_context.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


class LogContext:
    """
    Attach context fields to records logged inside the block.

    The fields live in a context variable, so concurrent orchestrations each
    see only their own. Handlers installed by setup_logging apply them through
    ContextFilter; a field passed with ``extra=`` wins over the context.

    Example:
        with LogContext(workload="security/breach-lookup"):
            logger.info("rolling out")
    """

    def __init__(self, **fields: Any):
        self.fields = fields
        self._token: Optional[contextvars.Token] = None

    def __enter__(self):
        self._token = _log_context.set({**_log_context.get(), **self.fields})
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._token is not None:
            _log_context.reset(self._token)
            self._token = None


def log_attempt_event(
    event: str,
    workload: str,
    attempt: int,
    details: Optional[Dict[str, Any]] = None,
    level: str = "INFO",
) -> None:
    """
    Write one attempt lifecycle event to the attempts log.

    Args:
        event: started, failed, cancelled or finalized
        workload: Workload identity as "namespace/name"
        attempt: Attempt number, starting at 1
        details: Extra key/values appended as JSON
        level: Log level name
    """
    message = f"Attempt {attempt} for {workload}: {event}"
    if details:
        message = f"{message} - {json.dumps(details, default=str)}"
    logging.getLogger(ATTEMPT_LOGGER).log(
        getattr(logging, level.upper()),
        message,
        extra={"workload": workload, "attempt": attempt},
    )
