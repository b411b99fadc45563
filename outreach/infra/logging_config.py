# outreach/infra/logging_config.py
import logging
import sys
import json
from datetime import datetime, timezone


_CONTEXT_FIELDS = ("run_id", "org_id", "row_id", "request_id")


class JSONFormatter(logging.Formatter):
    """Format logs as JSON for production environments"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for name in _CONTEXT_FIELDS:
            if hasattr(record, name):
                log_data[name] = getattr(record, name)

        return json.dumps(log_data, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable format for development"""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
        "RESET": "\033[0m",
    }

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.COLORS["RESET"])
        reset = self.COLORS["RESET"]

        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

        context_parts = []
        if hasattr(record, "org_id"):
            context_parts.append(f"org={str(record.org_id)[:8]}")
        if hasattr(record, "run_id"):
            context_parts.append(f"run={str(record.run_id)[:8]}")
        if hasattr(record, "row_id"):
            context_parts.append(f"row={str(record.row_id)[:8]}")

        context = f" [{' '.join(context_parts)}]" if context_parts else ""

        line = (
            f"{color}[{timestamp}] {record.levelname:8}{reset} "
            f"{record.name}{context} - {record.getMessage()}"
        )
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def setup_logging(level: str = "INFO", use_json: bool = False) -> None:
    """
    Configure application logging

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        use_json: If True, use JSON format (for production)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

    if use_json:
        console_handler.setFormatter(JSONFormatter())
    else:
        console_handler.setFormatter(ConsoleFormatter())

    root_logger.addHandler(console_handler)

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.error").setLevel(logging.INFO)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

    logging.info(f"Logging configured: level={level}, json={use_json}")


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with the given name"""
    return logging.getLogger(name)


class LogContext:
    """Add run/org/row context to log records"""

    def __init__(
            self,
            logger: logging.Logger,
            run_id: str | None = None,
            org_id: str | None = None,
            row_id: str | None = None,
            request_id: str | None = None,
    ):
        self.logger = logger
        self.context = {
            k: v for k, v in {
                "run_id": run_id,
                "org_id": org_id,
                "row_id": row_id,
                "request_id": request_id,
            }.items() if v is not None
        }

    def bind(self, **context: str) -> "LogContext":
        """Return a child context with extra ids (e.g. a row inside a run)."""
        merged = {**self.context, **{k: v for k, v in context.items() if v is not None}}
        return LogContext(self.logger, **merged)

    def _log(self, level: int, msg: str, *args, **kwargs):
        extra = kwargs.pop("extra", {})
        extra.update(self.context)
        self.logger.log(level, msg, *args, extra=extra, **kwargs)

    def debug(self, msg: str, *args, **kwargs):
        self._log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs):
        self._log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs):
        self._log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        self._log(logging.ERROR, msg, *args, **kwargs)

    def critical(self, msg: str, *args, **kwargs):
        self._log(logging.CRITICAL, msg, *args, **kwargs)


def mask_phone(phone: str | None) -> str:
    """Mask a phone number for logging.

    Example: ``mask_phone("+15551234567")`` → ``"+155****67"``
    """
    if not phone:
        return "-"
    phone = str(phone)
    if len(phone) <= 6:
        return "***"
    return phone[:4] + "****" + phone[-2:]
