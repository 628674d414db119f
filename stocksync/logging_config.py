"""Log setup for the API process and the maintenance scripts.

Scan and webhook code log through get_logger() so the owning seller and
event travel with each record. The console stays plain text; the files
under logs/ are one JSON object per line.
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from pythonjsonlogger import jsonlogger

from stocksync.config import settings

# Extra attributes copied into the JSON output when present on a record
CONTEXT_FIELDS = ("user_id", "event_id", "item_id")

CONSOLE_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"

# Libraries that log each outbound request at INFO
QUIET_LOGGERS = ("httpx", "httpcore", "apscheduler.executors.default")


class SyncJsonFormatter(jsonlogger.JsonFormatter):
    """JSON lines with a UTC timestamp, call site and sync context."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.utcnow().isoformat() + "Z"
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["source"] = f"{record.filename}:{record.lineno}"
        if record.funcName:
            log_record["function"] = record.funcName

        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                log_record[key] = value


def _file_handler(path: Path, level: int, formatter: logging.Formatter) -> logging.Handler:
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(
    base_dir: Union[str, Path, None] = None,
    level: Optional[str] = None,
) -> logging.Logger:
    """
    Replace the root logger's handlers with console and JSON file output.

    Args:
        base_dir: Directory that gets the logs/ folder (default: cwd)
        level: Root level name (default: settings.log_level)

    Returns:
        The configured root logger
    """
    logs_dir = Path(base_dir or Path.cwd()) / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel((level or settings.log_level).upper())
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    root.addHandler(console)

    json_format = SyncJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")
    root.addHandler(_file_handler(logs_dir / "app.log", logging.DEBUG, json_format))
    root.addHandler(_file_handler(logs_dir / "error.log", logging.ERROR, json_format))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root


class ContextLogger(logging.LoggerAdapter):
    """Adds fixed context to every record; per-call extra wins on clashes."""

    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def get_logger(name: str, **context) -> ContextLogger:
    """Logger for `name` that stamps records with e.g. user_id or event_id."""
    return ContextLogger(logging.getLogger(name), context)
