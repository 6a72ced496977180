import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Dict, Iterator, Optional

# analysis the current worker thread is running
_CURRENT_ANALYSIS: ContextVar[Optional[str]] = ContextVar("current_analysis", default=None)

# rendered first, in this order, by both formatters
JOB_FIELDS = ("analysis_id", "status", "progress")

_RECORD_ATTRS = set(logging.LogRecord("", 0, "", 0, "", None, None).__dict__) | {"message", "asctime", "taskName"}


@contextmanager
def analysis_context(analysis_id: Optional[str]) -> Iterator[None]:
    token = _CURRENT_ANALYSIS.set(analysis_id)
    try:
        yield
    finally:
        _CURRENT_ANALYSIS.reset(token)


def job_fields(job) -> Dict[str, Any]:
    """Structured fields for a log line about a job transition."""
    return {"status": job.status, "progress": job.progress}


class AnalysisContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "analysis_id", None) is None:
            record.analysis_id = _CURRENT_ANALYSIS.get()
        return True


def record_fields(record: logging.LogRecord) -> Dict[str, Any]:
    """Non-empty extras of a record, job fields first."""
    extras = {k: v for k, v in record.__dict__.items() if k not in _RECORD_ATTRS and v is not None}
    fields = {k: extras.pop(k) for k in JOB_FIELDS if k in extras}
    fields.update(sorted(extras.items()))
    return fields


class KeyValueFormatter(logging.Formatter):
    def __init__(self) -> None:
        super().__init__(fmt="%(asctime)s %(levelname)s %(name)s %(message)s")

    def formatMessage(self, record: logging.LogRecord) -> str:
        line = super().formatMessage(record)
        pairs = " ".join(f"{k}={v}" for k, v in record_fields(record).items())
        return f"{line} {pairs}" if pairs else line


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.utcnow().replace(microsecond=0).isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        payload.update(record_fields(record))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def build_handler(json_logs: bool = False, stream=None) -> logging.Handler:
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.addFilter(AnalysisContextFilter())
    handler.setFormatter(JsonFormatter() if json_logs else KeyValueFormatter())
    return handler


def setup_logging(level: str = "INFO", json_logs: bool = False) -> None:
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level.upper())
    root.addHandler(build_handler(json_logs))
