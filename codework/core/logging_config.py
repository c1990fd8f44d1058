import logging
import os
from pythonjsonlogger import jsonlogger

# Filled by the request middleware in main.py
HTTP_FIELDS = {
    "request_id": "-",
    "method": "-",
    "path": "-",
    "status_code": 0,
    "duration_ms": 0,
    "client": "-",
}

# Passed via extra= by the trigger, the worker run and the Celery signals
EVALUATION_FIELDS = (
    "submission_id",
    "language",
    "user_id",
    "task_name",
    "task_id",
    "stage",
    "overall_status",
)

PROPAGATED_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "celery", "httpx")


class ContextDefaultsFilter(logging.Filter):
    """Give every record the HTTP and evaluation fields named in the format.

    A record logged without ``extra`` (library code, startup messages) would
    otherwise fail formatting on the missing keys. Evaluation fields default to
    None so an API log line and a worker log line share one shape.
    """

    def __init__(self, service_name: str) -> None:
        super().__init__()
        self.service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        for key, default in HTTP_FIELDS.items():
            if not hasattr(record, key):
                setattr(record, key, default)
        for key in EVALUATION_FIELDS:
            if not hasattr(record, key):
                setattr(record, key, None)
        if not hasattr(record, "service"):
            record.service = self.service_name
        return True


def _format_string() -> str:
    fields = list(HTTP_FIELDS) + ["service"] + list(EVALUATION_FIELDS)
    return "%(asctime)s %(levelname)s %(name)s %(message)s " + " ".join(f"{k}=%({k})s" for k in fields)


def setup_logging() -> None:
    """Send JSON lines to stdout from the API process and the Celery worker alike.

    ``SERVICE_NAME`` tells the two apart (``api`` unless set).
    """
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    service_name = os.getenv("SERVICE_NAME", "api")

    root = logging.getLogger()
    root.setLevel(level)

    handler = logging.StreamHandler()
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            _format_string(),
            rename_fields={"levelname": "level", "asctime": "time"},
        )
    )
    handler.addFilter(ContextDefaultsFilter(service_name))

    root.handlers.clear()
    root.addHandler(handler)
    logging.captureWarnings(True)

    # uvicorn and celery install their own plain-text handlers
    for name in PROPAGATED_LOGGERS:
        lg = logging.getLogger(name)
        lg.handlers.clear()
        lg.propagate = True
