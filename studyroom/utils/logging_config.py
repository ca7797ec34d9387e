"""
Logging setup

Every record carries the request id and the calling actor (when there is
one). In production each record is a single JSON object; locally a plain
line with the request id in brackets.

Domain events (reservation created, status changed, identifier issued) go
through ``StructuredLogger`` so their fields land under ``event`` instead of
being buried in the message.
"""

import logging
import json
import sys
from datetime import datetime, timezone
from typing import Optional, Any, Dict
from contextvars import ContextVar

request_id_var: ContextVar[str] = ContextVar('request_id', default='')
actor_id_var: ContextVar[str] = ContextVar('actor_id', default='')

PLAIN_FORMAT = '%(asctime)s [%(request_id)s] %(name)s %(levelname)s: %(message)s'


class RequestContextFilter(logging.Filter):
    """Copies the request context onto each record"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get() or '-'
        record.actor_id = actor_id_var.get()
        return True


class JSONFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        request_id = getattr(record, 'request_id', '-')
        if request_id != '-':
            entry["request_id"] = request_id
        actor_id = getattr(record, 'actor_id', '')
        if actor_id:
            entry["actor_id"] = actor_id

        event = getattr(record, 'event', None)
        if event:
            entry["event"] = event

        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        elif record.levelno >= logging.WARNING:
            entry["where"] = f"{record.module}:{record.funcName}:{record.lineno}"

        return json.dumps(entry, ensure_ascii=False, default=str)


class StructuredLogger(logging.LoggerAdapter):
    """Module logger with helpers for the reservation engine's events"""

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        kwargs.setdefault('extra', {}).update(self.extra)
        return msg, kwargs

    def event(self, level: int, name: str, msg: str, **fields):
        fields = {k: v for k, v in fields.items() if v is not None}
        fields["name"] = name
        self.log(level, msg, extra={"event": fields})

    def reservation_created(
        self,
        reservation_id: str,
        user_id: str,
        seat_label: str,
        payment_status: str,
        duration_ms: float = None
    ):
        self.event(
            logging.INFO,
            "reservation_created",
            f"Reservation {reservation_id} on seat {seat_label} for {user_id} ({payment_status})",
            reservation_id=reservation_id,
            user_id=user_id,
            seat_label=seat_label,
            payment_status=payment_status,
            duration_ms=duration_ms
        )

    def reservation_transition(self, reservation_id: str, field: str, old_status: str, new_status: str):
        self.event(
            logging.INFO,
            "reservation_transition",
            f"Reservation {reservation_id} {field}: {old_status} -> {new_status}",
            reservation_id=reservation_id,
            field=field,
            old=old_status,
            new=new_status
        )

    def identifier_issued(self, user_id: str, membership_id: str, attempts: int):
        self.event(
            logging.INFO,
            "identifier_issued",
            f"Membership ID {membership_id} issued to {user_id}",
            user_id=user_id,
            membership_id=membership_id,
            attempts=attempts
        )


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    include_uvicorn: bool = True
) -> None:
    """
    Install the stdout handler on the root logger.

    Args:
        level: DEBUG, INFO, WARNING or ERROR
        json_format: one JSON object per line (production)
        include_uvicorn: route uvicorn's loggers through the same handler
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.addFilter(RequestContextFilter())
    handler.setFormatter(JSONFormatter() if json_format else logging.Formatter(PLAIN_FORMAT))

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]

    if include_uvicorn:
        for logger_name in ["uvicorn", "uvicorn.access", "uvicorn.error"]:
            uvicorn_logger = logging.getLogger(logger_name)
            uvicorn_logger.handlers = [handler]
            uvicorn_logger.propagate = False

    for noisy in ["httpx", "httpcore", "sqlalchemy.engine", "apscheduler"]:
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> StructuredLogger:
    return StructuredLogger(logging.getLogger(name), {})


def set_request_context(request_id: str, actor_id: Optional[str] = None):
    request_id_var.set(request_id)
    actor_id_var.set(actor_id or '')


def clear_request_context():
    request_id_var.set('')
    actor_id_var.set('')
