"""
METATX Observability

Structured logging and a tamper-evident trail of authorization outcomes.

Log records are rendered as one JSON object per line. Each record carries the
component layer and the correlation id of the dispatch it belongs to, so all
lines produced while serving one relayed submission can be grouped.

Audit records answer a narrower question: who tried to act as whom, through
which relayer, and what happened. Records are chained by keccak256 over
their canonical JSON, the same hash the rest of the system signs with, so
editing or dropping a record breaks every later link.

    dispatcher ── logger.warning(...) ──► JsonLineFormatter ──► stderr
         │
         └────── audit.log(...) ───────► AuditLogger
                                            record[n].previous = record[n-1].digest

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import wraps
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from eth_utils import keccak

correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "metatx_correlation_id", default=""
)

# Attributes MetaTxLogger attaches to every record via ``extra``.
_RECORD_FIELDS = ("layer", "operation", "duration_ms", "error_code")


class Layer(Enum):
    """METATX components, used as the middle segment of logger names."""
    CODEC = "codec"
    SIGNATURE = "signature"
    NONCE = "nonce"
    DISPATCH = "dispatch"
    LEDGER = "ledger"
    TARGET = "target"
    CONFIG = "config"


class JsonLineFormatter(logging.Formatter):
    """Renders a record as a single JSON object; empty fields are omitted."""

    def format(self, record: logging.LogRecord) -> str:
        line: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        correlation_id = correlation_id_var.get()
        if correlation_id:
            line["correlation_id"] = correlation_id
        for name in _RECORD_FIELDS:
            value = getattr(record, name, None)
            if value is not None and value != "":
                line[name] = value
        context = getattr(record, "context", None)
        if context:
            line["context"] = context
        if record.exc_info:
            line["exception"] = self.formatException(record.exc_info)
        return json.dumps(line, default=str)


class StructuredHandler(logging.StreamHandler):
    """
    Stream handler using JsonLineFormatter.

    Without an explicit stream it writes to whatever ``sys.stderr`` is at emit
    time, so replaced or captured stderr streams are honoured.
    """

    def __init__(self, stream: Any = None):
        super().__init__(stream)
        self._follow_stderr = stream is None
        self.setFormatter(JsonLineFormatter())

    def emit(self, record: logging.LogRecord) -> None:
        if self._follow_stderr:
            self.stream = sys.stderr
        super().emit(record)


class MetaTxLogger:
    """
    Component logger named ``metatx.<layer>.<name>``.

    Keyword arguments to the log methods become the record's ``context``. The
    level follows ``observability.log_level`` unless given explicitly.
    """

    def __init__(self, name: str, layer: Layer, level: Optional[str] = None):
        self.name = name
        self.layer = layer
        self._logger = logging.getLogger(f"metatx.{layer.value}.{name}")
        if level is None:
            from tools.metatx.config import get_config
            level = get_config().observability.log_level.get()
        self._logger.setLevel(level.upper())

        if not any(isinstance(h, StructuredHandler) for h in self._logger.handlers):
            self._logger.addHandler(StructuredHandler())

    @property
    def logger(self) -> logging.Logger:
        return self._logger

    def _emit(self, level: int, message: str, error_code: str = "", **context: Any) -> None:
        if not self._logger.isEnabledFor(level):
            return
        operation = context.pop("operation", "")
        duration_ms = context.pop("duration_ms", None)
        self._logger.log(level, message, extra={
            "layer": self.layer.value,
            "operation": operation,
            "duration_ms": duration_ms,
            "error_code": error_code,
            "context": context,
        })

    def debug(self, message: str, **context: Any) -> None:
        self._emit(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        self._emit(logging.INFO, message, **context)

    def warning(self, message: str, error_code: str = "", **context: Any) -> None:
        self._emit(logging.WARNING, message, error_code=error_code, **context)

    def error(self, message: str, error_code: str = "", **context: Any) -> None:
        self._emit(logging.ERROR, message, error_code=error_code, **context)

    def operation(self, name: str, duration_ms: float, success: bool = True, **context: Any) -> None:
        """Record how long ``name`` took; failures are logged at WARNING."""
        self._emit(
            logging.DEBUG if success else logging.WARNING,
            f"{name} {'ok' if success else 'failed'}",
            operation=name,
            duration_ms=round(duration_ms, 3),
            **context,
        )


def get_logger(name: str, layer: Layer) -> MetaTxLogger:
    return MetaTxLogger(name, layer)


def generate_correlation_id() -> str:
    return f"corr-{uuid.uuid4().hex[:12]}"


def set_correlation_id(correlation_id: str) -> contextvars.Token:
    return correlation_id_var.set(correlation_id)


def get_correlation_id() -> str:
    """The current correlation id; one is assigned on first use."""
    current = correlation_id_var.get()
    if current:
        return current
    current = generate_correlation_id()
    correlation_id_var.set(current)
    return current


T = TypeVar("T")


def timed_operation(
    logger: MetaTxLogger,
    operation_name: str,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator logging the wall time of each call through ``logger.operation``."""
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            started = time.perf_counter()
            ok = False
            try:
                result = func(*args, **kwargs)
                ok = True
                return result
            finally:
                logger.operation(operation_name, (time.perf_counter() - started) * 1000, ok)
        return wrapper
    return decorator


# =============================================================================
# AUTHORIZATION AUDIT TRAIL
# =============================================================================

class AuditEventType(Enum):
    """Authorization outcomes recorded in the audit trail."""
    AUTH_SUCCESS = "auth_success"
    SIGNATURE_INVALID = "signature_invalid"
    SIGNER_MISMATCH = "signer_mismatch"
    REPLAY_ATTEMPT = "replay_attempt"
    ACTION_FAILED = "action_failed"


@dataclass
class AuditEvent:
    """
    One authorization attempt.

    ``principal`` is the recovered identity ("" when recovery failed) and
    ``submitter`` the relayer that paid for the attempt.
    """
    event_id: str
    event_type: AuditEventType
    timestamp: str
    principal: str
    submitter: str
    resource_id: str
    outcome: str  # success, rejected, failed
    details: Dict[str, Any] = field(default_factory=dict)
    correlation_id: str = ""
    previous_event_digest: Optional[str] = None
    event_digest: str = ""

    def __post_init__(self):
        if not self.event_digest:
            self.event_digest = self.compute_digest()

    def _body(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "timestamp": self.timestamp,
            "principal": self.principal,
            "submitter": self.submitter,
            "resource_id": self.resource_id,
            "outcome": self.outcome,
            "details": self.details,
            "correlation_id": self.correlation_id,
            "previous_event_digest": self.previous_event_digest,
        }

    def compute_digest(self) -> str:
        canonical = json.dumps(self._body(), sort_keys=True, separators=(",", ":"), default=str)
        return "0x" + keccak(text=canonical).hex()

    def to_dict(self) -> Dict[str, Any]:
        return {**self._body(), "event_digest": self.event_digest}


class AuditLogger:
    """
    Append-only, hash-chained audit trail.

    Entries are not part of ledger state, so a reverted dispatch still leaves
    its record.
    """

    def __init__(self):
        self._events: List[AuditEvent] = []
        self._lock = threading.Lock()

    def log(
        self,
        event_type: AuditEventType,
        principal: str,
        submitter: str,
        resource_id: str,
        outcome: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEvent:
        with self._lock:
            event = AuditEvent(
                event_id=f"evt-{len(self._events) + 1:012d}",
                event_type=event_type,
                timestamp=datetime.now(timezone.utc).isoformat(),
                principal=principal,
                submitter=submitter,
                resource_id=resource_id,
                outcome=outcome,
                details=dict(details or {}),
                correlation_id=correlation_id_var.get(),
                previous_event_digest=self._events[-1].event_digest if self._events else None,
            )
            self._events.append(event)
            return event

    def verify_chain(self) -> Tuple[bool, Optional[int]]:
        """
        Recompute every digest and link.

        Returns (True, None) for an intact trail, otherwise (False, index of
        the first bad record).
        """
        with self._lock:
            previous: Optional[str] = None
            for index, event in enumerate(self._events):
                if event.previous_event_digest != previous or event.compute_digest() != event.event_digest:
                    return (False, index)
                previous = event.event_digest
        return (True, None)

    def get_events(
        self,
        principal: Optional[str] = None,
        event_type: Optional[AuditEventType] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        """Most recent events, optionally filtered by principal and type."""
        with self._lock:
            selected = [
                e for e in self._events
                if (principal is None or e.principal.lower() == principal.lower())
                and (event_type is None or e.event_type is event_type)
            ]
        return selected[-limit:]

    def export(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [event.to_dict() for event in self._events]

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)
