"""
Carbon Credit Registry Observability

Structured logging and a tamper-evident audit trail for registry operations.

Architecture:
    ┌─────────────────────────────────────────────────────────┐
    │                     Registry Code                        │
    │   logger.info("msg", credit_id=x)   audit.log(...)      │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │              RegistryLogger / AuditLogger                │
    │   layer, operation, error code, correlation IDs          │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │                  logging handlers                        │
    │   StructuredHandler (JSON lines) │ text formatter       │
    └─────────────────────────────────────────────────────────┘

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import contextvars
import hashlib
import json
import logging
import sys
import threading
import time
import traceback
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import wraps
from typing import Any, Callable, Dict, List, Optional, TextIO, Tuple, TypeVar

ROOT_LOGGER_NAME = "carbonreg"

# Context variable for request-scoped correlation
correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default=""
)

logging.getLogger(ROOT_LOGGER_NAME).addHandler(logging.NullHandler())


class RegistryLayer(Enum):
    """Registry components, used to categorize log events."""
    FINGERPRINT = "fingerprint"
    INDEX = "index"
    STORE = "store"
    LIFECYCLE = "lifecycle"
    DESCRIPTOR = "descriptor"
    LEDGER = "ledger"
    EVENTS = "events"
    CONFIG = "config"
    CLI = "cli"


@dataclass
class LogEvent:
    """Structured log event."""
    timestamp: str
    level: str
    logger: str
    message: str
    correlation_id: str = ""
    layer: str = ""
    operation: str = ""
    duration_ms: Optional[float] = None
    error_code: str = ""
    context: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, excluding empty values."""
        d = asdict(self)
        return {k: v for k, v in d.items() if v is not None and v != "" and v != {}}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


class StructuredHandler(logging.Handler):
    """Logging handler that outputs one JSON object per line."""

    def __init__(self, stream: Optional[TextIO] = None):
        super().__init__()
        self.stream = stream or sys.stderr

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event = LogEvent(
                timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                level=record.levelname.lower(),
                logger=record.name,
                message=record.getMessage(),
                correlation_id=correlation_id_var.get(),
                layer=getattr(record, "layer", ""),
                operation=getattr(record, "operation", ""),
                duration_ms=getattr(record, "duration_ms", None),
                error_code=getattr(record, "error_code", ""),
                context=getattr(record, "context", {}),
            )

            if record.exc_info:
                event.exception = "".join(traceback.format_exception(*record.exc_info))

            self.stream.write(event.to_json() + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


class RegistryLogger:
    """
    Structured logger for registry components.

    Attaches the component layer, operation name, error code and any
    keyword context to every record it emits.
    """

    def __init__(self, name: str, layer: RegistryLayer):
        self.name = name
        self.layer = layer
        self._logger = logging.getLogger(f"{ROOT_LOGGER_NAME}.{layer.value}.{name}")

    def _log(
        self,
        level: int,
        message: str,
        operation: str = "",
        error_code: str = "",
        duration_ms: Optional[float] = None,
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        extra = {
            "layer": self.layer.value,
            "operation": operation,
            "error_code": error_code,
            "duration_ms": duration_ms,
            "context": context,
        }
        self._logger.log(level, message, extra=extra, exc_info=exc_info)

    def debug(self, message: str, **context: Any) -> None:
        self._log(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        self._log(logging.INFO, message, **context)

    def warning(self, message: str, **context: Any) -> None:
        self._log(logging.WARNING, message, **context)

    def error(
        self,
        message: str,
        error_code: str = "",
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        self._log(logging.ERROR, message, error_code=error_code, exc_info=exc_info, **context)

    def operation(
        self,
        name: str,
        duration_ms: float,
        success: bool = True,
        **context: Any,
    ) -> None:
        """Log an operation completion."""
        level = logging.DEBUG if success else logging.WARNING
        status = "completed" if success else "failed"
        self._log(
            level,
            f"Operation {name} {status}",
            operation=name,
            duration_ms=duration_ms,
            **context,
        )


def get_logger(name: str, layer: RegistryLayer) -> RegistryLogger:
    """Get a logger for a registry component."""
    return RegistryLogger(name, layer)


def configure_logging(
    level: str = "info",
    fmt: str = "json",
    stream: Optional[TextIO] = None,
) -> logging.Handler:
    """
    Install a single handler on the package logger.

    Args:
        level: debug, info, warning, error or critical
        fmt: "json" for StructuredHandler output, "text" for plain lines
        stream: Output stream (default: stderr)

    Returns:
        The installed handler
    """
    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(getattr(logging, level.upper()))

    for handler in root.handlers[:]:
        if not isinstance(handler, logging.NullHandler):
            root.removeHandler(handler)

    if fmt == "json":
        handler: logging.Handler = StructuredHandler(stream)
    else:
        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))

    root.addHandler(handler)
    return handler


# =============================================================================
# CORRELATION
# =============================================================================

def generate_correlation_id() -> str:
    return f"corr-{uuid.uuid4().hex[:12]}"


def set_correlation_id(correlation_id: str) -> contextvars.Token:
    """Set the correlation ID for the current context."""
    return correlation_id_var.set(correlation_id)


def get_correlation_id() -> str:
    """Get the current correlation ID, creating one if none is set."""
    cid = correlation_id_var.get()
    if not cid:
        cid = generate_correlation_id()
        correlation_id_var.set(cid)
    return cid


T = TypeVar("T")


def timed_operation(
    logger: RegistryLogger,
    operation_name: str,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator for timing and logging operations."""
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            start = time.monotonic()
            success = True
            try:
                return func(*args, **kwargs)
            except Exception:
                success = False
                raise
            finally:
                duration_ms = (time.monotonic() - start) * 1000
                logger.operation(operation_name, duration_ms, success)
        return wrapper
    return decorator


# =============================================================================
# AUDIT TRAIL
# =============================================================================

GENESIS_HASH = "genesis"


@dataclass
class AuditEvent:
    """Audit record of a gated registry action."""
    event_id: str
    timestamp: str
    actor: str
    action: str
    resource_type: str
    resource_id: str
    outcome: str  # success, failure, denied
    correlation_id: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _chain_hash(event: AuditEvent, previous_hash: str) -> str:
    data = json.dumps(event.to_dict(), sort_keys=True, default=str) + previous_hash
    return hashlib.sha256(data.encode()).hexdigest()


class AuditLogger:
    """
    Hash-chained audit trail.

    Each entry's hash covers the entry and the previous hash, so removing or
    editing an entry breaks ``verify_chain``.
    """

    def __init__(self, logger: Optional[RegistryLogger] = None):
        self._logger = logger or get_logger("audit", RegistryLayer.LIFECYCLE)
        self._last_hash: str = GENESIS_HASH
        self._entries: List[Tuple[AuditEvent, str]] = []
        self._lock = threading.Lock()

    def log(
        self,
        actor: Any,
        action: str,
        resource_type: str,
        resource_id: Any,
        outcome: str,
        **details: Any,
    ) -> AuditEvent:
        event = AuditEvent(
            event_id=uuid.uuid4().hex,
            timestamp=datetime.now(timezone.utc).isoformat(),
            actor=str(actor),
            action=action,
            resource_type=resource_type,
            resource_id=str(resource_id),
            outcome=outcome,
            correlation_id=get_correlation_id(),
            details=details,
        )

        with self._lock:
            event_hash = _chain_hash(event, self._last_hash)
            self._last_hash = event_hash
            self._entries.append((event, event_hash))

        self._logger.info(
            f"AUDIT: {action} on {resource_type}/{resource_id}",
            operation="audit",
            outcome=outcome,
            actor=event.actor,
            event_hash=event_hash,
        )
        return event

    @property
    def entries(self) -> List[AuditEvent]:
        with self._lock:
            return [event for event, _ in self._entries]

    @property
    def head(self) -> str:
        with self._lock:
            return self._last_hash

    def verify_chain(self) -> bool:
        """Recompute every link of the chain."""
        with self._lock:
            previous = GENESIS_HASH
            for event, recorded in self._entries:
                if _chain_hash(event, previous) != recorded:
                    return False
                previous = recorded
            return previous == self._last_hash
