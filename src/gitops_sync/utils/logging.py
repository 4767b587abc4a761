# ABOUTME: Structured logging with correlation IDs for the GitOps sync controller
# ABOUTME: Implements audit logging for operator actions and sync item outcomes

"""
Structured logging with correlation IDs and audit trails.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

1. STRUCTURED LOGGING: every log line is an event name plus key/value fields,
   rendered as coloured console output in development or JSON in production.

2. CORRELATION IDs: each reconciliation tick (and each control-surface request)
   gets its own short id so every line it produces can be grouped together:

    {"correlation_id": "a1b2c3d4", "event": "Reconciling", "application": "guestbook"}
    {"correlation_id": "a1b2c3d4", "event": "Drift detected", "items": 2}
    {"correlation_id": "a1b2c3d4", "event": "Sync finished", "phase": "Succeeded"}

3. AUDIT LOGGING: operator actions and every sync item outcome are recorded
   with secrets masked.

=============================================================================
CONTEXT VARIABLES (contextvars)
=============================================================================

Many Applications reconcile concurrently as asyncio tasks. A ContextVar gives
each task its own correlation id without threading it through every call;
the "application" field is bound the same way via structlog.contextvars.
"""

from __future__ import annotations

import json
import logging
import uuid
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

from gitops_sync.utils.safety import mask_secrets

if TYPE_CHECKING:
    from collections.abc import MutableMapping
    from pathlib import Path

    from gitops_sync.models import SyncItemResult


# =============================================================================
# CORRELATION ID MANAGEMENT
# =============================================================================

correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")


def get_correlation_id() -> str:
    """
    Get current correlation ID or generate new one.

    Code running outside a request or tick (startup, shutdown) still gets an
    id so its logs stay correlatable.

    Returns:
        8-character correlation ID string.
    """
    cid = correlation_id.get()
    if not cid:
        cid = str(uuid.uuid4())[:8]
        correlation_id.set(cid)
    return cid


def set_correlation_id(cid: str) -> None:
    """
    Set correlation ID for current context.

    Called at the start of each reconciliation tick and each control-surface
    request. An empty string makes the next get_correlation_id() generate one.
    """
    correlation_id.set(cid)


def add_correlation_id(
    logger: structlog.types.WrappedLogger,  # noqa: ARG001 - Required by structlog Processor API
    method_name: str,  # noqa: ARG001 - Required by structlog Processor API
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """
    Add correlation ID to log events.

    This is a STRUCTLOG PROCESSOR: it receives the event dictionary on its
    way to the renderer and returns it enriched.
    """
    event_dict["correlation_id"] = get_correlation_id()
    return event_dict


def bind_application(name: str) -> None:
    """Attach the application name to every log line of the current task."""
    structlog.contextvars.bind_contextvars(application=name)


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
) -> None:
    """
    Configure structured logging.

    Call it once at startup; calling it again reconfigures (e.g. a new level).

    PROCESSOR PIPELINE:
    -------------------
    1. merge_contextvars: fields bound with bind_contextvars (application name)
    2. add_log_level: "level" field
    3. TimeStamper: ISO-8601 timestamp
    4. add_correlation_id: our correlation id
    5. Renderer: JSON lines or coloured console

    Args:
        level: "DEBUG", "INFO", "WARNING", "ERROR" or "CRITICAL".
        json_output: JSON for log aggregators, console text otherwise.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_correlation_id,
    ]

    if json_output:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# =============================================================================
# AUDIT LOGGER
# =============================================================================


class AuditLogger:
    """
    Audit logger for operator actions and sync outcomes.

    WHAT WE LOG:
    ------------
    - timestamp: UTC ISO 8601
    - correlation_id: tick or request identifier
    - action: "sync_application", "sync_item", "delete_application", ...
    - target: application name or object identity ("Deployment/web/api")
    - result: "success", "blocked", "error", or an item outcome
    - details: masked context (never resolved secret values)

    TWO OUTPUT MODES:
    -----------------
    1. FILE: append one JSON object per line
    2. STDOUT: structlog event named "audit"
    """

    def __init__(self, log_path: Path | None = None) -> None:
        self._log_path = log_path
        self._logger = structlog.get_logger("audit")

    def log(
        self,
        action: str,
        target: str,
        result: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Log an auditable action. All convenience methods delegate here."""
        if details:
            details = mask_secrets(details)

        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "correlation_id": get_correlation_id(),
            "action": action,
            "target": target,
            "result": result,
        }
        if details:
            entry["details"] = details

        if self._log_path:
            with self._log_path.open("a") as f:
                f.write(json.dumps(entry, default=str) + "\n")
        else:
            self._logger.info(
                "audit",
                action=action,
                target=target,
                result=result,
                details=details,
            )

    def log_read(self, action: str, target: str) -> None:
        self.log(action, target, "success")

    def log_write(
        self,
        action: str,
        target: str,
        result: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Log a write. Results: "success", "triggered", "queued", ..."""
        self.log(action, target, result, details)

    def log_blocked(self, action: str, target: str, reason: str) -> None:
        """Log an operation refused by the safety guard."""
        self.log(action, target, "blocked", {"reason": reason})

    def log_error(self, action: str, target: str, error: str) -> None:
        self.log(action, target, "error", {"error": error})

    def log_sync_item(self, application: str, item: SyncItemResult) -> None:
        """Record the terminal outcome of one sync item."""
        self.log(
            "sync_item",
            item.resource,
            item.outcome.value,
            {
                "application": application,
                "operation": item.action.value,
                "retries": item.retries,
                "message": item.message,
            },
        )
