"""In-process notification bus for metering and billing events.

Services emit events such as ``usage.alert_raised`` or
``invoice.generated`` after their writes succeed.  Every matching handler
runs concurrently.  A handler that raises is logged and skipped, so a
broken sink never fails the usage write or invoice run that emitted the
event.

Usage::

    bus = build_event_bus()
    await bus.emit(EventType.INVOICE_GENERATED, organization_id="org-1", data={...})

The application lifespan builds one bus and hands it to services through
their constructors.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

audit_logger = logging.getLogger("api.audit")

# Identifiers worth echoing into the audit trail when a payload carries them.
_AUDIT_KEYS = ("metric_id", "alert_id", "limit_id", "invoice_id", "invoice_number", "export_id", "plan_id", "status")


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------


class EventType(str, Enum):
    """Notifications emitted by the metering and billing services."""

    ALERT_RAISED = "usage.alert_raised"
    ALERT_ACKNOWLEDGED = "usage.alert_acknowledged"
    LIMIT_UPDATED = "usage.limit_updated"
    INVOICE_GENERATED = "invoice.generated"
    INVOICE_STATUS_CHANGED = "invoice.status_changed"
    EXPORT_REQUESTED = "export.requested"
    EXPORT_COMPLETED = "export.completed"
    EXPORT_FAILED = "export.failed"
    SUBSCRIPTION_CHANGED = "subscription.changed"


class EventPayload(BaseModel):
    """What a handler receives for one emitted event."""

    event_type: EventType
    organization_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    correlation_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    data: dict[str, Any] = Field(default_factory=dict)


EventHandler = Callable[[EventPayload], Awaitable[None]]


def _handler_name(handler: EventHandler) -> str:
    return getattr(handler, "__name__", repr(handler))


# ---------------------------------------------------------------------------
# Bus
# ---------------------------------------------------------------------------


class EventBus:
    """Routes each emitted event to its typed handlers plus the wildcard ones."""

    def __init__(self) -> None:
        self._by_type: defaultdict[EventType, list[EventHandler]] = defaultdict(list)
        self._wildcard: list[EventHandler] = []

    def register_handler(
        self,
        handler: EventHandler,
        *,
        event_type: EventType | None = None,
    ) -> None:
        """Subscribe *handler* to *event_type*, or to every event when it is ``None``."""
        if event_type is None:
            self._wildcard.append(handler)
        else:
            self._by_type[event_type].append(handler)
        logger.debug("Subscribed %s to %s", _handler_name(handler), event_type.value if event_type else "*")

    def handlers_for(self, event_type: EventType) -> list[EventHandler]:
        return [*self._by_type.get(event_type, ()), *self._wildcard]

    @property
    def handler_count(self) -> int:
        return len(self._wildcard) + sum(len(handlers) for handlers in self._by_type.values())

    async def emit(
        self,
        event_type: EventType,
        *,
        organization_id: str,
        data: dict[str, Any] | None = None,
        correlation_id: str | None = None,
    ) -> None:
        """Deliver one event.  Never raises on handler failure."""
        handlers = self.handlers_for(event_type)
        if not handlers:
            logger.debug("Dropping %s for org=%s: no subscribers", event_type.value, organization_id)
            return

        payload = EventPayload(
            event_type=event_type,
            organization_id=organization_id,
            data=data or {},
            correlation_id=correlation_id or uuid.uuid4().hex,
        )
        logger.debug(
            "Delivering %s org=%s corr=%s to %d subscriber(s)",
            event_type.value,
            organization_id,
            payload.correlation_id[:8],
            len(handlers),
        )
        await asyncio.gather(*(self._deliver(handler, payload) for handler in handlers))

    @staticmethod
    async def _deliver(handler: EventHandler, payload: EventPayload) -> None:
        try:
            await handler(payload)
        except Exception:
            logger.exception(
                "Subscriber %s failed on %s (org=%s)",
                _handler_name(handler),
                payload.event_type.value,
                payload.organization_id,
            )


# ---------------------------------------------------------------------------
# Built-in subscribers
# ---------------------------------------------------------------------------


async def audit_log_handler(payload: EventPayload) -> None:
    """Append the event to the ``api.audit`` log with its key identifiers."""
    refs = " ".join(f"{key}={payload.data[key]}" for key in _AUDIT_KEYS if key in payload.data)
    audit_logger.info(
        "AUDIT: %s org=%s corr=%s %s",
        payload.event_type.value,
        payload.organization_id,
        payload.correlation_id[:8],
        refs or "-",
    )


async def metrics_handler(payload: EventPayload) -> None:
    logger.debug(
        "METRIC: billing_events_total{type=%s,org=%s} += 1",
        payload.event_type.value,
        payload.organization_id,
    )


def build_event_bus(*extra_handlers: EventHandler) -> EventBus:
    """Bus with the audit and metrics subscribers, plus *extra_handlers* on every event."""
    bus = EventBus()
    for handler in (audit_log_handler, metrics_handler, *extra_handlers):
        bus.register_handler(handler)
    logger.info("Event bus ready with %d subscriber(s)", bus.handler_count)
    return bus
