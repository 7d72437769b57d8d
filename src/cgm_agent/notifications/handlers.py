"""Notification handlers: webhook and log-based delivery.

Architecture
~~~~~~~~~~~~
* **Notification**: what happened (``"window_analysis.completed"``, 3 items).
* **NotificationHandler**: abstract base for delivery channels.
* **LogHandler / WebhookHandler**: concrete channels.
* **NotificationDispatcher**: fan-out with error isolation; the
  ``publish(kind, count)`` entry point never raises.
* **create_dispatcher()**: factory that wires handlers from settings.

Adding a new channel
~~~~~~~~~~~~~~~~~~~~
1. Subclass ``NotificationHandler``.
2. Implement ``async send(notification) -> bool``.
3. Register via ``dispatcher.add_handler(...)`` or add to the factory.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Protocol

import httpx
import structlog

if TYPE_CHECKING:
    from cgm_agent.config import Settings

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class Notification:
    """An observer-facing event: *kind* happened to *count* items."""

    kind: str
    count: int = 1
    subject_id: str | None = None
    at: datetime = field(default_factory=lambda: datetime.now(UTC).replace(tzinfo=None))

    def as_payload(self) -> dict[str, object]:
        return {
            "kind": self.kind,
            "count": self.count,
            "subject_id": self.subject_id,
            "at": self.at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class DispatchResult:
    """Outcome summary for a single ``dispatch()`` call."""

    kind: str
    sent: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def all_ok(self) -> bool:
        return len(self.failed) == 0


class NotificationSink(Protocol):
    """Anything observers can be told about through; implementations never raise."""

    async def publish(self, kind: str, count: int = 1, subject_id: str | None = None) -> object: ...


# ── Abstract handler ──────────────────────────────────────────


class NotificationHandler(ABC):
    """Contract for notification delivery channels."""

    name: str = "base"

    @abstractmethod
    async def send(self, notification: Notification) -> bool:
        """Deliver a notification.  Return ``True`` on success."""

    def should_handle(self, notification: Notification) -> bool:  # noqa: ARG002
        """Return ``False`` to skip this notification (default: handle all)."""
        return True


# ── Concrete handlers ────────────────────────────────────────


class LogHandler(NotificationHandler):
    """Write notifications to the structured log (always enabled)."""

    name = "log"

    async def send(self, notification: Notification) -> bool:
        logger.info(
            "notification.log",
            kind=notification.kind,
            count=notification.count,
            subject_id=notification.subject_id,
        )
        return True


class WebhookHandler(NotificationHandler):
    """POST notification JSON to an external webhook URL."""

    name = "webhook"

    def __init__(self, url: str, *, timeout: float = 10.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._url = url
        self._timeout = timeout
        self._transport = transport

    async def send(self, notification: Notification) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(self._url, json=notification.as_payload())
                resp.raise_for_status()
            logger.debug("notification.webhook_sent", url=self._url, kind=notification.kind)
            return True
        except httpx.HTTPError as exc:
            logger.error("notification.webhook_failed", url=self._url, error=str(exc))
            return False


# ── Dispatcher ────────────────────────────────────────────────


class NotificationDispatcher:
    """Fan-out notifications to registered handlers with error isolation.

    Each handler is invoked independently: a failure in one channel never
    blocks delivery to the others, and nothing propagates to the caller.
    """

    def __init__(self, *, handlers: list[NotificationHandler] | None = None) -> None:
        self._handlers: list[NotificationHandler] = handlers if handlers is not None else [LogHandler()]

    def add_handler(self, handler: NotificationHandler) -> None:
        self._handlers.append(handler)

    def remove_handler(self, name: str) -> bool:
        """Remove the first handler matching *name*. Return ``True`` if found."""
        for i, h in enumerate(self._handlers):
            if h.name == name:
                self._handlers.pop(i)
                return True
        return False

    @property
    def handler_names(self) -> list[str]:
        return [h.name for h in self._handlers]

    async def dispatch(self, notification: Notification) -> DispatchResult:
        """Send *notification* to every handler, collecting per-handler outcomes."""
        sent: list[str] = []
        failed: list[str] = []

        for handler in self._handlers:
            if not handler.should_handle(notification):
                continue
            try:
                ok = await handler.send(notification)
                (sent if ok else failed).append(handler.name)
            except Exception:
                logger.exception(
                    "notification.handler_error",
                    handler=handler.name,
                    kind=notification.kind,
                )
                failed.append(handler.name)

        result = DispatchResult(kind=notification.kind, sent=sent, failed=failed)
        if result.failed:
            logger.warning("notification.partial_failure", kind=notification.kind, failed=result.failed)
        return result

    async def publish(self, kind: str, count: int = 1, subject_id: str | None = None) -> DispatchResult:
        """Best-effort notification of observers.  Never raises."""
        return await self.dispatch(Notification(kind=kind, count=count, subject_id=subject_id))


# ── Factory ───────────────────────────────────────────────────


def create_dispatcher(settings: Settings) -> NotificationDispatcher:
    """Build a :class:`NotificationDispatcher` wired from application settings.

    * **LogHandler** is always registered.
    * **WebhookHandler** is added when ``settings.webhook_url`` is non-empty.
    """
    dispatcher = NotificationDispatcher()
    if settings.webhook_url:
        dispatcher.add_handler(WebhookHandler(settings.webhook_url))
    return dispatcher
