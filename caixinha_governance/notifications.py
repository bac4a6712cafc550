"""
Notifications — fire-and-forget events on governance state changes.

Engines publish an event after a state transition has been written:
dispute created / resolved / canceled, loan requested / status changed,
user role validated. Delivery is best effort: a dispatcher failure is
logged and swallowed by ``Notifier.publish`` so it can never roll back or
block the transition that triggered it.

Dispatchers:
- LoggingNotificationDispatcher — writes events to the log (default)
- WebhookNotificationDispatcher — POSTs events as JSON with httpx
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable

import httpx
from pydantic import BaseModel, Field

from caixinha_governance.domain.schema import new_id, utcnow

logger = logging.getLogger(__name__)


class GovernanceEvent(BaseModel):
    """Notification payload."""

    id: str = Field(default_factory=new_id)
    event_type: str = Field(description="e.g. 'dispute.resolved', 'loan.status_changed'")
    subject_id: str = Field(description="Id of the dispute, loan or user role concerned")
    caixinha_id: str | None = None
    occurred_at: datetime = Field(default_factory=utcnow)
    payload: dict[str, Any] = Field(default_factory=dict)


class NotificationDispatcher(ABC):
    @abstractmethod
    def dispatch(self, event: GovernanceEvent) -> None:
        """Deliver one event. May raise; callers go through Notifier."""

    def close(self) -> None:
        pass


class LoggingNotificationDispatcher(NotificationDispatcher):
    def dispatch(self, event: GovernanceEvent) -> None:
        logger.info(
            "Governance event: %s subject=%s caixinha=%s payload=%s",
            event.event_type, event.subject_id, event.caixinha_id, event.payload,
        )


class WebhookNotificationDispatcher(NotificationDispatcher):
    """POST each event to a webhook endpoint."""

    def __init__(self, url: str, timeout: float = 5.0, headers: dict[str, str] | None = None) -> None:
        self.url = url
        self.timeout = timeout
        self._headers = {"Content-Type": "application/json", **(headers or {})}
        self._client: httpx.Client | None = None

    def _ensure_client(self) -> httpx.Client:
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(headers=self._headers, timeout=self.timeout)
        return self._client

    def dispatch(self, event: GovernanceEvent) -> None:
        client = self._ensure_client()
        resp = client.post(self.url, content=event.model_dump_json())
        resp.raise_for_status()

    def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            self._client.close()


class Notifier:
    """
    Publishing facade used by the engines.

    Usage:
        notifier = Notifier(WebhookNotificationDispatcher(url))
        notifier.publish("loan.status_changed", subject_id=loan.id,
                         caixinha_id=loan.caixinha_id, payload={"status": "aprovado"})
    """

    def __init__(
        self,
        dispatcher: NotificationDispatcher | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.dispatcher = dispatcher or LoggingNotificationDispatcher()
        self.clock = clock

    def publish(
        self,
        event_type: str,
        subject_id: str,
        caixinha_id: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> GovernanceEvent:
        event = GovernanceEvent(
            event_type=event_type,
            subject_id=subject_id,
            caixinha_id=caixinha_id,
            occurred_at=self.clock(),
            payload=payload or {},
        )
        try:
            self.dispatcher.dispatch(event)
        except httpx.HTTPError as exc:
            logger.warning("Notification %s for %s not delivered: %s", event_type, subject_id, exc)
        except Exception:
            logger.exception("Notification dispatcher failed for %s %s", event_type, subject_id)
        return event

    def close(self) -> None:
        self.dispatcher.close()
