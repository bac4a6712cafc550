"""Shared builders for the governance test suite."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from caixinha_governance.config import GovernanceSettings
from caixinha_governance.domain.schema import CaixinhaRules, Collections
from caixinha_governance.errors import RevisionConflictError
from caixinha_governance.notifications import GovernanceEvent, NotificationDispatcher, Notifier
from caixinha_governance.services import GovernanceServices, build_services
from caixinha_governance.store.base import InMemoryRecordStore, Record

START = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    """Deterministic clock that only moves when told to."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now += timedelta(**delta)
        return self.now


class RecordingDispatcher(NotificationDispatcher):
    def __init__(self) -> None:
        self.events: list[GovernanceEvent] = []

    def dispatch(self, event: GovernanceEvent) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [e.event_type for e in self.events]


class RaceInjectingStore(InMemoryRecordStore):
    """
    In-memory store that runs a hook right before a conditional write.

    The hook fires once for the next conditional put on ``collection``,
    letting a test slip a competing write in between a read and the write
    that depends on it.
    """

    def __init__(self) -> None:
        super().__init__()
        self._hooks: dict[str, Any] = {}
        self.conflicts = 0

    def before_next_write(self, collection: str, hook) -> None:
        self._hooks[collection] = hook

    def put(self, collection: str, record_id: str, data: dict[str, Any],
            expected_revision: int | None = None) -> Record:
        hook = self._hooks.pop(collection, None) if expected_revision else None
        if hook is not None:
            hook()
        try:
            return super().put(collection, record_id, data, expected_revision)
        except RevisionConflictError:
            self.conflicts += 1
            raise


def make_services(clock: FixedClock | None = None, store: InMemoryRecordStore | None = None,
                  **overrides: Any) -> tuple[GovernanceServices, RecordingDispatcher]:
    """In-memory services with the default RBAC catalog seeded."""
    config = GovernanceSettings(optimistic_backoff_seconds=0, notification_webhook_url="", **overrides)
    dispatcher = RecordingDispatcher()
    clock = clock or FixedClock()
    services = build_services(
        config,
        store=store if store is not None else InMemoryRecordStore(),
        notifier=Notifier(dispatcher, clock=clock),
        clock=clock,
    )
    services.catalog.initialize_defaults()
    return services, dispatcher


def validated_member(services: GovernanceServices, caixinha_id: str, user_id: str) -> None:
    assignment = services.caixinhas.add_member(caixinha_id, user_id, invited_by="admin")
    services.user_roles.validate_user_role(assignment.id, {"validatedBy": "test"})


def make_caixinha(services: GovernanceServices, admin_id: str = "admin", members: list[str] = (),
                  rules: dict[str, Any] | CaixinhaRules | None = None, caixinha_id: str = "cx1",
                  validate_admin: bool = True):
    """Caixinha with a validated manager and validated members."""
    caixinha = services.caixinhas.create_caixinha("Caixinha dos Vizinhos", admin_id, rules, caixinha_id=caixinha_id)
    if validate_admin:
        manager = services.user_roles.list_user_roles(admin_id, "caixinha", caixinha.id)[0]
        services.user_roles.validate_user_role(manager.id, {"validatedBy": "test"})
    for member in members:
        validated_member(services, caixinha.id, member)
    return caixinha


def stored_ids(services: GovernanceServices, collection: str = Collections.LOANS) -> list[str]:
    return [r.id for r in services.store.query(collection)]
