"""
Service wiring — one place that assembles the governance core.

The API lifespan and the admin CLI both call ``build_services`` so the
store, the shared OptimisticWriter, the permission cache and the engines
are connected the same way everywhere. Tests inject an in-memory store and
a fixed clock.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from caixinha_governance.config import GovernanceSettings, settings as default_settings
from caixinha_governance.domain.schema import CaixinhaRules, utcnow
from caixinha_governance.governance.caixinhas import CaixinhaDirectory
from caixinha_governance.governance.disputes import DisputeEngine
from caixinha_governance.lending.loans import LoanEngine
from caixinha_governance.notifications import (
    LoggingNotificationDispatcher,
    Notifier,
    WebhookNotificationDispatcher,
)
from caixinha_governance.rbac.bank_validation import BankValidationWorkflow
from caixinha_governance.rbac.catalog import RoleCatalog
from caixinha_governance.rbac.resolver import PermissionCache, PermissionResolver
from caixinha_governance.rbac.user_roles import UserRoleService
from caixinha_governance.store.base import RecordStore
from caixinha_governance.store.sql import SqlRecordStore
from caixinha_governance.store.transactions import OptimisticWriter

logger = logging.getLogger(__name__)


@dataclass
class GovernanceServices:
    """The assembled governance core."""

    store: RecordStore
    writer: OptimisticWriter
    notifier: Notifier
    resolver: PermissionResolver
    catalog: RoleCatalog
    user_roles: UserRoleService
    bank_validation: BankValidationWorkflow
    caixinhas: CaixinhaDirectory
    disputes: DisputeEngine
    loans: LoanEngine

    def close(self) -> None:
        self.notifier.close()


def build_services(
    config: GovernanceSettings | None = None,
    store: RecordStore | None = None,
    notifier: Notifier | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> GovernanceServices:
    """
    Assemble every component from settings.

    Args:
        config: Settings; defaults to the module-level ``settings``.
        store: Record store to use; when omitted a SqlRecordStore is
            created from ``config.database_url_sync`` and its schema
            initialized.
        notifier: Event publisher; when omitted, a webhook notifier if
            ``notification_webhook_url`` is set, otherwise log-only.
        clock: Time source shared by all components.

    Returns:
        GovernanceServices with every engine wired to the same store,
        writer, cache and notifier.
    """
    config = config or default_settings

    if store is None:
        sql_store = SqlRecordStore(config.database_url_sync, timeout_seconds=config.store_timeout_seconds)
        sql_store.initialize()
        store = sql_store

    if notifier is None:
        if config.notification_webhook_url:
            dispatcher = WebhookNotificationDispatcher(
                config.notification_webhook_url, timeout=config.notification_timeout_seconds
            )
        else:
            dispatcher = LoggingNotificationDispatcher()
        notifier = Notifier(dispatcher, clock=clock)

    writer = OptimisticWriter(
        store,
        max_attempts=config.optimistic_max_attempts,
        backoff_seconds=config.optimistic_backoff_seconds,
    )
    resolver = PermissionResolver(
        store,
        cache=PermissionCache(
            ttl_seconds=config.permission_cache_ttl_seconds,
            max_entries=config.permission_cache_max_entries,
        ),
        clock=clock,
    )
    catalog = RoleCatalog(store, writer, resolver, clock=clock)
    user_roles = UserRoleService(store, writer, resolver, notifier=notifier, clock=clock)
    bank_validation = BankValidationWorkflow(
        store,
        user_roles,
        writer,
        ttl=timedelta(hours=config.bank_validation_ttl_hours),
        clock=clock,
    )
    caixinhas = CaixinhaDirectory(
        store,
        user_roles,
        writer,
        default_rules=CaixinhaRules(quorum_threshold=config.default_quorum_threshold),
        clock=clock,
    )
    disputes = DisputeEngine(
        store,
        resolver,
        caixinhas,
        writer,
        notifier=notifier,
        window=timedelta(days=config.dispute_window_days),
        clock=clock,
    )
    loans = LoanEngine(
        store,
        resolver,
        caixinhas,
        disputes,
        writer,
        notifier=notifier,
        max_installments=config.loan_max_installments,
        clock=clock,
    )

    logger.info("Governance services ready (store=%s)", type(store).__name__)
    return GovernanceServices(
        store=store,
        writer=writer,
        notifier=notifier,
        resolver=resolver,
        catalog=catalog,
        user_roles=user_roles,
        bank_validation=bank_validation,
        caixinhas=caixinhas,
        disputes=disputes,
        loans=loans,
    )
