"""
Caixinhas — rule sets, administrators and the membership provider.

The governance engines need three things from a caixinha: who administers
it, which rules it runs by (loan policy, governance type, quorum
threshold), and who its current members are. Membership is derived from
caixinha-scoped UserRoles rather than stored separately, so revoking a
role is leaving the caixinha.

Rule changes arrive as ``{ruleKey: {"from": old, "to": new}}`` (the shape
RULE_CHANGE disputes carry) and are applied in one conditional write: the
whole new rule set validates, or nothing changes.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable

from pydantic.alias_generators import to_camel

from caixinha_governance.domain.schema import (
    Caixinha,
    CaixinhaRules,
    Collections,
    ContextType,
    UserRole,
    ValidationStatus,
    build,
    utcnow,
)
from caixinha_governance.errors import NotFoundError, ValidationError
from caixinha_governance.rbac.user_roles import UserRoleService
from caixinha_governance.store.base import RecordStore
from caixinha_governance.store.transactions import OptimisticWriter

logger = logging.getLogger(__name__)

# camelCase and snake_case spellings of every rule key → field name
RULE_FIELDS: dict[str, str] = {
    **{name: name for name in CaixinhaRules.model_fields},
    **{to_camel(name): name for name in CaixinhaRules.model_fields},
}


def normalize_rule_changes(current: CaixinhaRules, proposed: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """
    Turn a proposal into ``{camelKey: {"from": current, "to": new}}``.

    ``proposed`` may map keys to plain values or to ``{"from", "to"}``
    pairs. Keys whose value would not change are dropped.

    Raises:
        ValidationError: On unknown keys, or when the resulting rule set is invalid.
    """
    unknown = sorted(k for k in proposed if k not in RULE_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown caixinha rules: {', '.join(unknown)}", rules=unknown)

    current_json = current.model_dump(mode="json")
    target = dict(current_json)
    for key, value in proposed.items():
        new_value = value["to"] if isinstance(value, dict) and "to" in value else value
        target[RULE_FIELDS[key]] = new_value

    validated = build(CaixinhaRules, **target).model_dump(mode="json")
    return {
        to_camel(name): {"from": current_json[name], "to": validated[name]}
        for name in validated
        if validated[name] != current_json[name]
    }


class MembershipProvider(ABC):
    """Source of a caixinha's current member list."""

    @abstractmethod
    def list_members(self, caixinha_id: str) -> list[str]:
        """User ids of the caixinha's current members."""


class RoleMembershipProvider(MembershipProvider):
    """Members are users with a live (unexpired, not rejected) caixinha-scoped role."""

    def __init__(self, store: RecordStore, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self.clock = clock

    def list_members(self, caixinha_id: str) -> list[str]:
        now = self.clock()
        records = self.store.query(
            Collections.USER_ROLES,
            lambda d: (d.get("context") or {}).get("type") == ContextType.CAIXINHA.value
            and (d.get("context") or {}).get("resourceId") == caixinha_id,
        )
        members: set[str] = set()
        for record in records:
            assignment = UserRole.from_record(record.data)
            if assignment.validation_status != ValidationStatus.REJECTED and not assignment.is_expired(now):
                members.add(assignment.user_id)
        return sorted(members)


class CaixinhaDirectory:
    """
    Caixinha records and their rules.

    Usage:
        directory = CaixinhaDirectory(store, user_roles)
        caixinha = directory.create_caixinha("Vizinhos", admin_id="u1")
        directory.add_member(caixinha.id, "u2", invited_by="u1")
    """

    def __init__(
        self,
        store: RecordStore,
        user_roles: UserRoleService,
        writer: OptimisticWriter | None = None,
        membership: MembershipProvider | None = None,
        default_rules: CaixinhaRules | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.user_roles = user_roles
        self.writer = writer or OptimisticWriter(store)
        self.membership = membership or RoleMembershipProvider(store, clock)
        self.default_rules = default_rules or CaixinhaRules()
        self.clock = clock

    def create_caixinha(
        self,
        name: str,
        admin_id: str,
        rules: CaixinhaRules | dict[str, Any] | None = None,
        caixinha_id: str | None = None,
    ) -> Caixinha:
        """Create a caixinha and register its administrator as CaixinhaManager (pending)."""
        if isinstance(rules, dict):
            merged = self.default_rules.model_dump()
            merged.update({RULE_FIELDS.get(key, key): value for key, value in rules.items()})
            rules = build(CaixinhaRules, **merged)
        now = self.clock()
        values: dict[str, Any] = {
            "name": name,
            "admin_id": admin_id,
            "rules": rules or self.default_rules,
            "created_at": now,
            "updated_at": now,
        }
        if caixinha_id is not None:
            values["id"] = caixinha_id
        caixinha = build(Caixinha, **values)
        self.store.put(Collections.CAIXINHAS, caixinha.id, caixinha.to_record(), expected_revision=0)
        self.user_roles.register_caixinha_manager(admin_id, caixinha.id)
        logger.info("Caixinha created: %s (%s) admin=%s", caixinha.name, caixinha.id, admin_id)
        return caixinha

    def get_caixinha(self, caixinha_id: str) -> Caixinha:
        record = self.store.get(Collections.CAIXINHAS, caixinha_id)
        if record is None:
            raise NotFoundError(f"Caixinha {caixinha_id} not found", caixinha_id=caixinha_id)
        return Caixinha.from_record(record.data)

    def get_rules(self, caixinha_id: str) -> CaixinhaRules:
        return self.get_caixinha(caixinha_id).rules

    def is_admin(self, caixinha_id: str, user_id: str) -> bool:
        return self.get_caixinha(caixinha_id).admin_id == user_id

    def add_member(self, caixinha_id: str, user_id: str, invited_by: str | None = None) -> UserRole:
        self.get_caixinha(caixinha_id)
        return self.user_roles.register_caixinha_member(user_id, caixinha_id, invited_by=invited_by)

    def list_members(self, caixinha_id: str) -> list[str]:
        return self.membership.list_members(caixinha_id)

    def apply_rule_changes(self, caixinha_id: str, changes: dict[str, Any]) -> Caixinha:
        """
        Apply a rule change atomically.

        Raises:
            NotFoundError: If the caixinha does not exist.
            ValidationError: If a key is unknown or the new rule set is invalid.
        """
        def update(data: dict[str, Any]) -> Caixinha:
            caixinha = Caixinha.from_record(data)
            diff = normalize_rule_changes(caixinha.rules, changes)
            rules = caixinha.rules.model_dump(mode="json")
            for key, change in diff.items():
                rules[RULE_FIELDS[key]] = change["to"]
            caixinha.rules = build(CaixinhaRules, **rules)
            caixinha.updated_at = self.clock()
            data.clear()
            data.update(caixinha.to_record())
            return caixinha

        result = self.writer.apply(Collections.CAIXINHAS, caixinha_id, update)
        logger.info("Caixinha %s rules updated: %s", caixinha_id, sorted(changes))
        return result.outcome
