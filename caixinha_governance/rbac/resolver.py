"""
Permission Resolver — contextual RBAC checks for the governance core.

Answers "may user U do P in context (type, resource)?" from three kinds of
records: UserRole assignments, Role → Permission links, and Permissions.

Resolution rules:
- A request scoped to a resource (e.g. caixinha C1) is answered by the
  assignments for exactly that scope plus the user's global assignments.
  Global is the fallback, never an override of a scoped denial (there are
  no denials, only grants).
- Only assignments that are validated and not expired confer anything.
- Absence of a grant is ``False``, never an error.
- Store failures are answered with ``False`` (fail closed).

Monetarily sensitive permissions (MONETARY_PERMISSIONS) skip the cache and
read the assignments with strong consistency right before answering, so a
role rejected a moment ago cannot authorize fund movement.

The cache is explicit: keyed by (user_id, context_type, resource_id),
bounded in size and age, invalidated per user whenever one of their
UserRoles changes, and cleared whenever the role/permission catalog does.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterator

from caixinha_governance.domain.schema import (
    MONETARY_PERMISSIONS,
    Collections,
    ContextType,
    Permission,
    RoleContext,
    UserRole,
    utcnow,
)
from caixinha_governance.errors import ForbiddenError, ServiceError
from caixinha_governance.store.base import RecordStore

logger = logging.getLogger(__name__)

CacheKey = tuple[str, ContextType, "str | None"]


@dataclass(frozen=True)
class EffectiveGrants:
    """Roles and permissions a user holds in one context, valid until the earliest assignment expiry."""

    role_ids: frozenset[str]
    permissions: frozenset[str]
    valid_until: datetime | None = None


@dataclass
class _CacheEntry:
    grants: EffectiveGrants
    expires_at: float


class PermissionCache:
    """Bounded TTL cache of EffectiveGrants keyed by (user, context type, resource)."""

    def __init__(self, ttl_seconds: float = 30.0, max_entries: int = 10_000,
                 monotonic: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._monotonic = monotonic
        self._entries: OrderedDict[CacheKey, _CacheEntry] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: CacheKey) -> EffectiveGrants | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= self._monotonic():
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return entry.grants

    def put(self, key: CacheKey, grants: EffectiveGrants, ttl_seconds: float | None = None) -> None:
        if self.ttl_seconds <= 0:
            return
        ttl = self.ttl_seconds if ttl_seconds is None else min(self.ttl_seconds, ttl_seconds)
        if ttl <= 0:
            return
        with self._lock:
            self._entries[key] = _CacheEntry(grants=grants, expires_at=self._monotonic() + ttl)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def invalidate_user(self, user_id: str) -> None:
        with self._lock:
            for key in [k for k in self._entries if k[0] == user_id]:
                del self._entries[key]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class PermissionResolver:
    """
    Central permission check used by every governance service and the API.

    Usage:
        resolver = PermissionResolver(store)
        if resolver.has_permission(user_id, "dispute:vote", ContextType.CAIXINHA, caixinha_id):
            ...
    """

    def __init__(
        self,
        store: RecordStore,
        cache: PermissionCache | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.cache = cache or PermissionCache()
        self.clock = clock

    # ── Assignments ────────────────────────────────────────────

    def get_user_roles(
        self,
        user_id: str,
        context_type: ContextType | str | None = None,
        resource_id: str | None = None,
        consistent: bool = False,
    ) -> list[UserRole]:
        """
        List a user's role assignments, whatever their validation status.

        Args:
            user_id: The user.
            context_type: Restrict to this context type.
            resource_id: Restrict to this resource (with ``context_type``).
            consistent: Read with strong consistency.

        Returns:
            Matching UserRoles, oldest first.
        """
        wanted_type = ContextType(context_type) if context_type is not None else None

        def matches(data: dict) -> bool:
            if data.get("userId") != user_id:
                return False
            context = data.get("context") or {}
            if wanted_type is not None and context.get("type") != wanted_type.value:
                return False
            if resource_id is not None and context.get("resourceId") != resource_id:
                return False
            return True

        if consistent:
            records = [
                fresh for fresh in (
                    self.store.get(Collections.USER_ROLES, r.id, consistent=True)
                    for r in self.store.query(Collections.USER_ROLES, matches)
                )
                if fresh is not None and matches(fresh.data)
            ]
        else:
            records = self.store.query(Collections.USER_ROLES, matches)
        roles = [UserRole.from_record(r.data) for r in records]
        return sorted(roles, key=lambda ur: ur.created_at)

    def _active_assignments(
        self,
        user_id: str,
        context: RoleContext,
        consistent: bool,
    ) -> Iterator[UserRole]:
        now = self.clock()
        for assignment in self.get_user_roles(user_id, consistent=consistent):
            scoped = assignment.context.same_as(context)
            if not scoped and assignment.context.type != ContextType.GLOBAL:
                continue
            if assignment.confers_capabilities(now):
                yield assignment

    def _role_permission_names(self, role_id: str) -> set[str]:
        links = self.store.query(
            Collections.ROLE_PERMISSIONS,
            lambda data: data.get("roleId") == role_id,
        )
        names: set[str] = set()
        for link in links:
            record = self.store.get(Collections.PERMISSIONS, link.data["permissionId"])
            if record is not None:
                names.add(Permission.from_record(record.data).name)
        return names

    def resolve(self, user_id: str, context_type: ContextType | str = ContextType.GLOBAL,
                resource_id: str | None = None) -> EffectiveGrants:
        """
        Compute (or fetch from cache) the user's grants in a context.

        Raises:
            ServiceError: If the store fails.
        """
        context = RoleContext(type=ContextType(context_type), resource_id=resource_id)
        key: CacheKey = (user_id, context.type, context.resource_id)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        role_ids: set[str] = set()
        permissions: set[str] = set()
        valid_until: datetime | None = None
        for assignment in self._active_assignments(user_id, context, consistent=False):
            role_ids.add(assignment.role_id)
            permissions |= self._role_permission_names(assignment.role_id)
            if assignment.expires_at is not None:
                valid_until = assignment.expires_at if valid_until is None else min(valid_until, assignment.expires_at)

        grants = EffectiveGrants(
            role_ids=frozenset(role_ids),
            permissions=frozenset(permissions),
            valid_until=valid_until,
        )
        ttl = None
        if valid_until is not None:
            ttl = (valid_until - self.clock()).total_seconds()
        self.cache.put(key, grants, ttl_seconds=ttl)
        return grants

    # ── Checks ─────────────────────────────────────────────────

    def has_permission(
        self,
        user_id: str,
        permission_name: str,
        context_type: ContextType | str = ContextType.GLOBAL,
        resource_id: str | None = None,
    ) -> bool:
        """
        Check whether a user holds a permission in a context.

        Args:
            user_id: The user.
            permission_name: ``<resource>:<action>``.
            context_type: Context of the request (default global).
            resource_id: Resource the request is scoped to.

        Returns:
            True if some validated, unexpired assignment grants it.
        """
        try:
            if permission_name in MONETARY_PERMISSIONS:
                return self._has_permission_strong(user_id, permission_name, context_type, resource_id)
            return permission_name in self.resolve(user_id, context_type, resource_id).permissions
        except ServiceError as exc:
            logger.warning(
                "Permission check failed closed: user=%s permission=%s context=%s/%s: %s",
                user_id, permission_name, context_type, resource_id, exc,
            )
            return False
        except Exception:
            logger.exception(
                "Unexpected error checking permission: user=%s permission=%s context=%s/%s",
                user_id, permission_name, context_type, resource_id,
            )
            return False

    def _has_permission_strong(
        self,
        user_id: str,
        permission_name: str,
        context_type: ContextType | str,
        resource_id: str | None,
    ) -> bool:
        context = RoleContext(type=ContextType(context_type), resource_id=resource_id)
        for assignment in self._active_assignments(user_id, context, consistent=True):
            if permission_name in self._role_permission_names(assignment.role_id):
                return True
        return False

    def has_role(
        self,
        user_id: str,
        role_name: str,
        context_type: ContextType | str = ContextType.GLOBAL,
        resource_id: str | None = None,
    ) -> bool:
        """Check whether a user holds a validated, unexpired role in a context."""
        try:
            index = self.store.get(Collections.ROLE_NAMES, role_name)
            if index is None:
                return False
            return index.data["roleId"] in self.resolve(user_id, context_type, resource_id).role_ids
        except ServiceError as exc:
            logger.warning("Role check failed closed: user=%s role=%s: %s", user_id, role_name, exc)
            return False
        except Exception:
            logger.exception("Unexpected error checking role: user=%s role=%s", user_id, role_name)
            return False

    def require_permission(
        self,
        user_id: str,
        permission_name: str,
        context_type: ContextType | str = ContextType.GLOBAL,
        resource_id: str | None = None,
    ) -> None:
        """
        Raise ForbiddenError unless the user holds the permission.

        Raises:
            ForbiddenError: If the check fails (including fail-closed).
        """
        if not self.has_permission(user_id, permission_name, context_type, resource_id):
            raise ForbiddenError(
                f"User {user_id} lacks '{permission_name}' in {ContextType(context_type).value}"
                + (f":{resource_id}" if resource_id else ""),
                permission=permission_name,
            )

    # ── Invalidation ───────────────────────────────────────────

    def invalidate_user(self, user_id: str) -> None:
        self.cache.invalidate_user(user_id)
        logger.debug("Permission cache invalidated for user %s", user_id)

    def invalidate_all(self) -> None:
        self.cache.clear()
        logger.debug("Permission cache cleared")
