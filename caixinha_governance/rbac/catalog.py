"""
Role Catalog — administration of roles, permissions and their links.

Roles and permissions are created and retired by administrators and are
rarely mutated. Names are unique: uniqueness is enforced with create-only
writes of a name-index document per name, so two administrators creating
the same role at the same time cannot both succeed.

Deletion rules:
- a system role can never be deleted
- a role still assigned to users, or still carrying permissions, cannot
  be deleted
- a permission still linked to any role cannot be deleted

Any catalog mutation clears the permission cache, since it may change what
every existing assignment grants.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from caixinha_governance.domain.schema import (
    DEFAULT_PERMISSIONS,
    DEFAULT_ROLE_PERMISSIONS,
    DEFAULT_ROLES,
    Collections,
    Permission,
    Role,
    RolePermission,
    UserRole,
    build,
    permission_id_for,
    role_permission_id,
    utcnow,
)
from caixinha_governance.errors import (
    ConflictError,
    NotFoundError,
    RevisionConflictError,
    ValidationError,
)
from caixinha_governance.store.base import RecordStore
from caixinha_governance.store.transactions import OptimisticWriter

logger = logging.getLogger(__name__)


class RoleCatalog:
    """
    Role and permission administration.

    Usage:
        catalog = RoleCatalog(store, writer, resolver)
        catalog.initialize_defaults()
        role = catalog.create_role("Auditor", "Read-only access to reports")
        catalog.assign_permission_to_role(role.id, "caixinha_view_reports")
    """

    def __init__(
        self,
        store: RecordStore,
        writer: OptimisticWriter | None = None,
        resolver: Any = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.writer = writer or OptimisticWriter(store)
        self.resolver = resolver
        self.clock = clock

    def _catalog_changed(self) -> None:
        if self.resolver is not None:
            self.resolver.invalidate_all()

    # ── Roles ──────────────────────────────────────────────────

    def list_roles(self, is_system_role: bool | None = None) -> list[Role]:
        roles = [Role.from_record(r.data) for r in self.store.query(Collections.ROLES)]
        if is_system_role is not None:
            roles = [r for r in roles if r.is_system_role == is_system_role]
        return sorted(roles, key=lambda r: r.name)

    def get_role(self, role_id: str) -> Role:
        record = self.store.get(Collections.ROLES, role_id)
        if record is None:
            raise NotFoundError(f"Role {role_id} not found", role_id=role_id)
        return Role.from_record(record.data)

    def find_role_by_name(self, name: str) -> Role | None:
        index = self.store.get(Collections.ROLE_NAMES, name)
        if index is None:
            return None
        record = self.store.get(Collections.ROLES, index.data["roleId"])
        return Role.from_record(record.data) if record is not None else None

    def create_role(
        self,
        name: str,
        description: str = "",
        is_system_role: bool = False,
        role_id: str | None = None,
    ) -> Role:
        """
        Create a role with a unique name.

        Args:
            name: 3–50 characters, letters, digits and underscore.
            description: Up to 200 characters.
            is_system_role: System roles cannot be deleted.
            role_id: Explicit id (used for seeded roles).

        Returns:
            The created Role.

        Raises:
            ValidationError: If the name or description is malformed.
            ConflictError: If a role with this name or id already exists.
        """
        now = self.clock()
        values: dict[str, Any] = {
            "name": name,
            "description": description,
            "is_system_role": is_system_role,
            "created_at": now,
            "updated_at": now,
        }
        if role_id is not None:
            values["id"] = role_id
        role = build(Role, **values)

        self._reserve_name(Collections.ROLE_NAMES, role.name, {"roleId": role.id}, "Role")
        try:
            self.store.put(Collections.ROLES, role.id, role.to_record(), expected_revision=0)
        except RevisionConflictError:
            self.store.delete(Collections.ROLE_NAMES, role.name)
            raise ConflictError(f"Role id {role.id} already exists", role_id=role.id)

        logger.info("Role created: %s (%s) system=%s", role.name, role.id, role.is_system_role)
        self._catalog_changed()
        return role

    def update_role(
        self,
        role_id: str,
        description: str | None = None,
        is_system_role: bool | None = None,
        name: str | None = None,
    ) -> Role:
        """
        Edit a role's description or system flag. The name is immutable.

        Raises:
            NotFoundError: If the role does not exist.
            ValidationError: If a rename is attempted or the description is too long.
        """
        current = self.get_role(role_id)
        if name is not None and name != current.name:
            raise ValidationError("Role names cannot be changed", role_id=role_id)

        def edit(data: dict[str, Any]) -> Role:
            role = Role.from_record(data)
            updated = build(
                Role,
                **{
                    **role.model_dump(),
                    "description": role.description if description is None else description,
                    "is_system_role": role.is_system_role if is_system_role is None else is_system_role,
                    "updated_at": self.clock(),
                },
            )
            data.clear()
            data.update(updated.to_record())
            return updated

        result = self.writer.apply(Collections.ROLES, role_id, edit)
        logger.info("Role updated: %s", role_id)
        self._catalog_changed()
        return result.outcome

    def delete_role(self, role_id: str) -> None:
        """
        Delete a role that nothing references any more.

        Raises:
            NotFoundError: If the role does not exist.
            ConflictError: If it is a system role, is assigned to any user,
                or still carries permissions.
        """
        role = self.get_role(role_id)
        if role.is_system_role:
            raise ConflictError(f"System role {role.name} cannot be deleted", role_id=role_id)

        now = self.clock()
        holders = [
            UserRole.from_record(r.data)
            for r in self.store.query(Collections.USER_ROLES, lambda d: d.get("roleId") == role_id)
        ]
        if any(not ur.is_expired(now) for ur in holders):
            raise ConflictError(f"Role {role.name} is in use by users", role_id=role_id)

        links = self.store.query(Collections.ROLE_PERMISSIONS, lambda d: d.get("roleId") == role_id)
        if links:
            raise ConflictError(
                f"Role {role.name} still carries {len(links)} permission(s)",
                role_id=role_id,
            )
        self.store.delete(Collections.ROLES, role_id)
        self.store.delete(Collections.ROLE_NAMES, role.name)

        logger.info("Role deleted: %s (%s)", role.name, role_id)
        self._catalog_changed()

    # ── Permissions ────────────────────────────────────────────

    def list_permissions(self, resource: str | None = None) -> list[Permission]:
        permissions = [Permission.from_record(r.data) for r in self.store.query(Collections.PERMISSIONS)]
        if resource is not None:
            permissions = [p for p in permissions if p.resource == resource]
        return sorted(permissions, key=lambda p: p.name)

    def get_permission(self, permission_id: str) -> Permission:
        record = self.store.get(Collections.PERMISSIONS, permission_id)
        if record is None:
            raise NotFoundError(f"Permission {permission_id} not found", permission_id=permission_id)
        return Permission.from_record(record.data)

    def find_permission_by_name(self, name: str) -> Permission | None:
        index = self.store.get(Collections.PERMISSION_NAMES, name)
        if index is None:
            return None
        record = self.store.get(Collections.PERMISSIONS, index.data["permissionId"])
        return Permission.from_record(record.data) if record is not None else None

    def create_permission(
        self,
        resource: str,
        action: str,
        description: str = "",
        permission_id: str | None = None,
    ) -> Permission:
        """
        Create a ``<resource>:<action>`` permission.

        Raises:
            ValidationError: If resource or action is malformed.
            ConflictError: If the permission already exists.
        """
        now = self.clock()
        values: dict[str, Any] = {
            "resource": resource,
            "action": action,
            "description": description,
            "created_at": now,
            "updated_at": now,
        }
        if permission_id is not None:
            values["id"] = permission_id
        permission = build(Permission, **values)

        self._reserve_name(
            Collections.PERMISSION_NAMES, permission.name, {"permissionId": permission.id}, "Permission"
        )
        try:
            self.store.put(Collections.PERMISSIONS, permission.id, permission.to_record(), expected_revision=0)
        except RevisionConflictError:
            self.store.delete(Collections.PERMISSION_NAMES, permission.name)
            raise ConflictError(f"Permission id {permission.id} already exists", permission_id=permission.id)

        logger.info("Permission created: %s (%s)", permission.name, permission.id)
        self._catalog_changed()
        return permission

    def update_permission(self, permission_id: str, description: str) -> Permission:
        """Edit a permission's description; resource and action are its identity."""
        self.get_permission(permission_id)

        def edit(data: dict[str, Any]) -> Permission:
            permission = Permission.from_record(data)
            updated = build(
                Permission,
                **{**permission.model_dump(), "description": description, "updated_at": self.clock()},
            )
            data.clear()
            data.update(updated.to_record())
            return updated

        result = self.writer.apply(Collections.PERMISSIONS, permission_id, edit)
        self._catalog_changed()
        return result.outcome

    def delete_permission(self, permission_id: str) -> None:
        """
        Raises:
            NotFoundError: If the permission does not exist.
            ConflictError: If any role still carries it.
        """
        permission = self.get_permission(permission_id)
        links = self.store.query(
            Collections.ROLE_PERMISSIONS, lambda d: d.get("permissionId") == permission_id
        )
        if links:
            raise ConflictError(
                f"Permission {permission.name} is in use by {len(links)} role(s)",
                permission_id=permission_id,
            )
        self.store.delete(Collections.PERMISSIONS, permission_id)
        self.store.delete(Collections.PERMISSION_NAMES, permission.name)
        logger.info("Permission deleted: %s", permission.name)
        self._catalog_changed()

    # ── Role ↔ Permission ──────────────────────────────────────

    def assign_permission_to_role(self, role_id: str, permission_id: str) -> RolePermission:
        """
        Link a permission to a role.

        Raises:
            NotFoundError: If the role or the permission does not exist.
            ConflictError: If the link already exists.
        """
        self.get_role(role_id)
        self.get_permission(permission_id)
        link = RolePermission(role_id=role_id, permission_id=permission_id, created_at=self.clock())
        try:
            self.store.put(Collections.ROLE_PERMISSIONS, link.id, link.to_record(), expected_revision=0)
        except RevisionConflictError:
            raise ConflictError(
                f"Role {role_id} already has permission {permission_id}",
                role_id=role_id,
                permission_id=permission_id,
            )
        logger.info("Permission %s assigned to role %s", permission_id, role_id)
        self._catalog_changed()
        return link

    def remove_permission_from_role(self, role_id: str, permission_id: str) -> None:
        if not self.store.delete(Collections.ROLE_PERMISSIONS, role_permission_id(role_id, permission_id)):
            raise NotFoundError(
                f"Role {role_id} does not have permission {permission_id}",
                role_id=role_id,
                permission_id=permission_id,
            )
        logger.info("Permission %s removed from role %s", permission_id, role_id)
        self._catalog_changed()

    def get_role_permissions(self, role_id: str) -> list[Permission]:
        self.get_role(role_id)
        links = self.store.query(Collections.ROLE_PERMISSIONS, lambda d: d.get("roleId") == role_id)
        permissions = []
        for link in links:
            record = self.store.get(Collections.PERMISSIONS, link.data["permissionId"])
            if record is not None:
                permissions.append(Permission.from_record(record.data))
        return sorted(permissions, key=lambda p: p.name)

    # ── Seeding ────────────────────────────────────────────────

    def initialize_defaults(self) -> dict[str, int]:
        """
        Seed the default roles, permissions and links. Safe to re-run.

        Returns:
            Counts of what was created on this run.
        """
        created = {"roles": 0, "permissions": 0, "links": 0}

        for role_id, spec in DEFAULT_ROLES.items():
            if self.store.get(Collections.ROLES, role_id) is None:
                self.create_role(role_id=role_id, **spec)
                created["roles"] += 1

        for resource, action, description in DEFAULT_PERMISSIONS:
            permission_id = permission_id_for(f"{resource}:{action}")
            if self.store.get(Collections.PERMISSIONS, permission_id) is None:
                self.create_permission(resource, action, description, permission_id=permission_id)
                created["permissions"] += 1

        for role_id, names in DEFAULT_ROLE_PERMISSIONS.items():
            for name in names:
                permission_id = permission_id_for(name)
                link_id = role_permission_id(role_id, permission_id)
                if self.store.get(Collections.ROLE_PERMISSIONS, link_id) is None:
                    self.assign_permission_to_role(role_id, permission_id)
                    created["links"] += 1

        logger.info(
            "RBAC defaults initialized: roles=%d permissions=%d links=%d",
            created["roles"], created["permissions"], created["links"],
        )
        return created

    # ── Internal ───────────────────────────────────────────────

    def _reserve_name(self, collection: str, name: str, payload: dict[str, Any], label: str) -> None:
        try:
            self.store.put(collection, name, payload, expected_revision=0)
        except RevisionConflictError:
            raise ConflictError(f"{label} '{name}' already exists", name=name)
