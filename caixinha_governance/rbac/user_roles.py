"""
User Roles — contextual role assignments and their validation lifecycle.

A UserRole is created on assignment (``pending`` by default), moved to
``validated`` by bank validation or an administrator, to ``rejected`` by an
administrator, and deleted on revocation or when the user leaves the
caixinha. Every mutation invalidates the user's cached grants.

Caixinha helpers mirror how members join: a caixinha's creator becomes
its CaixinhaManager, new members join as CaixinhaMember, and a validated
manager may promote a validated member to CaixinhaModerator. Caixinha roles
start ``pending`` because they will move money once validated.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable
from uuid import NAMESPACE_URL, uuid5

from caixinha_governance.domain.schema import (
    Collections,
    ContextType,
    RoleContext,
    UserRole,
    ValidationStatus,
    build,
    utcnow,
)
from caixinha_governance.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RevisionConflictError,
    ValidationError,
)
from caixinha_governance.store.base import RecordStore
from caixinha_governance.store.transactions import OptimisticWriter

logger = logging.getLogger(__name__)

CAIXINHA_MANAGER = "caixinhaManager"
CAIXINHA_MEMBER = "caixinhaMember"
CAIXINHA_MODERATOR = "caixinhaModerator"
CLIENT = "client"
SELLER = "seller"


def user_role_id_for(user_id: str, role_id: str, context: RoleContext) -> str:
    """Deterministic id, so the same (user, role, context) maps to one record."""
    key = f"{user_id}|{role_id}|{context.type.value}|{context.resource_id or ''}"
    return uuid5(NAMESPACE_URL, f"urn:caixinha:user-role:{key}").hex


class UserRoleService:
    """
    Assignment, validation, rejection and removal of user roles.

    Usage:
        service = UserRoleService(store, writer, resolver)
        assignment = service.register_caixinha_member(user_id, caixinha_id)
        service.validate_user_role(assignment.id, {"validatedBy": admin_id})
    """

    def __init__(
        self,
        store: RecordStore,
        writer: OptimisticWriter | None = None,
        resolver: Any = None,
        notifier: Any = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.writer = writer or OptimisticWriter(store)
        self.resolver = resolver
        self.notifier = notifier
        self.clock = clock

    def _changed(self, user_id: str) -> None:
        if self.resolver is not None:
            self.resolver.invalidate_user(user_id)

    # ── Queries ────────────────────────────────────────────────

    def get_user_role(self, user_role_id: str) -> UserRole:
        record = self.store.get(Collections.USER_ROLES, user_role_id)
        if record is None:
            raise NotFoundError(f"User role {user_role_id} not found", user_role_id=user_role_id)
        return UserRole.from_record(record.data)

    def list_user_roles(
        self,
        user_id: str,
        context_type: ContextType | str | None = None,
        resource_id: str | None = None,
    ) -> list[UserRole]:
        def matches(data: dict[str, Any]) -> bool:
            context = data.get("context") or {}
            return (
                data.get("userId") == user_id
                and (context_type is None or context.get("type") == ContextType(context_type).value)
                and (resource_id is None or context.get("resourceId") == resource_id)
            )

        roles = [UserRole.from_record(r.data) for r in self.store.query(Collections.USER_ROLES, matches)]
        return sorted(roles, key=lambda ur: ur.created_at)

    def list_context_assignments(self, context_type: ContextType, resource_id: str) -> list[UserRole]:
        """Every assignment scoped to one resource (e.g. all roles in a caixinha)."""
        def matches(data: dict[str, Any]) -> bool:
            context = data.get("context") or {}
            return context.get("type") == context_type.value and context.get("resourceId") == resource_id

        return [UserRole.from_record(r.data) for r in self.store.query(Collections.USER_ROLES, matches)]

    # ── Mutations ──────────────────────────────────────────────

    def assign_role(
        self,
        user_id: str,
        role_id: str,
        context: RoleContext | dict[str, Any] | None = None,
        validation_status: ValidationStatus = ValidationStatus.PENDING,
        validation_data: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
        expires_at: datetime | None = None,
        created_by: str | None = None,
    ) -> UserRole:
        """
        Assign a role to a user in a context.

        An identical assignment (same user, role and context) is returned
        unchanged instead of being duplicated.

        Args:
            user_id: Target user.
            role_id: Role to assign.
            context: Scope; defaults to global.
            validation_status: Initial status (pending unless an admin says otherwise).
            validation_data: Evidence recorded with the status.
            metadata: Free-form data stored with the assignment.
            expires_at: When the assignment stops conferring anything.
            created_by: Who made the assignment.

        Returns:
            The new (or existing) UserRole.

        Raises:
            ValidationError: If the context is malformed.
            NotFoundError: If the role does not exist.
        """
        if isinstance(context, dict):
            context = build(RoleContext, **context)
        context = context or RoleContext.global_()
        validation_status = ValidationStatus(validation_status)

        if self.store.get(Collections.ROLES, role_id) is None:
            raise NotFoundError(f"Role {role_id} not found", role_id=role_id)

        assignment_id = user_role_id_for(user_id, role_id, context)
        existing = self.store.get(Collections.USER_ROLES, assignment_id)
        if existing is not None:
            return self._reuse(UserRole.from_record(existing.data))

        now = self.clock()
        assignment = build(
            UserRole,
            id=assignment_id,
            user_id=user_id,
            role_id=role_id,
            context=context,
            validation_status=validation_status,
            validation_data=validation_data or {},
            metadata=metadata or {},
            expires_at=expires_at,
            validated_at=now if validation_status == ValidationStatus.VALIDATED else None,
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        try:
            self.store.put(Collections.USER_ROLES, assignment.id, assignment.to_record(), expected_revision=0)
        except RevisionConflictError:
            return self._reuse(self.get_user_role(assignment.id))
        self._changed(user_id)
        logger.info(
            "Role %s assigned to user %s in %s:%s (%s)",
            role_id, user_id, context.type.value, context.resource_id, validation_status.value,
        )
        return assignment

    @staticmethod
    def _reuse(existing: UserRole) -> UserRole:
        logger.info(
            "User %s already holds role %s in %s:%s; reusing %s",
            existing.user_id, existing.role_id, existing.context.type.value,
            existing.context.resource_id, existing.id,
        )
        return existing

    def remove_user_role(self, user_role_id: str) -> UserRole:
        """
        Revoke an assignment.

        Raises:
            NotFoundError: If it does not exist.
        """
        assignment = self.get_user_role(user_role_id)
        if not self.store.delete(Collections.USER_ROLES, user_role_id):
            raise NotFoundError(f"User role {user_role_id} not found", user_role_id=user_role_id)
        self._changed(assignment.user_id)
        logger.info("User role %s removed from user %s", user_role_id, assignment.user_id)
        return assignment

    def validate_user_role(self, user_role_id: str, validation_data: dict[str, Any] | None = None) -> UserRole:
        """
        Mark an assignment ``validated``.

        Raises:
            NotFoundError: If it does not exist.
            ConflictError: If it is already validated.
        """
        def transition(data: dict[str, Any]) -> UserRole:
            assignment = UserRole.from_record(data)
            if assignment.validation_status == ValidationStatus.VALIDATED:
                raise ConflictError(f"User role {user_role_id} is already validated", user_role_id=user_role_id)
            now = self.clock()
            assignment.validation_status = ValidationStatus.VALIDATED
            assignment.validation_data = {**assignment.validation_data, **(validation_data or {})}
            assignment.validated_at = now
            assignment.updated_at = now
            data.clear()
            data.update(assignment.to_record())
            return assignment

        result = self.writer.apply(Collections.USER_ROLES, user_role_id, transition)
        validated = result.outcome
        self._changed(validated.user_id)
        logger.info("User role %s validated for user %s", user_role_id, validated.user_id)
        if self.notifier is not None:
            self.notifier.publish(
                "user_role.validated",
                subject_id=validated.id,
                caixinha_id=validated.context.resource_id
                if validated.context.type == ContextType.CAIXINHA else None,
                payload={"userId": validated.user_id, "roleId": validated.role_id},
            )
        return validated

    def reject_user_role(
        self,
        user_role_id: str,
        reason: str,
        rejected_by: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> UserRole:
        """
        Mark an assignment ``rejected``.

        Raises:
            ValidationError: If no reason is given.
            NotFoundError: If it does not exist.
            ConflictError: If it is already rejected.
        """
        if not (reason or "").strip():
            raise ValidationError("A rejection reason is required")
        if len(reason) > 500:
            raise ValidationError("Rejection reason must be at most 500 characters")

        def transition(data: dict[str, Any]) -> UserRole:
            assignment = UserRole.from_record(data)
            if assignment.validation_status == ValidationStatus.REJECTED:
                raise ConflictError(f"User role {user_role_id} is already rejected", user_role_id=user_role_id)
            assignment.validation_status = ValidationStatus.REJECTED
            assignment.validation_data = {
                **assignment.validation_data,
                "rejectionReason": reason,
                "rejectedBy": rejected_by,
                "rejectionDetails": details or {},
            }
            assignment.validated_at = None
            assignment.updated_at = self.clock()
            data.clear()
            data.update(assignment.to_record())
            return assignment

        result = self.writer.apply(Collections.USER_ROLES, user_role_id, transition)
        self._changed(result.outcome.user_id)
        logger.info("User role %s rejected: %s", user_role_id, reason)
        return result.outcome

    # ── Caixinha membership helpers ────────────────────────────

    def register_caixinha_manager(self, user_id: str, caixinha_id: str, created_by: str | None = None) -> UserRole:
        return self.assign_role(
            user_id,
            CAIXINHA_MANAGER,
            RoleContext.caixinha(caixinha_id),
            metadata={"requiresBankValidation": True},
            created_by=created_by or user_id,
        )

    def register_caixinha_member(self, user_id: str, caixinha_id: str, invited_by: str | None = None) -> UserRole:
        return self.assign_role(
            user_id,
            CAIXINHA_MEMBER,
            RoleContext.caixinha(caixinha_id),
            metadata={"requiresBankValidation": True, "invitedBy": invited_by},
            created_by=invited_by,
        )

    def promote_to_caixinha_moderator(self, user_id: str, caixinha_id: str, promoted_by: str) -> UserRole:
        """
        Promote a validated member; only a validated manager may do so.

        Raises:
            ForbiddenError: If the promoter is not a validated manager of the caixinha.
            ConflictError: If the target is not a validated member.
        """
        now = self.clock()
        in_caixinha = self.list_user_roles(promoted_by, ContextType.CAIXINHA, caixinha_id)
        if not any(ur.role_id == CAIXINHA_MANAGER and ur.confers_capabilities(now) for ur in in_caixinha):
            raise ForbiddenError(
                f"User {promoted_by} is not a validated manager of caixinha {caixinha_id}",
                caixinha_id=caixinha_id,
            )
        target_roles = self.list_user_roles(user_id, ContextType.CAIXINHA, caixinha_id)
        if not any(ur.role_id == CAIXINHA_MEMBER and ur.confers_capabilities(now) for ur in target_roles):
            raise ConflictError(
                f"User {user_id} is not a validated member of caixinha {caixinha_id}",
                caixinha_id=caixinha_id,
            )
        return self.assign_role(
            user_id,
            CAIXINHA_MODERATOR,
            RoleContext.caixinha(caixinha_id),
            validation_status=ValidationStatus.VALIDATED,
            validation_data={"validatedBy": promoted_by, "validationMethod": "promotion"},
            metadata={"promotedBy": promoted_by},
            created_by=promoted_by,
        )

    def register_seller(self, user_id: str, created_by: str | None = None) -> UserRole:
        return self.assign_role(
            user_id,
            SELLER,
            RoleContext(type=ContextType.MARKETPLACE, resource_id="default"),
            metadata={"requiresBankValidation": True},
            created_by=created_by,
        )

    def register_new_user(self, user_id: str) -> UserRole:
        return self.assign_role(
            user_id,
            CLIENT,
            RoleContext.global_(),
            validation_status=ValidationStatus.VALIDATED,
            validation_data={"validatedBy": "system", "validationMethod": "registration"},
            created_by="system",
        )

    def revoke_caixinha_roles(self, user_id: str, caixinha_id: str) -> list[UserRole]:
        """Remove every assignment the user holds in a caixinha (member removal, exit)."""
        removed = []
        for assignment in self.list_user_roles(user_id, ContextType.CAIXINHA, caixinha_id):
            if self.store.delete(Collections.USER_ROLES, assignment.id):
                removed.append(assignment)
        self._changed(user_id)
        logger.info("Revoked %d role(s) of user %s in caixinha %s", len(removed), user_id, caixinha_id)
        return removed
