from typing import Any, Protocol

from sqlalchemy import and_, delete, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from authcore.core.deadline import Deadline, checkpoint
from authcore.core.errors import Conflict, RoleNotFound, ValidationError
from authcore.roles.models import Role, UserRole


class RoleStore(Protocol):
    def roles_for(self, user_id: int, tenant_id: int | None) -> list[Role]: ...

    def resolve_by_name(self, name: str, tenant_id: int | None) -> Role | None: ...


def _tenant_eq(column, tenant_id: int | None):
    return column.is_(None) if tenant_id is None else column == tenant_id


class SqlRoleStore:
    def __init__(self, db: Session, *, deadline: Deadline | None = None):
        self.db = db
        self.deadline = deadline

    def roles_for(self, user_id: int, tenant_id: int | None) -> list[Role]:
        """
        Roles assigned to the user in ``tenant_id`` (or with no tenant when it is None),
        plus global roles assigned globally.
        """
        checkpoint(self.deadline)
        stmt = (
            select(Role)
            .join(UserRole, UserRole.role_id == Role.id)
            .where(
                UserRole.user_id == user_id,
                or_(
                    _tenant_eq(UserRole.tenant_id, tenant_id),
                    and_(UserRole.tenant_id.is_(None), Role.tenant_id.is_(None)),
                ),
            )
            .order_by(Role.id)
        )
        seen: set[int] = set()
        roles: list[Role] = []
        for role in self.db.execute(stmt).scalars():
            if role.id not in seen:
                seen.add(role.id)
                roles.append(role)
        return roles

    def resolve_by_name(self, name: str, tenant_id: int | None) -> Role | None:
        checkpoint(self.deadline)
        if tenant_id is not None:
            scoped = self.db.execute(
                select(Role).where(Role.name == name, Role.tenant_id == tenant_id)
            ).scalar_one_or_none()
            if scoped is not None:
                return scoped
        return self.db.execute(
            select(Role).where(Role.name == name, Role.tenant_id.is_(None))
        ).scalar_one_or_none()

    def get(self, role_id: int) -> Role | None:
        checkpoint(self.deadline)
        return self.db.get(Role, role_id)

    def list_roles(self, tenant_id: int | None = None, *, include_global: bool = True) -> list[Role]:
        checkpoint(self.deadline)
        stmt = select(Role)
        if tenant_id is not None:
            cond = Role.tenant_id == tenant_id
            if include_global:
                cond = or_(cond, Role.tenant_id.is_(None))
            stmt = stmt.where(cond)
        return list(self.db.execute(stmt.order_by(Role.id)).scalars())

    def create_role(
        self,
        *,
        name: str,
        display_name: str,
        description: str | None = None,
        tenant_id: int | None = None,
    ) -> Role:
        checkpoint(self.deadline)
        # (name, tenant) is unique with NULL counted as a value; the DB constraint
        # alone does not cover the global case.
        existing = self.db.execute(
            select(Role.id).where(Role.name == name, _tenant_eq(Role.tenant_id, tenant_id))
        ).scalar_one_or_none()
        if existing is not None:
            raise Conflict("Role already exists")
        role = Role(name=name, display_name=display_name, description=description, tenant_id=tenant_id)
        self.db.add(role)
        try:
            self.db.flush()
        except IntegrityError as exc:
            self.db.rollback()
            raise Conflict("Role already exists", detail=str(exc.orig)) from exc
        return role

    def update_role(self, role_id: int, patch: dict[str, Any]) -> Role:
        """Rename or redescribe a role. Its tenant scope is fixed at creation."""
        checkpoint(self.deadline)
        role = self.db.get(Role, role_id)
        if role is None:
            raise RoleNotFound()
        name = patch.get("name")
        if name and name != role.name:
            clash = self.db.execute(
                select(Role.id).where(Role.name == name, _tenant_eq(Role.tenant_id, role.tenant_id))
            ).scalar_one_or_none()
            if clash is not None:
                raise Conflict("Role already exists")
        for key in ("name", "display_name", "description"):
            if patch.get(key) is not None:
                setattr(role, key, patch[key])
        try:
            self.db.flush()
        except IntegrityError as exc:
            self.db.rollback()
            raise Conflict("Role already exists", detail=str(exc.orig)) from exc
        return role

    def delete_role(self, role_id: int) -> None:
        checkpoint(self.deadline)
        role = self.db.get(Role, role_id)
        if role is None:
            raise RoleNotFound()
        self.db.delete(role)
        self.db.flush()

    def assign(self, user_id: int, role: Role, tenant_id: int | None) -> UserRole:
        checkpoint(self.deadline)
        if role.tenant_id is not None and tenant_id != role.tenant_id:
            raise ValidationError(
                "Role belongs to another tenant",
                detail=f"role {role.id} is scoped to tenant {role.tenant_id}, not {tenant_id}",
            )
        existing = self.db.execute(
            select(UserRole).where(
                UserRole.user_id == user_id,
                UserRole.role_id == role.id,
                _tenant_eq(UserRole.tenant_id, tenant_id),
            )
        ).scalar_one_or_none()
        if existing is not None:
            return existing
        link = UserRole(user_id=user_id, role_id=role.id, tenant_id=tenant_id)
        self.db.add(link)
        try:
            self.db.flush()
        except IntegrityError as exc:
            self.db.rollback()
            raise Conflict(detail=str(exc.orig)) from exc
        return link

    def unassign(self, user_id: int, role_id: int, tenant_id: int | None) -> int:
        checkpoint(self.deadline)
        result = self.db.execute(
            delete(UserRole).where(
                UserRole.user_id == user_id,
                UserRole.role_id == role_id,
                _tenant_eq(UserRole.tenant_id, tenant_id),
            )
        )
        return result.rowcount or 0

    def has_role_in_tenant(self, user_id: int, tenant_id: int) -> bool:
        checkpoint(self.deadline)
        row = self.db.execute(
            select(UserRole.id)
            .where(UserRole.user_id == user_id, UserRole.tenant_id == tenant_id)
            .limit(1)
        ).first()
        return row is not None
