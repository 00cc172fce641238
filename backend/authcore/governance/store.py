from typing import Protocol

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from authcore.core.deadline import Deadline, checkpoint
from authcore.core.errors import Conflict, NotFound, ValidationError
from authcore.governance.models import Action, Permission, Resource
from authcore.roles.models import Role


class PolicyStore(Protocol):
    """
    Policies as ``(role name, resource name, action name)`` triples.

    Subjects are role names, not role ids. ``Permission.tenant_id`` is kept for
    bookkeeping only: a permission granted to a tenant's ``admin`` role applies to
    every role called ``admin``, in every tenant. Tenant isolation comes from the
    roles a token carries, which are resolved per tenant at login and switch.
    """

    def list_for(self, role_name: str) -> list[tuple[str, str]]: ...

    def list_all(self) -> list[tuple[str, str, str]]: ...


class SqlPolicyStore:
    def __init__(self, db: Session, *, deadline: Deadline | None = None):
        self.db = db
        self.deadline = deadline

    def _policy_rows(self):
        return (
            select(Role.name, Resource.name, Action.name)
            .select_from(Permission)
            .join(Role, Role.id == Permission.role_id)
            .join(Resource, Resource.id == Permission.resource_id)
            .join(Action, Action.id == Permission.action_id)
        )

    def list_for(self, role_name: str) -> list[tuple[str, str]]:
        checkpoint(self.deadline)
        stmt = self._policy_rows().where(Role.name == role_name).order_by(Permission.id)
        return [(obj, act) for _, obj, act in self.db.execute(stmt).all()]

    def list_all(self) -> list[tuple[str, str, str]]:
        checkpoint(self.deadline)
        stmt = self._policy_rows().order_by(Permission.id)
        return [(sub, obj, act) for sub, obj, act in self.db.execute(stmt).all()]

    def count(self) -> int:
        checkpoint(self.deadline)
        return self.db.execute(select(func.count(Permission.id))).scalar_one()

    # --- resources ---

    def get_resource(self, type_: str, name: str) -> Resource | None:
        checkpoint(self.deadline)
        return self.db.execute(
            select(Resource).where(Resource.type == type_, Resource.name == name)
        ).scalar_one_or_none()

    def find_resource(self, name: str) -> Resource | None:
        checkpoint(self.deadline)
        return self.db.execute(
            select(Resource).where(Resource.name == name).order_by(Resource.id).limit(1)
        ).scalar_one_or_none()

    def list_resources(self) -> list[Resource]:
        checkpoint(self.deadline)
        return list(self.db.execute(select(Resource).order_by(Resource.id)).scalars())

    def ensure_resource(
        self, type_: str, name: str, display_name: str | None = None, description: str | None = None
    ) -> tuple[Resource, bool]:
        existing = self.get_resource(type_, name)
        if existing is not None:
            return existing, False
        resource = Resource(
            type=type_, name=name, display_name=display_name or name, description=description
        )
        self.db.add(resource)
        self.db.flush()
        return resource, True

    def create_resource(
        self, type_: str, name: str, display_name: str | None = None, description: str | None = None
    ) -> Resource:
        resource, created = self.ensure_resource(type_, name, display_name, description)
        if not created:
            raise Conflict("Resource already exists")
        return resource

    def delete_resource(self, resource_id: int) -> None:
        checkpoint(self.deadline)
        resource = self.db.get(Resource, resource_id)
        if resource is None:
            raise NotFound("Resource not found")
        self.db.delete(resource)
        self.db.flush()

    # --- actions ---

    def get_action(self, name: str) -> Action | None:
        checkpoint(self.deadline)
        return self.db.execute(select(Action).where(Action.name == name)).scalar_one_or_none()

    def list_actions(self) -> list[Action]:
        checkpoint(self.deadline)
        return list(self.db.execute(select(Action).order_by(Action.id)).scalars())

    def ensure_action(
        self, name: str, display_name: str | None = None, description: str | None = None
    ) -> tuple[Action, bool]:
        existing = self.get_action(name)
        if existing is not None:
            return existing, False
        action = Action(name=name, display_name=display_name or name.capitalize(), description=description)
        self.db.add(action)
        self.db.flush()
        return action, True

    def create_action(
        self, name: str, display_name: str | None = None, description: str | None = None
    ) -> Action:
        action, created = self.ensure_action(name, display_name, description)
        if not created:
            raise Conflict("Action already exists")
        return action

    def delete_action(self, action_id: int) -> None:
        checkpoint(self.deadline)
        action = self.db.get(Action, action_id)
        if action is None:
            raise NotFound("Action not found")
        self.db.delete(action)
        self.db.flush()

    # --- permissions ---

    def list_permissions(self, *, role_id: int | None = None) -> list[Permission]:
        checkpoint(self.deadline)
        stmt = select(Permission)
        if role_id is not None:
            stmt = stmt.where(Permission.role_id == role_id)
        return list(self.db.execute(stmt.order_by(Permission.id)).scalars())

    def find_permission(
        self, role_id: int, resource_id: int, action_id: int, tenant_id: int | None
    ) -> Permission | None:
        checkpoint(self.deadline)
        tenant_cond = (
            Permission.tenant_id.is_(None) if tenant_id is None else Permission.tenant_id == tenant_id
        )
        return self.db.execute(
            select(Permission).where(
                Permission.role_id == role_id,
                Permission.resource_id == resource_id,
                Permission.action_id == action_id,
                tenant_cond,
            )
        ).scalar_one_or_none()

    def create_permission(
        self, role_id: int, resource_id: int, action_id: int, tenant_id: int | None = None
    ) -> Permission:
        checkpoint(self.deadline)
        if self.db.get(Role, role_id) is None:
            raise ValidationError("Role not found")
        if self.db.get(Resource, resource_id) is None:
            raise ValidationError("Resource not found")
        if self.db.get(Action, action_id) is None:
            raise ValidationError("Action not found")
        if self.find_permission(role_id, resource_id, action_id, tenant_id) is not None:
            raise Conflict("Permission already exists")
        permission = Permission(
            role_id=role_id, resource_id=resource_id, action_id=action_id, tenant_id=tenant_id
        )
        self.db.add(permission)
        try:
            self.db.flush()
        except IntegrityError as exc:
            self.db.rollback()
            raise Conflict("Permission already exists", detail=str(exc.orig)) from exc
        return permission

    def delete_permission(self, permission_id: int) -> None:
        checkpoint(self.deadline)
        permission = self.db.get(Permission, permission_id)
        if permission is None:
            raise NotFound("Permission not found")
        self.db.delete(permission)
        self.db.flush()
