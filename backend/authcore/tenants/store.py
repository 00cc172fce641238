from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from authcore.auth.models import User
from authcore.core.deadline import Deadline, checkpoint
from authcore.core.errors import Conflict, TenantNotFound
from authcore.tenants.models import Tenant


class SqlTenantStore:
    def __init__(self, db: Session, *, deadline: Deadline | None = None):
        self.db = db
        self.deadline = deadline

    def get(self, tenant_id: int) -> Tenant | None:
        checkpoint(self.deadline)
        return self.db.get(Tenant, tenant_id)

    def get_by_name(self, name: str) -> Tenant | None:
        checkpoint(self.deadline)
        return self.db.execute(select(Tenant).where(Tenant.name == name)).scalar_one_or_none()

    def list_tenants(self) -> list[Tenant]:
        checkpoint(self.deadline)
        return list(self.db.execute(select(Tenant).order_by(Tenant.id)).scalars())

    def create(self, *, name: str, display_name: str, description: str | None = None) -> Tenant:
        if self.get_by_name(name) is not None:
            raise Conflict("Tenant already exists")
        tenant = Tenant(name=name, display_name=display_name, description=description)
        self.db.add(tenant)
        try:
            self.db.flush()
        except IntegrityError as exc:
            self.db.rollback()
            raise Conflict("Tenant already exists", detail=str(exc.orig)) from exc
        return tenant

    def update(self, tenant_id: int, patch: dict[str, Any]) -> Tenant:
        tenant = self.get(tenant_id)
        if tenant is None:
            raise TenantNotFound()
        name = patch.get("name")
        if name and name != tenant.name and self.get_by_name(name) is not None:
            raise Conflict("Tenant already exists")
        for key in ("name", "display_name", "description"):
            if patch.get(key) is not None:
                setattr(tenant, key, patch[key])
        self.db.flush()
        return tenant

    def delete(self, tenant_id: int) -> None:
        tenant = self.get(tenant_id)
        if tenant is None:
            raise TenantNotFound()
        self.db.delete(tenant)
        self.db.flush()

    def user_counts(self) -> dict[int | None, int]:
        """Users per home tenant; ``None`` counts users without one."""
        checkpoint(self.deadline)
        rows = self.db.execute(
            select(User.tenant_id, func.count(User.id)).group_by(User.tenant_id)
        ).all()
        return {tenant_id: count for tenant_id, count in rows}
