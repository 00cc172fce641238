"""
Seed data the service needs before it can take requests.

Runs on every start and only creates what is missing, so it is safe to re-run.
"""

import logging
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from authcore.auth.security import PasswordHasher
from authcore.auth.stores import SqlIdentityStore, UserCreate
from authcore.core.config import Settings
from authcore.governance.policy_engine import DEFAULT_POLICIES, WILDCARD
from authcore.governance.store import SqlPolicyStore
from authcore.roles.store import SqlRoleStore
from authcore.tenants.store import SqlTenantStore

logger = logging.getLogger(__name__)

BASE_RESOURCES: tuple[tuple[str, str], ...] = (
    ("api", "users"),
    ("api", "roles"),
    ("api", "tenants"),
    ("api", "permissions"),
    ("module", "dashboard"),
    ("module", "supplyChain"),
    ("module", "compliance"),
    ("module", "declarations"),
    ("module", "customers"),
    ("module", "settings"),
    ("module", "userManagement"),
)
BASE_ACTIONS = ("create", "read", "update", "delete", "list", "manage", "view", "admin")
TENANT_ROLES = (
    ("admin", "Administrator", "Full access within the tenant"),
    ("user", "User", "Standard access"),
)
GLOBAL_USER_ROLE = ("user", "User", "Default role for users without a tenant")


@dataclass
class BootstrapReport:
    tenants: list[str] = field(default_factory=list)
    resources: list[str] = field(default_factory=list)
    actions: list[str] = field(default_factory=list)
    roles: list[str] = field(default_factory=list)
    permissions: list[str] = field(default_factory=list)
    admin_user: str | None = None

    @property
    def changed(self) -> bool:
        return bool(
            self.tenants or self.resources or self.actions or self.roles or self.permissions or self.admin_user
        )


class BootstrapLoader:
    def __init__(self, db: Session, settings: Settings, hasher: PasswordHasher):
        self.db = db
        self.settings = settings
        self.hasher = hasher
        self.tenants = SqlTenantStore(db)
        self.roles = SqlRoleStore(db)
        self.policies = SqlPolicyStore(db)
        self.identities = SqlIdentityStore(db)

    def run(self) -> BootstrapReport:
        report = BootstrapReport()
        try:
            tenant = self._ensure_tenant(report)
            self._ensure_resources(report)
            self._ensure_actions(report)
            self._ensure_roles(tenant.id, report)
            if self.policies.count() == 0:
                self._materialize_default_policies(tenant.id, report)
            self._ensure_admin(tenant.id, report)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if report.changed:
            logger.info(
                "bootstrap created: tenants=%s resources=%d actions=%d roles=%s permissions=%d admin=%s",
                report.tenants,
                len(report.resources),
                len(report.actions),
                report.roles,
                len(report.permissions),
                report.admin_user,
            )
        else:
            logger.info("bootstrap: nothing to do")
        return report

    def _ensure_tenant(self, report: BootstrapReport):
        name = self.settings.DEFAULT_TENANT_NAME
        tenant = self.tenants.get_by_name(name)
        if tenant is None:
            tenant = self.tenants.create(
                name=name, display_name="Default Tenant", description="Default tenant"
            )
            report.tenants.append(name)
        return tenant

    def _ensure_resources(self, report: BootstrapReport) -> None:
        for type_, name in BASE_RESOURCES:
            _, created = self.policies.ensure_resource(type_, name)
            if created:
                report.resources.append(f"{type_}:{name}")

    def _ensure_actions(self, report: BootstrapReport) -> None:
        for name in BASE_ACTIONS:
            _, created = self.policies.ensure_action(name)
            if created:
                report.actions.append(name)

    def _ensure_role(self, name, display_name, description, tenant_id, report):
        role = self.roles.resolve_by_name(name, tenant_id)
        if role is None or role.tenant_id != tenant_id:
            role = self.roles.create_role(
                name=name, display_name=display_name, description=description, tenant_id=tenant_id
            )
            report.roles.append(f"{name}@{tenant_id if tenant_id is not None else 'global'}")
        return role

    def _ensure_roles(self, tenant_id: int, report: BootstrapReport) -> None:
        for name, display_name, description in TENANT_ROLES:
            self._ensure_role(name, display_name, description, tenant_id, report)
        self._ensure_role(*GLOBAL_USER_ROLE, None, report)

    def _materialize_default_policies(self, tenant_id: int, report: BootstrapReport) -> None:
        for role_name, obj, act in DEFAULT_POLICIES:
            role = self.roles.resolve_by_name(role_name, tenant_id)
            resource = self.policies.find_resource(obj)
            if resource is None:
                type_ = WILDCARD if obj == WILDCARD else "module"
                resource, _ = self.policies.ensure_resource(type_, obj)
                report.resources.append(f"{type_}:{obj}")
            action, created = self.policies.ensure_action(act)
            if created:
                report.actions.append(act)
            self.policies.create_permission(role.id, resource.id, action.id, tenant_id)
            report.permissions.append(f"{role_name},{obj},{act}")

    def _ensure_admin(self, tenant_id: int, report: BootstrapReport) -> None:
        username = self.settings.BOOTSTRAP_ADMIN_USERNAME
        password = self.settings.BOOTSTRAP_ADMIN_PASSWORD
        if not username or not password:
            return
        if self.identities.list_users(limit=1):
            return
        user = self.identities.create(
            UserCreate(
                username=username,
                email=self.settings.BOOTSTRAP_ADMIN_EMAIL or f"{username}@localhost",
                password_hash=self.hasher.hash(password),
                display_name="Administrator",
                tenant_id=tenant_id,
                is_super_admin=True,
            )
        )
        admin_role = self.roles.resolve_by_name("admin", tenant_id)
        self.roles.assign(user.id, admin_role, tenant_id)
        report.admin_user = username
        logger.warning("created bootstrap super-admin %r; change its password", username)
