import logging

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from authcore.admin.schemas import (
    ActionCreate,
    ActionOut,
    PermissionCreate,
    PermissionOut,
    PolicyReloadResponse,
    ResourceCreate,
    ResourceOut,
    TenantUserCount,
    UserCreateRequest,
    UserUpdate,
)
from authcore.auth.claims import Identity
from authcore.auth.rbac import authorize
from authcore.auth.schemas import UserOut
from authcore.auth.service import DEFAULT_ROLE
from authcore.auth.stores import SqlIdentityStore, UserCreate
from authcore.core.errors import Forbidden, RoleNotFound, TenantNotFound, UserNotFound
from authcore.db.session import get_db
from authcore.governance.store import SqlPolicyStore
from authcore.roles.schemas import RoleAssignment, RoleCreate, RoleOut, RoleUpdate, UserRoleOut
from authcore.roles.store import SqlRoleStore
from authcore.system.runtime import Runtime, get_runtime
from authcore.tenants.schemas import TenantCreate, TenantOut, TenantUpdate
from authcore.tenants.store import SqlTenantStore

logger = logging.getLogger(__name__)

router = APIRouter()


def _reload_policies(db: Session, runtime: Runtime):
    return runtime.policy_engine.reload(SqlPolicyStore(db))


# --- Tenants ---


@router.get("/tenants", response_model=list[TenantOut])
def list_tenants(
    db: Session = Depends(get_db),
    _: Identity = Depends(authorize("tenants", "read")),
):
    return SqlTenantStore(db).list_tenants()


@router.post("/tenants", response_model=TenantOut, status_code=status.HTTP_201_CREATED)
def create_tenant(
    payload: TenantCreate,
    db: Session = Depends(get_db),
    _: Identity = Depends(authorize("tenants", "create")),
):
    tenant = SqlTenantStore(db).create(
        name=payload.name, display_name=payload.display_name, description=payload.description
    )
    db.commit()
    db.refresh(tenant)
    return tenant


@router.get("/tenants/user-counts", response_model=list[TenantUserCount])
def tenant_user_counts(
    db: Session = Depends(get_db),
    current: Identity = Depends(authorize("tenants", "read")),
):
    if not current.is_super_admin:
        raise Forbidden("Super-admin privileges required")
    tenants = SqlTenantStore(db)
    counts = tenants.user_counts()
    return [
        TenantUserCount(tenant_id=t.id, name=t.name, users=counts.get(t.id, 0))
        for t in tenants.list_tenants()
    ]


@router.get("/tenants/{tenant_id}", response_model=TenantOut)
def get_tenant(
    tenant_id: int,
    db: Session = Depends(get_db),
    _: Identity = Depends(authorize("tenants", "read")),
):
    tenant = SqlTenantStore(db).get(tenant_id)
    if tenant is None:
        raise TenantNotFound()
    return tenant


@router.patch("/tenants/{tenant_id}", response_model=TenantOut)
def update_tenant(
    tenant_id: int,
    payload: TenantUpdate,
    db: Session = Depends(get_db),
    _: Identity = Depends(authorize("tenants", "update")),
):
    tenant = SqlTenantStore(db).update(tenant_id, payload.model_dump(exclude_unset=True))
    db.commit()
    db.refresh(tenant)
    return tenant


@router.delete("/tenants/{tenant_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_tenant(
    tenant_id: int,
    db: Session = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
    _: Identity = Depends(authorize("tenants", "delete")),
):
    SqlTenantStore(db).delete(tenant_id)
    db.commit()
    # tenant-scoped roles and permissions went with it
    _reload_policies(db, runtime)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# --- Roles and assignments ---


@router.get("/roles", response_model=list[RoleOut])
def list_roles(
    tenant_id: int | None = Query(default=None, alias="tenantId"),
    db: Session = Depends(get_db),
    _: Identity = Depends(authorize("roles", "read")),
):
    return SqlRoleStore(db).list_roles(tenant_id)


@router.post("/roles", response_model=RoleOut, status_code=status.HTTP_201_CREATED)
def create_role(
    payload: RoleCreate,
    db: Session = Depends(get_db),
    _: Identity = Depends(authorize("roles", "create")),
):
    if payload.tenant_id is not None and SqlTenantStore(db).get(payload.tenant_id) is None:
        raise TenantNotFound()
    role = SqlRoleStore(db).create_role(
        name=payload.name,
        display_name=payload.display_name,
        description=payload.description,
        tenant_id=payload.tenant_id,
    )
    db.commit()
    db.refresh(role)
    return role


@router.get("/roles/{role_id}", response_model=RoleOut)
def get_role(
    role_id: int,
    db: Session = Depends(get_db),
    _: Identity = Depends(authorize("roles", "read")),
):
    role = SqlRoleStore(db).get(role_id)
    if role is None:
        raise RoleNotFound()
    return role


@router.put("/roles/{role_id}", response_model=RoleOut)
def update_role(
    role_id: int,
    payload: RoleUpdate,
    db: Session = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
    current: Identity = Depends(authorize("roles", "update")),
):
    # role names are policy subjects; renaming one rewrites who holds what
    if not current.is_super_admin:
        raise Forbidden("Super-admin privileges required")
    role = SqlRoleStore(db).update_role(role_id, payload.model_dump(exclude_unset=True))
    db.commit()
    db.refresh(role)
    _reload_policies(db, runtime)
    return role


@router.delete("/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_role(
    role_id: int,
    db: Session = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
    _: Identity = Depends(authorize("roles", "delete")),
):
    SqlRoleStore(db).delete_role(role_id)
    db.commit()
    _reload_policies(db, runtime)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/users/{user_id}/roles", response_model=list[RoleOut])
def list_user_roles(
    user_id: int,
    tenant_id: int | None = Query(default=None, alias="tenantId"),
    db: Session = Depends(get_db),
    _: Identity = Depends(authorize("roles", "read")),
):
    if SqlIdentityStore(db).find_by_id(user_id) is None:
        raise UserNotFound()
    return SqlRoleStore(db).roles_for(user_id, tenant_id)


@router.post("/user-roles", response_model=UserRoleOut, status_code=status.HTTP_201_CREATED)
def assign_role(
    payload: RoleAssignment,
    db: Session = Depends(get_db),
    _: Identity = Depends(authorize("roles", "manage")),
):
    if SqlIdentityStore(db).find_by_id(payload.user_id) is None:
        raise UserNotFound()
    roles = SqlRoleStore(db)
    role = roles.get(payload.role_id)
    if role is None:
        raise RoleNotFound()
    if payload.tenant_id is not None and SqlTenantStore(db).get(payload.tenant_id) is None:
        raise TenantNotFound()
    link = roles.assign(payload.user_id, role, payload.tenant_id)
    db.commit()
    db.refresh(link)
    return link


@router.delete("/users/{user_id}/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
def unassign_role(
    user_id: int,
    role_id: int,
    tenant_id: int | None = Query(default=None, alias="tenantId"),
    db: Session = Depends(get_db),
    _: Identity = Depends(authorize("roles", "manage")),
):
    SqlRoleStore(db).unassign(user_id, role_id, tenant_id)
    db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# --- Resources, actions, permissions ---


@router.get("/resources", response_model=list[ResourceOut])
def list_resources(
    db: Session = Depends(get_db),
    _: Identity = Depends(authorize("permissions", "read")),
):
    return SqlPolicyStore(db).list_resources()


@router.post("/resources", response_model=ResourceOut, status_code=status.HTTP_201_CREATED)
def create_resource(
    payload: ResourceCreate,
    db: Session = Depends(get_db),
    _: Identity = Depends(authorize("permissions", "create")),
):
    resource = SqlPolicyStore(db).create_resource(
        payload.type, payload.name, payload.display_name, payload.description
    )
    db.commit()
    db.refresh(resource)
    return resource


@router.delete("/resources/{resource_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_resource(
    resource_id: int,
    db: Session = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
    _: Identity = Depends(authorize("permissions", "delete")),
):
    SqlPolicyStore(db).delete_resource(resource_id)
    db.commit()
    _reload_policies(db, runtime)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/actions", response_model=list[ActionOut])
def list_actions(
    db: Session = Depends(get_db),
    _: Identity = Depends(authorize("permissions", "read")),
):
    return SqlPolicyStore(db).list_actions()


@router.post("/actions", response_model=ActionOut, status_code=status.HTTP_201_CREATED)
def create_action(
    payload: ActionCreate,
    db: Session = Depends(get_db),
    _: Identity = Depends(authorize("permissions", "create")),
):
    action = SqlPolicyStore(db).create_action(payload.name, payload.display_name, payload.description)
    db.commit()
    db.refresh(action)
    return action


@router.delete("/actions/{action_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_action(
    action_id: int,
    db: Session = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
    _: Identity = Depends(authorize("permissions", "delete")),
):
    SqlPolicyStore(db).delete_action(action_id)
    db.commit()
    _reload_policies(db, runtime)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/permissions", response_model=list[PermissionOut])
def list_permissions(
    role_id: int | None = Query(default=None, alias="roleId"),
    db: Session = Depends(get_db),
    _: Identity = Depends(authorize("permissions", "read")),
):
    return SqlPolicyStore(db).list_permissions(role_id=role_id)


@router.post("/permissions", response_model=PermissionOut, status_code=status.HTTP_201_CREATED)
def create_permission(
    payload: PermissionCreate,
    db: Session = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
    _: Identity = Depends(authorize("permissions", "create")),
):
    permission = SqlPolicyStore(db).create_permission(
        payload.role_id, payload.resource_id, payload.action_id, payload.tenant_id
    )
    db.commit()
    db.refresh(permission)
    _reload_policies(db, runtime)
    return permission


@router.delete("/permissions/{permission_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_permission(
    permission_id: int,
    db: Session = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
    _: Identity = Depends(authorize("permissions", "delete")),
):
    SqlPolicyStore(db).delete_permission(permission_id)
    db.commit()
    _reload_policies(db, runtime)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/policies/reload", response_model=PolicyReloadResponse)
def reload_policies(
    db: Session = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
    _: Identity = Depends(authorize("permissions", "manage")),
):
    snapshot = _reload_policies(db, runtime)
    return PolicyReloadResponse(policies=len(snapshot.policies), degraded=snapshot.degraded)


# --- Users ---

# Only a super-admin may change these, on any account including their own.
STATUS_FIELDS = {"is_super_admin", "is_active", "tenant_id"}


@router.get("/users", response_model=list[UserOut])
def list_users(
    tenant_id: int | None = Query(default=None, alias="tenantId"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0, le=100_000),
    db: Session = Depends(get_db),
    _: Identity = Depends(authorize("users", "read")),
):
    return SqlIdentityStore(db).list_users(tenant_id=tenant_id, limit=limit, offset=offset)


@router.post("/users", response_model=UserOut, status_code=status.HTTP_201_CREATED)
def create_user(
    payload: UserCreateRequest,
    db: Session = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
    current: Identity = Depends(authorize("users", "create")),
):
    if payload.is_super_admin and not current.is_super_admin:
        raise Forbidden("Only a super-admin can grant super-admin")
    if payload.tenant_id is not None and SqlTenantStore(db).get(payload.tenant_id) is None:
        raise TenantNotFound()

    user = SqlIdentityStore(db).create(
        UserCreate(
            username=payload.username.strip(),
            email=payload.email.strip(),
            password_hash=runtime.hasher.hash(payload.password),
            display_name=payload.name.strip() or payload.username,
            tenant_id=payload.tenant_id,
            is_active=payload.is_active,
            is_super_admin=payload.is_super_admin,
        )
    )
    roles = SqlRoleStore(db)
    role = roles.resolve_by_name(DEFAULT_ROLE, payload.tenant_id)
    if role is not None:
        roles.assign(user.id, role, payload.tenant_id)
    db.commit()
    db.refresh(user)
    logger.info("user_id=%s created user_id=%s", current.user_id, user.id)
    return user


@router.get("/users/{user_id}", response_model=UserOut)
def get_user(
    user_id: int,
    db: Session = Depends(get_db),
    _: Identity = Depends(authorize("users", "read")),
):
    user = SqlIdentityStore(db).find_by_id(user_id)
    if user is None:
        raise UserNotFound()
    return user


@router.patch("/users/{user_id}", response_model=UserOut)
def update_user(
    user_id: int,
    payload: UserUpdate,
    db: Session = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
    current: Identity = Depends(authorize("users", "update")),
):
    if current.user_id != user_id and not current.is_super_admin:
        raise Forbidden("You can only update your own account")
    patch = payload.model_dump(exclude_unset=True)
    if patch.keys() & STATUS_FIELDS and not current.is_super_admin:
        raise Forbidden("Only a super-admin can change account status")
    if "tenant_id" in patch and patch["tenant_id"] is not None:
        if SqlTenantStore(db).get(patch["tenant_id"]) is None:
            raise TenantNotFound()
    password = patch.pop("password", None)
    if password:
        patch["password_hash"] = runtime.hasher.hash(password)

    user = SqlIdentityStore(db).update(user_id, patch)
    db.commit()
    db.refresh(user)
    return user


@router.delete("/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_user(
    user_id: int,
    db: Session = Depends(get_db),
    current: Identity = Depends(authorize("users", "delete")),
):
    if not current.is_super_admin:
        raise Forbidden("Only a super-admin can delete users")
    if current.user_id == user_id:
        raise Forbidden("Cannot delete your own account")
    SqlIdentityStore(db).delete(user_id)
    db.commit()
    logger.info("user_id=%s deleted user_id=%s", current.user_id, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
