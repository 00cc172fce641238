from pydantic import Field

from authcore.core.schemas import CamelModel


class ResourceCreate(CamelModel):
    type: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=255)
    display_name: str | None = Field(default=None, max_length=255)
    description: str | None = None


class ResourceOut(CamelModel):
    id: int
    type: str
    name: str
    display_name: str
    description: str | None = None


class ActionCreate(CamelModel):
    name: str = Field(min_length=1, max_length=255)
    display_name: str | None = Field(default=None, max_length=255)
    description: str | None = None


class ActionOut(CamelModel):
    id: int
    name: str
    display_name: str
    description: str | None = None


class PermissionCreate(CamelModel):
    role_id: int
    resource_id: int
    action_id: int
    tenant_id: int | None = None


class PermissionOut(CamelModel):
    id: int
    role_id: int
    resource_id: int
    action_id: int
    tenant_id: int | None = None


class PolicyReloadResponse(CamelModel):
    policies: int
    degraded: bool


class UserUpdate(CamelModel):
    email: str | None = Field(default=None, min_length=3, max_length=255)
    display_name: str | None = Field(default=None, min_length=1, max_length=255)
    avatar: str | None = None
    tenant_id: int | None = None
    is_active: bool | None = None
    is_super_admin: bool | None = None
    # bcrypt hard limit = 72 bytes
    password: str | None = Field(default=None, min_length=6, max_length=72)


class UserCreateRequest(CamelModel):
    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=6, max_length=72)
    email: str = Field(min_length=3, max_length=255)
    name: str = Field(min_length=1, max_length=255)
    tenant_id: int | None = None
    is_active: bool = True
    is_super_admin: bool = False


class TenantUserCount(CamelModel):
    tenant_id: int
    name: str
    users: int
