from datetime import datetime

from pydantic import Field

from authcore.core.schemas import CamelModel
from authcore.roles.schemas import RoleOut
from authcore.tenants.schemas import TenantOut


class RegisterRequest(CamelModel):
    username: str = Field(min_length=1, max_length=255)
    # bcrypt hard limit = 72 bytes
    password: str = Field(min_length=6, max_length=72)
    email: str = Field(min_length=3, max_length=255)
    name: str = Field(min_length=1, max_length=255)
    tenant_id: int | None = None


class LoginRequest(CamelModel):
    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=72)


class SwitchTenantRequest(CamelModel):
    tenant_id: int


class UserOut(CamelModel):
    id: int
    username: str
    email: str
    display_name: str
    avatar: str | None = None
    tenant_id: int | None = None
    is_active: bool
    is_super_admin: bool
    external_id: str | None = None
    last_login_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class MeResponse(CamelModel):
    user: UserOut
    tenant: TenantOut | None = None
    roles: list[RoleOut]


class AuthResponse(MeResponse):
    token: str


class ProfileUpdate(CamelModel):
    email: str | None = Field(default=None, min_length=3, max_length=255)
    display_name: str | None = Field(default=None, min_length=1, max_length=255)
    avatar: str | None = None
    password: str | None = Field(default=None, min_length=6, max_length=72)
    current_password: str | None = Field(default=None, max_length=72)
