from pydantic import Field

from authcore.core.schemas import CamelModel


class RoleCreate(CamelModel):
    name: str = Field(min_length=1, max_length=255)
    display_name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    tenant_id: int | None = None


class RoleOut(CamelModel):
    id: int
    name: str
    display_name: str
    description: str | None = None
    tenant_id: int | None = None


class RoleAssignment(CamelModel):
    user_id: int
    role_id: int
    tenant_id: int | None = None


class UserRoleOut(CamelModel):
    id: int
    user_id: int
    role_id: int
    tenant_id: int | None = None


class RoleUpdate(CamelModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    display_name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
