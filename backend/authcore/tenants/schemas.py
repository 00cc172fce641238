from datetime import datetime

from pydantic import Field

from authcore.core.schemas import CamelModel


class TenantCreate(CamelModel):
    name: str = Field(min_length=1, max_length=255)
    display_name: str = Field(min_length=1, max_length=255)
    description: str | None = None


class TenantUpdate(CamelModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    display_name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None


class TenantOut(CamelModel):
    id: int
    name: str
    display_name: str
    description: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
