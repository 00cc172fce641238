from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from authcore.core.errors import InvalidFormat


class Claims(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    sub: str
    user_id: int = Field(alias="userId")
    username: str
    email: str
    name: str
    tenant_id: int | None = Field(default=None, alias="tenantId")
    roles: list[str] = Field(default_factory=list)
    is_super_admin: bool = Field(default=False, alias="isSuperAdmin")
    iat: int
    nbf: int
    exp: int
    iss: str

    @model_validator(mode="after")
    def _sub_mirrors_user_id(self):
        if self.sub != str(self.user_id):
            raise ValueError("sub does not match userId")
        return self

    @classmethod
    def issue(
        cls,
        user,
        roles: list[str],
        *,
        tenant_id: int | None,
        issuer: str,
        ttl_seconds: int,
        now: int,
    ) -> "Claims":
        return cls(
            sub=str(user.id),
            user_id=user.id,
            username=user.username,
            email=user.email,
            name=user.display_name,
            tenant_id=tenant_id,
            roles=list(roles),
            is_super_admin=bool(user.is_super_admin),
            iat=now,
            nbf=now,
            exp=now + ttl_seconds,
            iss=issuer,
        )

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Claims":
        try:
            return cls.model_validate(payload)
        except ValidationError as exc:
            raise InvalidFormat(detail=f"malformed claims: {exc.error_count()} error(s)") from exc

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)

    def is_expired(self, now: int, leeway: int = 0) -> bool:
        return not self.exp > now - leeway

    def is_not_yet_valid(self, now: int, leeway: int = 0) -> bool:
        return not self.nbf <= now + leeway


@dataclass(frozen=True)
class Identity:
    """What a verified bearer token tells a request handler about the caller."""

    user_id: int
    username: str
    email: str
    name: str
    tenant_id: int | None
    roles: tuple[str, ...]
    is_super_admin: bool

    @classmethod
    def from_claims(cls, claims: Claims) -> "Identity":
        return cls(
            user_id=claims.user_id,
            username=claims.username,
            email=claims.email,
            name=claims.name,
            tenant_id=claims.tenant_id,
            roles=tuple(claims.roles),
            is_super_admin=claims.is_super_admin,
        )
