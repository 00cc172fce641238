from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from authcore.auth.models import User
from authcore.core.deadline import Deadline, checkpoint
from authcore.core.errors import Conflict, UserNotFound, ValidationError


@dataclass
class UserCreate:
    username: str
    email: str
    password_hash: str
    display_name: str
    tenant_id: int | None = None
    avatar: str | None = None
    is_active: bool = True
    is_super_admin: bool = False
    external_id: str | None = None


UPDATABLE_FIELDS = {
    "username",
    "email",
    "password_hash",
    "display_name",
    "avatar",
    "tenant_id",
    "is_active",
    "is_super_admin",
    "external_id",
    "last_login_at",
}
# Only these may be cleared by passing None; None for anything else means "leave as is".
NULLABLE_FIELDS = {"avatar", "tenant_id", "external_id", "last_login_at"}


class IdentityStore(Protocol):
    def find_by_id(self, user_id: int) -> User | None: ...

    def find_by_username(self, username: str) -> User | None: ...

    def find_by_email(self, email: str) -> User | None: ...

    def find_by_external_id(self, external_id: str) -> User | None: ...

    def create(self, data: UserCreate) -> User: ...

    def update(self, user_id: int, patch: dict[str, Any]) -> User: ...

    def set_last_login(self, user_id: int, ts: datetime) -> None: ...

    def link(self, user_id: int, external_id: str) -> User: ...


class SqlIdentityStore:
    def __init__(self, db: Session, *, deadline: Deadline | None = None):
        self.db = db
        self.deadline = deadline

    def find_by_id(self, user_id: int) -> User | None:
        checkpoint(self.deadline)
        return self.db.get(User, user_id)

    def find_by_username(self, username: str) -> User | None:
        checkpoint(self.deadline)
        return self.db.execute(select(User).where(User.username == username)).scalar_one_or_none()

    def find_by_email(self, email: str) -> User | None:
        checkpoint(self.deadline)
        return self.db.execute(select(User).where(User.email == email)).scalar_one_or_none()

    def find_by_external_id(self, external_id: str) -> User | None:
        checkpoint(self.deadline)
        return self.db.execute(
            select(User).where(User.external_id == external_id)
        ).scalar_one_or_none()

    def list_users(
        self, *, tenant_id: int | None = None, limit: int = 100, offset: int = 0
    ) -> list[User]:
        checkpoint(self.deadline)
        stmt = select(User)
        if tenant_id is not None:
            stmt = stmt.where(User.tenant_id == tenant_id)
        return list(self.db.execute(stmt.order_by(User.id).limit(limit).offset(offset)).scalars())

    def _ensure_unique(self, *, username=None, email=None, external_id=None, exclude_id=None) -> None:
        for column, value, label in (
            (User.username, username, "Username"),
            (User.email, email, "Email"),
            (User.external_id, external_id, "External id"),
        ):
            if value is None:
                continue
            existing = self.db.execute(select(User.id).where(column == value)).scalar_one_or_none()
            if existing is not None and existing != exclude_id:
                raise Conflict(f"{label} already exists")

    def _flush(self) -> None:
        try:
            self.db.flush()
        except IntegrityError as exc:
            self.db.rollback()
            raise Conflict(detail=str(exc.orig)) from exc

    def create(self, data: UserCreate) -> User:
        checkpoint(self.deadline)
        self._ensure_unique(
            username=data.username, email=data.email, external_id=data.external_id
        )
        user = User(
            username=data.username,
            email=data.email,
            password_hash=data.password_hash,
            display_name=data.display_name,
            avatar=data.avatar,
            tenant_id=data.tenant_id,
            is_active=data.is_active,
            is_super_admin=data.is_super_admin,
            external_id=data.external_id,
        )
        self.db.add(user)
        self._flush()
        return user

    def update(self, user_id: int, patch: dict[str, Any]) -> User:
        checkpoint(self.deadline)
        unknown = set(patch) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(detail=f"unknown user fields: {sorted(unknown)}")
        user = self.db.get(User, user_id)
        if user is None:
            raise UserNotFound()

        changes = {
            k: v for k, v in patch.items() if v is not None or k in NULLABLE_FIELDS
        }
        self._ensure_unique(
            username=changes.get("username"),
            email=changes.get("email"),
            external_id=changes.get("external_id"),
            exclude_id=user.id,
        )
        for key, value in changes.items():
            setattr(user, key, value)
        self._flush()
        return user

    def set_last_login(self, user_id: int, ts: datetime) -> None:
        checkpoint(self.deadline)
        user = self.db.get(User, user_id)
        if user is not None:
            user.last_login_at = ts
            self.db.flush()

    def link(self, user_id: int, external_id: str) -> User:
        checkpoint(self.deadline)
        owner = self.find_by_external_id(external_id)
        if owner is not None and owner.id != user_id:
            raise Conflict("External id already linked to another user")
        user = self.db.get(User, user_id)
        if user is None:
            raise UserNotFound()
        if user.external_id != external_id:
            user.external_id = external_id
            self._flush()
        return user

    def delete(self, user_id: int) -> None:
        checkpoint(self.deadline)
        user = self.db.get(User, user_id)
        if user is None:
            raise UserNotFound()
        self.db.delete(user)
        self.db.flush()
