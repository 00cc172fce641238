import logging
import secrets
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from authcore.auth.claims import Claims
from authcore.auth.idp import IdpProfile
from authcore.auth.models import User
from authcore.auth.stores import SqlIdentityStore, UserCreate
from authcore.core.deadline import Deadline
from authcore.core.errors import (
    AuthError,
    Conflict,
    Forbidden,
    Inactive,
    InternalError,
    InvalidCredentials,
    TenantNotFound,
    TokenInvalid,
    UserNotFound,
    ValidationError,
)
from authcore.roles.models import Role
from authcore.roles.store import SqlRoleStore
from authcore.system.runtime import Runtime
from authcore.tenants.models import Tenant
from authcore.tenants.store import SqlTenantStore

logger = logging.getLogger(__name__)

DEFAULT_ROLE = "user"
STATE_TYPE = "idp_state"
LOGOUT_MESSAGE = "Logged out successfully"
PROFILE_FIELDS = {"email", "display_name", "avatar", "password"}


@dataclass
class RegisterInput:
    username: str
    password: str
    email: str
    name: str
    tenant_id: int | None = None


@dataclass
class AuthResult:
    user: User
    tenant: Tenant | None
    roles: list[Role] = field(default_factory=list)
    token: str | None = None
    redirect_uri: str | None = None

    @property
    def role_names(self) -> list[str]:
        return [r.name for r in self.roles]


def decode_access_token(runtime: Runtime, token: str) -> Claims:
    """Verify a locally-issued bearer token. Touches no storage."""
    payload = runtime.codec.parse(token, runtime.resolver, issuer=runtime.settings.JWT_ISSUER)
    if payload.get("typ") == STATE_TYPE:
        raise TokenInvalid(detail="state token presented as access token")
    return Claims.from_payload(payload)


class AuthService:
    def __init__(self, db: Session, runtime: Runtime, *, deadline: Deadline | None = None):
        self.db = db
        self.runtime = runtime
        self.settings = runtime.settings
        self.deadline = deadline

    # --- plumbing ---

    def _stores(self, deadline: Deadline | None = None):
        deadline = deadline or self.deadline
        return (
            SqlIdentityStore(self.db, deadline=deadline),
            SqlRoleStore(self.db, deadline=deadline),
            SqlTenantStore(self.db, deadline=deadline),
        )

    @contextmanager
    def _transaction(self):
        try:
            yield
            self.db.commit()
        except AuthError:
            self.db.rollback()
            raise
        except IntegrityError as exc:
            self.db.rollback()
            raise Conflict(detail=str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise InternalError(detail=f"database error: {exc}") from exc
        except Exception:
            self.db.rollback()
            raise

    def _mint(self, user: User, roles: list[Role], tenant_id: int | None) -> str:
        claims = Claims.issue(
            user,
            [r.name for r in roles],
            tenant_id=tenant_id,
            issuer=self.settings.JWT_ISSUER,
            ttl_seconds=self.settings.JWT_ACCESS_EXP_MINUTES * 60,
            now=self.runtime.codec.now(),
        )
        return self.runtime.codec.mint(claims.to_payload(), self.runtime.signing_key)

    def _touch_last_login(self, user_id: int) -> None:
        # Best effort: a failed stamp never fails the login.
        try:
            SqlIdentityStore(self.db).set_last_login(user_id, datetime.utcnow())
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.warning("last-login update failed for user_id=%s: %s", user_id, exc)

    # --- local accounts ---

    def register(self, data: RegisterInput) -> AuthResult:
        username = (data.username or "").strip()
        email = (data.email or "").strip()
        if not username or not email or not data.password:
            raise ValidationError(detail="username, email and password are required")

        identities, roles, tenants = self._stores()
        with self._transaction():
            tenant = None
            if data.tenant_id is not None:
                tenant = tenants.get(data.tenant_id)
                if tenant is None:
                    raise ValidationError("Tenant not found")
            if identities.find_by_username(username) is not None:
                raise Conflict("Username already exists")
            if identities.find_by_email(email) is not None:
                raise Conflict("Email already exists")

            user = identities.create(
                UserCreate(
                    username=username,
                    email=email,
                    password_hash=self.runtime.hasher.hash(data.password),
                    display_name=(data.name or "").strip() or username,
                    tenant_id=data.tenant_id,
                )
            )
            role = roles.resolve_by_name(DEFAULT_ROLE, data.tenant_id)
            if role is not None:
                roles.assign(user.id, role, data.tenant_id)
            else:
                logger.warning("no %r role to assign to new user %s", DEFAULT_ROLE, username)

            user_roles = roles.roles_for(user.id, user.tenant_id)
            token = self._mint(user, user_roles, user.tenant_id)

        logger.info("registered user_id=%s tenant_id=%s", user.id, user.tenant_id)
        return AuthResult(user=user, tenant=tenant, roles=user_roles, token=token)

    def login(self, username: str, password: str) -> AuthResult:
        deadline = Deadline(self.settings.LOGIN_DEADLINE_SECONDS)
        hasher = self.runtime.hasher
        identities, roles, tenants = self._stores(deadline)

        with self._transaction():
            user = identities.find_by_username(username)
            if user is None:
                hasher.dummy_verify(password)
                raise InvalidCredentials()

            ok = hasher.verify(password, user.password_hash)
            if deadline.expired:
                logger.error(
                    "password verification overran the login deadline (%.3fs, bcrypt rounds=%s)",
                    deadline.elapsed(),
                    hasher.rounds,
                )
                raise InternalError(detail="login deadline exceeded during password verification")
            if not ok:
                raise InvalidCredentials()
            # Only reported once the password is proven, so state never leaks to guessers.
            if not user.is_active:
                raise Inactive()

            if hasher.needs_update(user.password_hash):
                user.password_hash = hasher.hash(password)

            tenant = tenants.get(user.tenant_id) if user.tenant_id is not None else None
            user_roles = roles.roles_for(user.id, user.tenant_id)
            token = self._mint(user, user_roles, user.tenant_id)

        self._touch_last_login(user.id)
        logger.info("login user_id=%s tenant_id=%s", user.id, user.tenant_id)
        return AuthResult(user=user, tenant=tenant, roles=user_roles, token=token)

    def current_user(self, token: str) -> AuthResult:
        claims = decode_access_token(self.runtime, token)
        identities, roles, tenants = self._stores()
        user = identities.find_by_id(claims.user_id)
        if user is None:
            raise UserNotFound()
        tenant = tenants.get(user.tenant_id) if user.tenant_id is not None else None
        return AuthResult(user=user, tenant=tenant, roles=roles.roles_for(user.id, user.tenant_id))

    def switch_tenant(self, user_id: int, tenant_id: int) -> AuthResult:
        identities, roles, tenants = self._stores()
        with self._transaction():
            tenant = tenants.get(tenant_id)
            if tenant is None:
                raise TenantNotFound()
            user = identities.find_by_id(user_id)
            if user is None:
                raise UserNotFound()
            if not user.is_active:
                raise Inactive()
            if not user.is_super_admin and not roles.has_role_in_tenant(user.id, tenant.id):
                raise Forbidden("Access to tenant denied")

            identities.update(user.id, {"tenant_id": tenant.id})
            user_roles = roles.roles_for(user.id, tenant.id)
            token = self._mint(user, user_roles, tenant.id)

        logger.info("user_id=%s switched to tenant_id=%s", user_id, tenant_id)
        return AuthResult(user=user, tenant=tenant, roles=user_roles, token=token)

    def logout(self) -> dict[str, str]:
        return {"message": LOGOUT_MESSAGE}

    def profile(self, user_id: int) -> User:
        identities, _, _ = self._stores()
        user = identities.find_by_id(user_id)
        if user is None:
            raise UserNotFound()
        return user

    def update_profile(
        self, user_id: int, patch: dict[str, Any], current_password: str | None = None
    ) -> User:
        """Self-service edit of the caller's own record."""
        unknown = set(patch) - PROFILE_FIELDS
        if unknown:
            raise ValidationError(detail=f"not editable from a profile: {sorted(unknown)}")
        changes = dict(patch)
        password = changes.pop("password", None)

        identities, _, _ = self._stores()
        with self._transaction():
            user = identities.find_by_id(user_id)
            if user is None:
                raise UserNotFound()
            if not user.is_active:
                raise Inactive()
            if password:
                if not current_password or not self.runtime.hasher.verify(
                    current_password, user.password_hash
                ):
                    raise ValidationError("Current password is incorrect")
                changes["password_hash"] = self.runtime.hasher.hash(password)
            user = identities.update(user.id, changes)

        logger.info("user_id=%s updated profile fields=%s", user_id, sorted(patch))
        return user

    # --- identity provider ---

    def _safe_redirect(self, redirect_uri: str | None) -> str | None:
        if not redirect_uri:
            return None
        base = self.settings.APP_URL
        if redirect_uri == base or redirect_uri.startswith((base + "/", base + "?")):
            return redirect_uri
        logger.info("dropping redirect_uri outside APP_URL: %s", redirect_uri)
        return None

    def begin_idp(self, redirect_uri: str | None = None) -> str:
        """Authorize URL for the provider, with a signed short-lived ``state``."""
        idp = self.runtime.idp
        if not idp.configured:
            raise InternalError("Identity provider not configured")
        now = self.runtime.codec.now()
        state = {
            "typ": STATE_TYPE,
            "nonce": secrets.token_urlsafe(16),
            "iss": self.settings.JWT_ISSUER,
            "iat": now,
            "exp": now + self.settings.IDP_STATE_EXP_MINUTES * 60,
        }
        redirect = self._safe_redirect(redirect_uri)
        if redirect:
            state["redirect"] = redirect
        return idp.authorize_url(self.runtime.codec.mint(state, self.runtime.signing_key))

    def _verify_state(self, state: str) -> dict:
        if not state:
            raise ValidationError("Invalid state")
        try:
            payload = self.runtime.codec.parse(
                state, self.runtime.resolver, issuer=self.settings.JWT_ISSUER
            )
        except TokenInvalid as exc:
            raise ValidationError("Invalid state", detail=exc.detail) from exc
        if payload.get("typ") != STATE_TYPE:
            raise ValidationError("Invalid state", detail="not a state token")
        return payload

    def _reconcile(self, profile: IdpProfile, identities: SqlIdentityStore, roles: SqlRoleStore) -> User:
        user = identities.find_by_external_id(profile.external_id)
        if user is not None:
            return user

        user = identities.find_by_username(profile.nickname)
        if user is not None:
            if user.external_id and user.external_id != profile.external_id:
                raise Conflict("Username already linked to another identity")
            logger.info("linking user_id=%s to external identity", user.id)
            return identities.link(user.id, profile.external_id)

        user = identities.create(
            UserCreate(
                username=profile.nickname,
                email=profile.email,
                password_hash=self.runtime.hasher.random_hash(),
                display_name=profile.name,
                avatar=profile.avatar,
                external_id=profile.external_id,
            )
        )
        role = roles.resolve_by_name(DEFAULT_ROLE, None)
        if role is not None:
            roles.assign(user.id, role, None)
        logger.info("created user_id=%s from identity provider", user.id)
        return user

    def complete_idp(self, code: str, state: str) -> AuthResult:
        if not code:
            raise ValidationError("Missing authorization code")
        state_payload = self._verify_state(state)

        deadline = self.deadline or Deadline(self.settings.REQUEST_TIMEOUT_SECONDS)
        idp = self.runtime.idp
        access_token = idp.exchange(code, deadline=deadline)
        profile = idp.parse_claims(access_token, deadline=deadline)

        identities, roles, tenants = self._stores(deadline)
        with self._transaction():
            user = self._reconcile(profile, identities, roles)
            if not user.is_active:
                raise Inactive()
            identities.set_last_login(user.id, datetime.utcnow())
            tenant = tenants.get(user.tenant_id) if user.tenant_id is not None else None
            user_roles = roles.roles_for(user.id, user.tenant_id)
            token = self._mint(user, user_roles, user.tenant_id)

        return AuthResult(
            user=user,
            tenant=tenant,
            roles=user_roles,
            token=token,
            redirect_uri=state_payload.get("redirect"),
        )
