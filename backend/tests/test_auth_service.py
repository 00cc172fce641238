from urllib.parse import parse_qs, urlparse

import pytest

from authcore.auth.idp import IdpProfile
from authcore.auth.models import User
from authcore.auth.service import AuthService, RegisterInput, decode_access_token
from authcore.auth.stores import SqlIdentityStore
from authcore.core.deadline import Deadline
from authcore.core.errors import (
    Conflict,
    Forbidden,
    Inactive,
    InternalError,
    InvalidCredentials,
    TenantNotFound,
    TokenInvalid,
    ValidationError,
)
from authcore.roles.store import SqlRoleStore
from authcore.tenants.store import SqlTenantStore


class FakeIdp:
    configured = True

    def __init__(self, profile):
        self.profile = profile
        self.codes = []

    def authorize_url(self, state):
        return f"https://idp.example/login/oauth/authorize?state={state}"

    def exchange(self, code, *, deadline=None):
        self.codes.append(code)
        return f"access-{code}"

    def parse_claims(self, access_token, *, deadline=None):
        return self.profile


@pytest.fixture
def service(db, runtime, seeded):
    return AuthService(db, runtime)


def _register(service, username="alice", tenant_id=None):
    return service.register(
        RegisterInput(
            username=username,
            password="p@ssw0rd!",
            email=f"{username}@x",
            name=username.title(),
            tenant_id=tenant_id,
        )
    )


def _state(service, redirect_uri=None):
    url = service.begin_idp(redirect_uri)
    return parse_qs(urlparse(url).query)["state"][0]


def test_register_assigns_user_role_and_mints(service, runtime):
    result = _register(service)

    assert result.user.username == "alice"
    assert result.role_names == ["user"]
    claims = decode_access_token(runtime, result.token)
    assert claims.user_id == result.user.id
    assert claims.roles == ["user"]
    assert claims.tenant_id is None


def test_register_into_tenant_uses_tenant_role(service, db):
    tenant = SqlTenantStore(db).get_by_name("default")
    result = _register(service, tenant_id=tenant.id)

    assert result.tenant.id == tenant.id
    assert [r.tenant_id for r in result.roles] == [tenant.id]


def test_register_rejects_unknown_tenant_and_duplicates(service):
    with pytest.raises(ValidationError) as exc:
        _register(service, tenant_id=9999)
    assert exc.value.message == "Tenant not found"

    _register(service)
    with pytest.raises(Conflict):
        _register(service)


def test_login_round_trip_and_last_login(service, db):
    _register(service)
    result = service.login("alice", "p@ssw0rd!")

    assert result.token
    db.expire_all()
    assert SqlIdentityStore(db).find_by_username("alice").last_login_at is not None


def test_login_unknown_user_runs_dummy_verify(service, runtime, monkeypatch):
    calls = []
    monkeypatch.setattr(runtime.hasher, "dummy_verify", lambda pw: calls.append(pw) or False)

    with pytest.raises(InvalidCredentials):
        service.login("nobody", "whatever")
    assert calls == ["whatever"]


def test_login_wrong_password_and_inactive(service, db):
    user = _register(service).user
    with pytest.raises(InvalidCredentials):
        service.login("alice", "wrong")

    SqlIdentityStore(db).update(user.id, {"is_active": False})
    db.commit()
    # wrong password still looks like a credentials failure
    with pytest.raises(InvalidCredentials):
        service.login("alice", "wrong")
    with pytest.raises(Inactive):
        service.login("alice", "p@ssw0rd!")


def test_login_verify_overrunning_deadline_is_internal_error(service, runtime, monkeypatch):
    _register(service)
    clock = [0.0]

    def slow_verify(password, password_hash):
        clock[0] += 60
        return True

    monkeypatch.setattr(
        "authcore.auth.service.Deadline", lambda seconds: Deadline(seconds, clock=lambda: clock[0])
    )
    monkeypatch.setattr(runtime.hasher, "verify", slow_verify)

    with pytest.raises(InternalError):
        service.login("alice", "p@ssw0rd!")


def test_last_login_failure_does_not_fail_login(service, monkeypatch):
    from sqlalchemy.exc import OperationalError

    _register(service)

    def broken(self, user_id, ts):
        raise OperationalError("UPDATE users", {}, Exception("locked"))

    monkeypatch.setattr(SqlIdentityStore, "set_last_login", broken)
    assert service.login("alice", "p@ssw0rd!").token


def test_current_user(service):
    token = _register(service).token
    result = service.current_user(token)

    assert result.user.username == "alice"
    assert result.token is None
    with pytest.raises(TokenInvalid):
        service.current_user(token + "x")


def test_switch_tenant_requires_membership(service, db, runtime):
    tenants = SqlTenantStore(db)
    roles = SqlRoleStore(db)
    t1 = tenants.create(name="t1", display_name="T1")
    t2 = tenants.create(name="t2", display_name="T2")
    member = roles.create_role(name="member", display_name="Member", tenant_id=t1.id)
    db.commit()
    user = _register(service).user
    roles.assign(user.id, member, t1.id)
    db.commit()

    with pytest.raises(Forbidden):
        service.switch_tenant(user.id, t2.id)
    with pytest.raises(TenantNotFound):
        service.switch_tenant(user.id, 9999)

    result = service.switch_tenant(user.id, t1.id)
    claims = decode_access_token(runtime, result.token)
    assert claims.tenant_id == t1.id
    assert claims.roles == result.role_names == ["user", "member"]
    assert result.user.tenant_id == t1.id


def test_super_admin_may_switch_anywhere(service, db):
    t2 = SqlTenantStore(db).create(name="t2", display_name="T2")
    user = _register(service).user
    SqlIdentityStore(db).update(user.id, {"is_super_admin": True})
    db.commit()

    assert service.switch_tenant(user.id, t2.id).tenant.id == t2.id


def test_logout_message(service):
    assert service.logout() == {"message": "Logged out successfully"}


def test_idp_first_time_then_returning_then_conflict(service, runtime, db):
    runtime.idp = FakeIdp(IdpProfile(external_id="ext-1", nickname="bob", email="b@x", name="Bob"))

    first = service.complete_idp("code-1", _state(service))
    assert first.user.external_id == "ext-1"
    assert first.role_names == ["user"]
    first_login = first.user.last_login_at

    second = service.complete_idp("code-2", _state(service))
    assert second.user.id == first.user.id
    assert db.query(User).filter(User.username == "bob").count() == 1
    assert second.user.last_login_at >= first_login

    runtime.idp = FakeIdp(IdpProfile(external_id="ext-2", nickname="bob", email="b2@x", name="Bob"))
    with pytest.raises(Conflict):
        service.complete_idp("code-3", _state(service))


def test_idp_links_existing_local_account(service, runtime):
    local = _register(service, "carol").user
    runtime.idp = FakeIdp(IdpProfile(external_id="ext-9", nickname="carol", email="carol@x", name="Carol"))

    result = service.complete_idp("code", _state(service))
    assert result.user.id == local.id
    assert result.user.external_id == "ext-9"


def test_idp_state_is_verified(service, runtime):
    runtime.idp = FakeIdp(IdpProfile(external_id="ext-1", nickname="bob", email="b@x", name="Bob"))
    access = _register(service).token

    with pytest.raises(ValidationError):
        service.complete_idp("code", "forged-state")
    # an access token is not a state token
    with pytest.raises(ValidationError):
        service.complete_idp("code", access)
    assert runtime.idp.codes == []


def test_state_token_is_not_an_access_token(service, runtime):
    runtime.idp = FakeIdp(None)
    with pytest.raises(TokenInvalid):
        decode_access_token(runtime, _state(service))


def test_redirect_uri_kept_only_under_app_url(service, runtime):
    runtime.idp = FakeIdp(IdpProfile(external_id="ext-1", nickname="bob", email="b@x", name="Bob"))
    app_url = runtime.settings.APP_URL

    kept = service.complete_idp("c1", _state(service, f"{app_url}/welcome"))
    assert kept.redirect_uri == f"{app_url}/welcome"

    dropped = service.complete_idp("c2", _state(service, "https://evil.example/steal"))
    assert dropped.redirect_uri is None
