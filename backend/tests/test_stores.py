import pytest
from sqlalchemy import select

from authcore.auth.models import User
from authcore.auth.stores import SqlIdentityStore, UserCreate
from authcore.core.errors import Conflict, UserNotFound, ValidationError
from authcore.governance.store import SqlPolicyStore
from authcore.roles.models import Role, UserRole
from authcore.roles.store import SqlRoleStore
from authcore.tenants.store import SqlTenantStore


def _user(store, username="alice", **kwargs):
    data = dict(username=username, email=f"{username}@x", password_hash="h", display_name=username.title())
    data.update(kwargs)
    return store.create(UserCreate(**data))


def test_identity_store_lookups_and_conflicts(db):
    users = SqlIdentityStore(db)
    alice = _user(users, external_id="ext-a")

    assert users.find_by_username("alice").id == alice.id
    assert users.find_by_email("alice@x").id == alice.id
    assert users.find_by_external_id("ext-a").id == alice.id
    assert users.find_by_username("Alice") is None

    with pytest.raises(Conflict):
        _user(users, "alice", email="other@x")
    with pytest.raises(Conflict):
        _user(users, "bob", email="alice@x")


def test_update_is_partial_and_only_clears_nullable_fields(db):
    users = SqlIdentityStore(db)
    alice = _user(users, avatar="http://img")

    updated = users.update(alice.id, {"display_name": None, "avatar": None, "is_active": False})
    assert updated.display_name == "Alice"
    assert updated.avatar is None
    assert updated.is_active is False

    with pytest.raises(ValidationError):
        users.update(alice.id, {"role": "admin"})
    with pytest.raises(UserNotFound):
        users.update(9999, {"display_name": "x"})


def test_link_binds_once(db):
    users = SqlIdentityStore(db)
    alice = _user(users)
    bob = _user(users, "bob")

    users.link(alice.id, "ext-1")
    # relinking the same pair is a no-op
    assert users.link(alice.id, "ext-1").external_id == "ext-1"
    with pytest.raises(Conflict):
        users.link(bob.id, "ext-1")


def test_roles_for_mixes_tenant_and_global_assignments(db):
    tenants = SqlTenantStore(db)
    roles = SqlRoleStore(db)
    users = SqlIdentityStore(db)
    t1 = tenants.create(name="t1", display_name="T1")
    t2 = tenants.create(name="t2", display_name="T2")
    alice = _user(users, tenant_id=t1.id)

    global_user = roles.create_role(name="user", display_name="User")
    t1_admin = roles.create_role(name="admin", display_name="Admin", tenant_id=t1.id)
    t2_admin = roles.create_role(name="admin", display_name="Admin", tenant_id=t2.id)
    roles.assign(alice.id, global_user, None)
    roles.assign(alice.id, t1_admin, t1.id)
    roles.assign(alice.id, t2_admin, t2.id)
    # assigning twice is idempotent
    roles.assign(alice.id, t1_admin, t1.id)

    assert [r.id for r in roles.roles_for(alice.id, t1.id)] == [global_user.id, t1_admin.id]
    assert [r.id for r in roles.roles_for(alice.id, t2.id)] == [global_user.id, t2_admin.id]
    assert [r.id for r in roles.roles_for(alice.id, None)] == [global_user.id]
    assert roles.has_role_in_tenant(alice.id, t1.id) is True


def test_tenant_role_cannot_be_assigned_elsewhere(db):
    tenants = SqlTenantStore(db)
    roles = SqlRoleStore(db)
    t1 = tenants.create(name="t1", display_name="T1")
    t2 = tenants.create(name="t2", display_name="T2")
    alice = _user(SqlIdentityStore(db))
    t1_admin = roles.create_role(name="admin", display_name="Admin", tenant_id=t1.id)

    with pytest.raises(ValidationError):
        roles.assign(alice.id, t1_admin, t2.id)
    with pytest.raises(ValidationError):
        roles.assign(alice.id, t1_admin, None)


def test_resolve_by_name_prefers_tenant_scope(db):
    t1 = SqlTenantStore(db).create(name="t1", display_name="T1")
    roles = SqlRoleStore(db)
    global_user = roles.create_role(name="user", display_name="User")
    scoped_user = roles.create_role(name="user", display_name="User", tenant_id=t1.id)

    assert roles.resolve_by_name("user", t1.id).id == scoped_user.id
    assert roles.resolve_by_name("user", None).id == global_user.id
    assert roles.resolve_by_name("user", 9999).id == global_user.id
    with pytest.raises(Conflict):
        roles.create_role(name="user", display_name="Again")


def test_policy_store_lists_name_triples(db):
    roles = SqlRoleStore(db)
    policies = SqlPolicyStore(db)
    editor = roles.create_role(name="editor", display_name="Editor")
    docs = policies.create_resource("module", "documents")
    update, _ = policies.ensure_action("update")
    policies.create_permission(editor.id, docs.id, update.id)

    assert policies.count() == 1
    assert policies.list_all() == [("editor", "documents", "update")]
    assert policies.list_for("editor") == [("documents", "update")]
    with pytest.raises(Conflict):
        policies.create_permission(editor.id, docs.id, update.id)


def test_deleting_a_role_cascades_to_permissions(db):
    roles = SqlRoleStore(db)
    policies = SqlPolicyStore(db)
    editor = roles.create_role(name="editor", display_name="Editor")
    docs = policies.create_resource("module", "documents")
    update, _ = policies.ensure_action("update")
    policies.create_permission(editor.id, docs.id, update.id)
    db.commit()

    roles.delete_role(editor.id)
    db.commit()
    assert policies.list_all() == []


def test_deleting_a_tenant_drops_its_roles_and_orphans_its_users(db):
    tenants = SqlTenantStore(db)
    roles = SqlRoleStore(db)
    t1 = tenants.create(name="t1", display_name="T1")
    alice = _user(SqlIdentityStore(db), tenant_id=t1.id)
    member = roles.create_role(name="member", display_name="Member", tenant_id=t1.id)
    global_user = roles.create_role(name="user", display_name="User")
    roles.assign(alice.id, member, t1.id)
    roles.assign(alice.id, global_user, None)
    db.commit()
    t1_id, alice_id, global_user_id = t1.id, alice.id, global_user.id

    tenants.delete(t1_id)
    db.commit()

    assert db.execute(select(Role.id).where(Role.tenant_id == t1_id)).all() == []
    assert db.execute(select(UserRole.tenant_id).where(UserRole.tenant_id == t1_id)).all() == []
    assert db.execute(select(UserRole.role_id).where(UserRole.user_id == alice_id)).scalars().all() == [
        global_user_id
    ]
    assert db.execute(select(User.tenant_id).where(User.id == alice_id)).scalar_one() is None


def test_tenant_user_counts_group_by_home_tenant(db):
    tenants = SqlTenantStore(db)
    users = SqlIdentityStore(db)
    t1 = tenants.create(name="t1", display_name="T1")
    _user(users, "alice", tenant_id=t1.id)
    _user(users, "bob", tenant_id=t1.id)
    _user(users, "carol")

    assert tenants.user_counts() == {t1.id: 2, None: 1}


def test_update_role_keeps_scope_and_rejects_clashes(db):
    t1 = SqlTenantStore(db).create(name="t1", display_name="T1")
    roles = SqlRoleStore(db)
    editor = roles.create_role(name="editor", display_name="Editor", tenant_id=t1.id)
    roles.create_role(name="viewer", display_name="Viewer", tenant_id=t1.id)
    # same name in another scope is fine
    roles.create_role(name="writer", display_name="Writer")

    renamed = roles.update_role(editor.id, {"name": "writer", "description": None})
    assert (renamed.name, renamed.display_name, renamed.tenant_id) == ("writer", "Editor", t1.id)
    with pytest.raises(Conflict):
        roles.update_role(editor.id, {"name": "viewer"})


def test_tenant_scoped_permission_is_listed_by_role_name(db):
    t1 = SqlTenantStore(db).create(name="t1", display_name="T1")
    policies = SqlPolicyStore(db)
    admin = SqlRoleStore(db).create_role(name="admin", display_name="Admin", tenant_id=t1.id)
    reports = policies.create_resource("module", "reports")
    export, _ = policies.ensure_action("export")
    policies.create_permission(admin.id, reports.id, export.id, t1.id)

    assert policies.list_all() == [("admin", "reports", "export")]
