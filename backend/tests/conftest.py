import os

# Settings are read at import time, so the environment must be ready first.
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ.setdefault("JWT_SECRET", "test-secret-for-authcore-tests-only")
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["DISABLE_AUTHORIZATION"] = "false"
for _name in ("BOOTSTRAP_ADMIN_USERNAME", "BOOTSTRAP_ADMIN_PASSWORD", "IDP_ENDPOINT", "IDP_JWT_KEY"):
    os.environ.pop(_name, None)

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

import authcore.db.models  # noqa: F401, E402
from authcore.db.base import Base  # noqa: E402
from authcore.db.session import SessionLocal, engine  # noqa: E402
from authcore.governance.store import SqlPolicyStore  # noqa: E402
from authcore.system.bootstrap import BootstrapLoader  # noqa: E402
from authcore.system.runtime import build_runtime, set_runtime  # noqa: E402


@pytest.fixture(autouse=True)
def fresh_schema():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def runtime():
    rt = build_runtime()
    set_runtime(rt)
    yield rt
    set_runtime(None)


@pytest.fixture
def seeded(db, runtime):
    """Default tenant, roles, resources and the default policy set."""
    report = BootstrapLoader(db, runtime.settings, runtime.hasher).run()
    runtime.policy_engine.reload(SqlPolicyStore(db))
    return report


@pytest.fixture
def client(runtime):
    from authcore.main import app

    # the context manager runs the startup hook (schema, bootstrap, policy load)
    with TestClient(app) as c:
        yield c
