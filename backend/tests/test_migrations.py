from pathlib import Path

from alembic.config import Config
from alembic.script import ScriptDirectory

from authcore.db.base import Base

BACKEND_DIR = Path(__file__).resolve().parents[1]


def _script() -> ScriptDirectory:
    cfg = Config(str(BACKEND_DIR / "alembic.ini"))
    cfg.set_main_option("script_location", str(BACKEND_DIR / "alembic"))
    return ScriptDirectory.from_config(cfg)


def test_single_alembic_head():
    heads = list(_script().get_heads())
    assert len(heads) == 1, f"Alembic heads={len(heads)} -> {heads}"


def test_initial_migration_covers_every_model_table():
    source = "".join(
        path.read_text() for path in (BACKEND_DIR / "alembic" / "versions").glob("*.py")
    )
    for table in Base.metadata.tables:
        assert f'"{table}"' in source
