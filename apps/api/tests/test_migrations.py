"""
The Alembic migration must produce the same tables as the models.
"""
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect

from core.database import Base


def test_upgrade_head_creates_model_tables(tmp_path):
    api_root = Path(__file__).resolve().parents[1]
    cfg = Config(str(api_root / "alembic.ini"))
    # Alembic's script_location in alembic.ini is relative ("alembic")
    cfg.set_main_option("script_location", str(api_root / "alembic"))
    url = f"sqlite:///{tmp_path / 'migrated.db'}"
    cfg.set_main_option("sqlalchemy.url", url)

    command.upgrade(cfg, "head")

    inspector = inspect(create_engine(url))
    tables = set(inspector.get_table_names())
    assert set(Base.metadata.tables) <= tables
    for name, table in Base.metadata.tables.items():
        migrated = {c["name"] for c in inspector.get_columns(name)}
        assert {c.name for c in table.columns} == migrated, name

    command.downgrade(cfg, "base")
    assert set(inspect(create_engine(url)).get_table_names()) <= {"alembic_version"}
