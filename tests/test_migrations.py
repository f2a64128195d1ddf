from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect

from app.core.db import Base

ROOT = Path(__file__).resolve().parent.parent


def _alembic_config(url: str) -> Config:
    cfg = Config()
    cfg.set_main_option("script_location", str(ROOT / "alembic"))
    cfg.set_main_option("sqlalchemy.url", url)
    return cfg


def test_upgrade_matches_models_and_downgrade_cleans_up(tmp_path):
    path = tmp_path / "migrated.db"
    cfg = _alembic_config(f"sqlite+aiosqlite:///{path}")

    command.upgrade(cfg, "head")

    sync_engine = create_engine(f"sqlite:///{path}")
    try:
        inspector = inspect(sync_engine)
        tables = set(inspector.get_table_names()) - {"alembic_version"}
        assert tables == set(Base.metadata.tables)

        columns = {c["name"] for c in inspector.get_columns("lottery_closing_attempts")}
        assert "version" in columns
        indexes = {i["name"]: i for i in inspector.get_indexes("lottery_closing_attempts")}
        assert indexes["uq_lottery_attempt_prepared_day"]["unique"]
        uniques = {u["name"] for u in inspector.get_unique_constraints("lottery_business_days")}
        assert "uq_lottery_day_store_date" in uniques

        command.downgrade(cfg, "base")

        assert set(inspect(sync_engine).get_table_names()) <= {"alembic_version"}
    finally:
        sync_engine.dispose()
