"""Run the bundled Alembic migrations against a checkpoint database."""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"


def migration_config(db_path: Path) -> Config:
    """Alembic config bound to the packaged migrations and one SQLite file."""

    config = Config()
    config.set_main_option("script_location", str(MIGRATIONS_DIR))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def upgrade_head(db_path: Path) -> None:
    """Apply migrations up to head for the given SQLite database."""

    command.upgrade(migration_config(db_path), "head")
