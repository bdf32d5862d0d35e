"""Programmatic Alembic entry points for the pipeline database."""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy.engine import Engine

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[3]


def migration_config(db_path: Path | None = None) -> Config:
    config = Config(str(PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    if db_path is not None:
        config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def head_revision() -> str:
    """Newest revision shipped with the package."""

    script = ScriptDirectory.from_config(migration_config())
    return script.get_current_head() or ""


def current_revision(engine: Engine) -> str | None:
    with engine.connect() as connection:
        return MigrationContext.configure(connection).get_current_revision()


def upgrade_head(db_path: Path) -> None:
    """Apply pending migrations to the SQLite database at ``db_path``."""

    command.upgrade(migration_config(db_path), "head")
    logger.debug("Schema at %s upgraded to %s", db_path, head_revision())
