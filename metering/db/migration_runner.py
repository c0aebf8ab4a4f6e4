"""
Migration Runner - Applies pending Alembic migrations at application startup.

Enabled with RUN_MIGRATIONS_ON_STARTUP=true.
"""

from dataclasses import dataclass
from pathlib import Path

import structlog
from sqlalchemy import Engine, create_engine

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from metering.config import settings

logger = structlog.get_logger(__name__)

ALEMBIC_INI_PATH = Path(__file__).parent.parent.parent / "alembic.ini"


@dataclass(frozen=True)
class MigrationStatus:
    """Current versus head schema revision."""

    current_revision: str | None
    head_revision: str | None

    @property
    def pending(self) -> bool:
        return self.current_revision != self.head_revision


def sync_database_url(url: str) -> str:
    """Alembic's command API is synchronous: swap asyncpg for psycopg2."""
    return url.replace("+asyncpg", "+psycopg2")


def _alembic_config() -> Config:
    alembic_cfg = Config(str(ALEMBIC_INI_PATH))
    alembic_cfg.set_main_option(
        "sqlalchemy.url", sync_database_url(settings.database_url).replace("%", "%%")
    )
    return alembic_cfg


def _current_revision(engine: Engine) -> str | None:
    with engine.connect() as conn:
        return MigrationContext.configure(conn).get_current_revision()


def _status(alembic_cfg: Config, engine: Engine) -> MigrationStatus:
    head = ScriptDirectory.from_config(alembic_cfg).get_current_head()
    return MigrationStatus(current_revision=_current_revision(engine), head_revision=head)


def run_migrations() -> None:
    """
    Run pending Alembic migrations.

    Raises:
        RuntimeError: If the upgrade fails
    """
    if not ALEMBIC_INI_PATH.exists():
        logger.warning("alembic_config_missing", path=str(ALEMBIC_INI_PATH))
        return

    alembic_cfg = _alembic_config()
    engine = create_engine(sync_database_url(settings.database_url))
    try:
        status = _status(alembic_cfg, engine)
        if not status.pending:
            logger.info("schema_up_to_date", revision=status.current_revision)
            return

        logger.info(
            "running_migrations",
            from_revision=status.current_revision,
            to_revision=status.head_revision,
        )
        command.upgrade(alembic_cfg, "head")
        logger.info("migrations_complete", revision=_current_revision(engine))
    except Exception as e:
        logger.error("migration_failed", error=str(e))
        raise RuntimeError(f"Database migration failed: {e}") from e
    finally:
        engine.dispose()
