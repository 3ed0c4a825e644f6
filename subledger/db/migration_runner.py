"""
Migration Runner - Runs Alembic migrations at application startup.

The ledger tables must exist before the first webhook is accepted, so the
application lifespan applies pending migrations before serving.
"""

from dataclasses import dataclass
from pathlib import Path

from sqlalchemy import Engine, create_engine
from sqlalchemy.exc import SQLAlchemyError
from structlog import get_logger

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from subledger.config import settings

logger = get_logger(__name__)

# Path to alembic.ini relative to project root
ALEMBIC_INI_PATH = Path(__file__).parent.parent.parent / "alembic.ini"


@dataclass(frozen=True)
class MigrationStatus:
    """Current and head schema revisions."""

    current_revision: str | None
    head_revision: str | None
    error: str | None = None

    @property
    def pending(self) -> bool:
        return self.error is None and self.current_revision != self.head_revision


def sync_database_url(url: str) -> str:
    """Alembic's command API is synchronous: swap asyncpg for psycopg2."""
    return url.replace("+asyncpg", "+psycopg2")


def _alembic_config() -> tuple[Config, str]:
    alembic_cfg = Config(str(ALEMBIC_INI_PATH))
    sync_url = sync_database_url(settings.database_url)
    alembic_cfg.set_main_option("sqlalchemy.url", sync_url.replace("%", "%%"))
    return alembic_cfg, sync_url


def _get_current_revision(engine: Engine) -> str | None:
    with engine.connect() as conn:
        context = MigrationContext.configure(conn)
        return context.get_current_revision()


def _get_head_revision(alembic_cfg: Config) -> str | None:
    return ScriptDirectory.from_config(alembic_cfg).get_current_head()


def run_migrations() -> None:
    """
    Run pending Alembic migrations.

    Raises:
        RuntimeError: A migration failed; the application must not start
    """
    if not ALEMBIC_INI_PATH.exists():
        logger.warning("alembic_config_missing", path=str(ALEMBIC_INI_PATH))
        return

    alembic_cfg, sync_url = _alembic_config()
    try:
        engine = create_engine(sync_url)
        try:
            current = _get_current_revision(engine)
            head = _get_head_revision(alembic_cfg)

            if current == head:
                logger.info("database_schema_up_to_date", revision=current)
                return

            logger.info("running_migrations", from_revision=current, to_revision=head)
            command.upgrade(alembic_cfg, "head")

            logger.info("migrations_complete", revision=_get_current_revision(engine))
        finally:
            engine.dispose()

    except SQLAlchemyError as e:
        logger.error("migration_failed", error=str(e))
        raise RuntimeError(f"Database migration failed: {e}") from e


def check_migrations_status() -> MigrationStatus:
    """Check migration status without applying them."""
    if not ALEMBIC_INI_PATH.exists():
        return MigrationStatus(None, None, error="Alembic config not found")

    alembic_cfg, sync_url = _alembic_config()
    try:
        engine = create_engine(sync_url)
        try:
            return MigrationStatus(
                current_revision=_get_current_revision(engine),
                head_revision=_get_head_revision(alembic_cfg),
            )
        finally:
            engine.dispose()
    except SQLAlchemyError as e:
        return MigrationStatus(None, None, error=str(e))
