"""
Schema upgrades for the sync database.

Alembic revisions under ``alembic/versions`` run at startup. The initial
revision also seeds the default field mapping rules; a rule table that is
still empty after upgrading means no field would ever sync, so that is
reported loudly.
"""

import asyncio
import logging
from pathlib import Path
from typing import List, Optional

from sqlalchemy import create_engine, func, inspect, select, table
from sqlalchemy.engine import Engine

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from brdsync.core.config import get_settings

logger = logging.getLogger(__name__)

ALEMBIC_INI = Path(__file__).resolve().parents[2] / "alembic.ini"

RULES_TABLE = "field_mapping_rules"

# Async drivers the service runs on, and the sync URL Alembic needs instead
_ASYNC_DRIVERS = {
    "sqlite+aiosqlite://": "sqlite://",
    "postgresql+asyncpg://": "postgresql://",
    "postgres://": "postgresql://",
}


def to_sync_url(url: str) -> str:
    for prefix, replacement in _ASYNC_DRIVERS.items():
        if url.startswith(prefix):
            return replacement + url[len(prefix):]
    return url


def alembic_config(database_url: str, ini_path: Optional[Path] = None) -> Config:
    """Alembic config pointing at the bundled revisions and ``database_url``."""
    ini_path = ini_path or ALEMBIC_INI
    if not ini_path.exists():
        raise FileNotFoundError(f"alembic.ini not found at {ini_path}")
    script_dir = ini_path.parent / "alembic"
    if not script_dir.exists():
        raise FileNotFoundError(f"Alembic directory not found at {script_dir}")

    cfg = Config(str(ini_path))
    cfg.set_main_option("script_location", str(script_dir))
    cfg.set_main_option("sqlalchemy.url", to_sync_url(database_url))
    # env.py reads this before falling back to the settings URL
    cfg.attributes["database_url"] = to_sync_url(database_url)
    return cfg


def pending_revisions(engine: Engine, cfg: Config) -> List[str]:
    """Revisions between the database and head, oldest first."""
    script = ScriptDirectory.from_config(cfg)
    with engine.connect() as connection:
        current = MigrationContext.configure(connection).get_current_revision()
    head = script.get_current_head()
    if current == head:
        return []
    revisions = script.iterate_revisions(head, current, implicit_base=True)
    return [rev.revision for rev in reversed(list(revisions))]


def count_mapping_rules(engine: Engine) -> Optional[int]:
    """Rows in the rule table, or None when the table does not exist yet."""
    if not inspect(engine).has_table(RULES_TABLE):
        return None
    with engine.connect() as connection:
        return connection.execute(
            select(func.count()).select_from(table(RULES_TABLE))
        ).scalar_one()


def run_migrations(database_url: Optional[str] = None) -> List[str]:
    """
    Upgrade the database to head.

    Returns:
        The revisions that were applied, oldest first
    """
    database_url = database_url or get_settings().database.url
    cfg = alembic_config(database_url)
    engine = create_engine(to_sync_url(database_url))
    try:
        pending = pending_revisions(engine, cfg)
        if not pending:
            logger.info("Sync schema is up to date")
        else:
            logger.info(f"Applying {len(pending)} migration(s): {', '.join(pending)}")
            try:
                command.upgrade(cfg, "head")
            except Exception as e:
                orig = getattr(e, "orig", None)
                logger.error(f"Migration failed: {e}" + (f" ({orig})" if orig else ""))
                raise
            logger.info("Sync schema upgraded")

        rules = count_mapping_rules(engine)
        if rules == 0:
            logger.warning(
                f"No field mapping rules in {RULES_TABLE}; syncs will not map any field"
            )
        return pending
    finally:
        engine.dispose()


async def run_migrations_async() -> List[str]:
    """Run migrations in a worker thread so the event loop stays responsive."""
    return await asyncio.to_thread(run_migrations)
