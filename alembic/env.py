"""Alembic environment configuration."""

import logging
import os
import sys
from logging.config import fileConfig

from sqlalchemy import engine_from_config, pool

from alembic import context

# Set up detailed logging for migrations
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("alembic.env")

# Add parent directory to path to import brdsync modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.realpath(__file__))))

# Import your models and database configuration
from brdsync.core.config import get_settings  # noqa: E402
from brdsync.core.database import Base  # noqa: E402

# Import all models to ensure they are registered
from brdsync.models import (  # noqa: E402, F401
    Brd,
    Connection,
    FieldMappingRule,
    OAuthState,
    SyncConflict,
    SyncHistoryEntry,
    SyncJob,
    SyncMapping,
    WebhookRegistration,
)

# Alembic Config object for the .ini file in use
config = context.config

settings = get_settings()

# The caller's URL wins, then the configured one, then alembic.ini
config.set_main_option(
    "sqlalchemy.url", config.attributes.get("database_url") or settings.database.url
)

# Keep the application loggers when running inside the service
if config.config_file_name is not None:
    fileConfig(config.config_file_name, disable_existing_loggers=False)

# Metadata for autogenerate support
target_metadata = Base.metadata


def run_migrations_offline() -> None:
    """Run migrations in offline mode, emitting SQL without a DBAPI."""
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations against a live connection."""
    logger.info("Running migrations in online mode")
    logger.info(f"Database URL: {config.get_main_option('sqlalchemy.url')}")

    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        logger.info("Connected to database")
        context.configure(connection=connection, target_metadata=target_metadata)

        with context.begin_transaction():
            logger.info("Starting migration transaction")
            try:
                context.run_migrations()
                logger.info("Migration transaction completed successfully")
            except Exception as e:
                logger.error(f"Migration failed during execution: {e}")
                logger.error(f"Error type: {type(e).__name__}")
                if hasattr(e, "orig"):
                    logger.error(f"Original error: {e.orig}")
                raise


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
