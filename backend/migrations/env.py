"""
Alembic environment for the delivery schema.

Migrations run through an async engine in online mode and as plain SQL in
offline mode. The database URL comes from APP_DATABASE_URL through the
application settings, overriding whatever alembic.ini carries.
"""

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

from delivery_service.core.config import get_settings
from delivery_service.core.logging import get_logger
from delivery_service.database.base import Base
from delivery_service.database.connection import _convert_database_url_to_async

# Register every delivery model on Base.metadata
import delivery_service.database.models  # noqa: F401

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

settings = get_settings()
logger = get_logger(__name__)

target_metadata = Base.metadata

if settings.database_url:
    config.set_main_option(
        "sqlalchemy.url", _convert_database_url_to_async(settings.database_url)
    )
    logger.info(
        "Migration database configured from settings",
        driver=settings.database_url.split("://")[0],
    )


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def run_migrations_offline() -> None:
    """
    Emit the migration SQL without connecting to a database.
    """
    url = config.get_main_option("sqlalchemy.url")
    if not url:
        logger.error("No database URL configured for offline migrations")
        raise ValueError("Database URL is required for migrations")

    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
        render_as_batch=_is_sqlite(url),
    )

    with context.begin_transaction():
        context.run_migrations()
    logger.info("Offline migrations rendered")


def do_run_migrations(connection: Connection) -> None:
    """
    Apply pending revisions on an open connection.

    Args:
        connection: Synchronous connection handed over by ``run_sync``
    """
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        compare_type=True,
        render_as_batch=connection.dialect.name == "sqlite",
        transaction_per_migration=True,
    )

    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    """Create a throwaway async engine and run the revisions through it."""
    configuration = config.get_section(config.config_ini_section, {})
    if not configuration:
        raise ValueError("Alembic configuration is missing")

    connectable = async_engine_from_config(
        configuration,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    try:
        async with connectable.connect() as connection:
            await connection.run_sync(do_run_migrations)
    except Exception as e:
        logger.error(
            "Migration failed",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise
    finally:
        await connectable.dispose()

    logger.info("Migrations applied", dialect=connectable.dialect.name)


def run_migrations_online() -> None:
    asyncio.run(run_async_migrations())


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
