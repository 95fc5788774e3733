import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.ext.asyncio import async_engine_from_config

from bitredict.core.config import settings

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name, disable_existing_loggers=False)

# `alembic -x db_url=... upgrade head` migrates another database than DATABASE_URL.
db_url = context.get_x_argument(as_dictionary=True).get("db_url") or settings.database_url
# configparser interpolates '%', which URL-encoded passwords contain.
config.set_main_option("sqlalchemy.url", db_url.replace("%", "%%"))

# Revisions are raw SQL over the oracle/core schemas; there is no ORM metadata.
MIGRATION_OPTIONS = {
    "target_metadata": None,
    "include_schemas": True,
    "transaction_per_migration": True,
}


def run_migrations_offline():
    context.configure(url=db_url, literal_binds=True, **MIGRATION_OPTIONS)
    with context.begin_transaction():
        context.run_migrations()


def _run_migrations(connection):
    context.configure(connection=connection, **MIGRATION_OPTIONS)
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online():
    engine = async_engine_from_config(
        config.get_section(config.config_ini_section),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_run_migrations)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
