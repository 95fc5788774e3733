import os

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from .config import settings
from .errors import DatabaseUnreachable, FatalConfigError
from .logger import get_logger

_use_null_pool = bool(os.getenv("PYTEST_CURRENT_TEST")) or (settings.app_env or "").strip().lower() in {"test", "pytest"}
engine = create_async_engine(
    settings.database_url,
    echo=False,
    pool_pre_ping=True,
    poolclass=NullPool if _use_null_pool else None,
)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
log = get_logger("db")

REQUIRED_SCHEMAS = ("oracle", "core")


async def _missing_schemas(conn) -> list[str]:
    res = await conn.execute(
        text(
            """
            SELECT schema_name
            FROM information_schema.schemata
            WHERE schema_name = ANY(:names)
            """
        ),
        {"names": list(REQUIRED_SCHEMAS)},
    )
    present = {row[0] for row in res.fetchall()}
    return [name for name in REQUIRED_SCHEMAS if name not in present]


async def _has_alembic_version(conn) -> bool:
    res = await conn.execute(
        text(
            """
            SELECT 1
            FROM information_schema.tables
            WHERE table_schema='public'
              AND table_type='BASE TABLE'
              AND table_name='alembic_version'
            LIMIT 1
            """
        )
    )
    return res.first() is not None


async def init_db():
    """Refuse to start against an unmigrated database (warn only in dev)."""
    try:
        async with engine.begin() as conn:
            missing = await _missing_schemas(conn)
            if missing:
                msg = f"db schema not initialized (missing {', '.join(missing)}); run `alembic upgrade head`"
                if settings.is_dev:
                    log.warning(msg)
                    return
                raise FatalConfigError(msg)

            if not await _has_alembic_version(conn):
                msg = (
                    "db has schemas but alembic is not initialized; run `alembic stamp head` "
                    "(if schema already matches) or `alembic upgrade head`"
                )
                if settings.is_dev:
                    log.warning(msg)
                    return
                raise FatalConfigError(msg)
    except (OperationalError, DBAPIError, OSError) as e:
        raise DatabaseUnreachable(f"database unreachable: {type(e).__name__}: {e}") from e


async def get_session():
    async with SessionLocal() as session:
        yield session
