"""Async database engine and session. PostgreSQL (or SQLite for local runs) via DATABASE_URL."""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from ticketdesk.config import get_settings

logger = logging.getLogger(__name__)


# SQLAlchemy 2.0 style
class Base(DeclarativeBase):
    pass


def _get_engine_url() -> str:
    return get_settings().database_url


_engine = create_async_engine(
    _get_engine_url(),
    echo=get_settings().debug,
    future=True,
)

async_session_factory = async_sessionmaker(
    _engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_db() -> None:
    """Create tables if they don't exist. Retries on connection errors."""
    # Register models on Base.metadata
    from ticketdesk.storage import models  # noqa: F401

    logger.info("Initializing database: %s", _engine.url.render_as_string(hide_password=True))
    last_error = None
    for attempt in range(1, 6):
        try:
            async with _engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            return
        except Exception as e:
            last_error = e
            err_name = type(e).__name__
            if "InvalidPassword" in err_name or "password authentication" in str(e).lower():
                logger.error(
                    "PostgreSQL authentication failed. Check the credentials in DATABASE_URL "
                    "match the ones used when the database was first created."
                )
                raise
            logger.warning("DB init attempt %s/5 failed: %s", attempt, err_name)
            if attempt < 5:
                await asyncio.sleep(2.0 * attempt)
    raise last_error


async def drop_db() -> None:
    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def close_db() -> None:
    await _engine.dispose()
