from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel, Session
from src.core.config import settings

# Import ALL models to ensure they're registered with SQLModel.metadata
from src.modules.framing.models import Batch, Image, StepCheckpoint  # noqa: F401

# Create async engine
engine = create_async_engine(settings.DATABASE_URL, echo=False, future=True)

# Create async session factory
async_session_maker = sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


async def create_db_and_tables():
    """Create all tables if they don't exist.

    Uses checkfirst=True to avoid errors when tables already exist.
    """
    async with engine.begin() as conn:
        await conn.run_sync(lambda sync_conn: SQLModel.metadata.create_all(sync_conn, checkfirst=True))


async def get_session() -> AsyncSession:
    async with async_session_maker() as session:
        yield session


# =============================================================================
# Sync access for Celery workers
# =============================================================================

def get_sync_url(database_url: str = None) -> str:
    """Strip the async driver from the configured URL."""
    url = database_url or settings.DATABASE_URL
    return url.replace("+aiosqlite", "").replace("+asyncpg", "+psycopg2")


@lru_cache(maxsize=None)
def get_sync_engine(database_url: str = None):
    sync_url = get_sync_url(database_url)
    connect_args = {"check_same_thread": False} if sync_url.startswith("sqlite") else {}
    sync_engine = create_engine(sync_url, connect_args=connect_args)
    SQLModel.metadata.create_all(sync_engine, checkfirst=True)
    return sync_engine


def get_sync_session() -> Session:
    """New sync session for worker code. Caller closes it."""
    return Session(get_sync_engine(), expire_on_commit=False)
