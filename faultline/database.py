"""
Database configuration and session management.
"""
import os
from pathlib import Path
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from faultline.config import settings

# Database URL
DATABASE_URL = settings.DATABASE_URL


def _ensure_sqlite_dir(url: str) -> None:
    """Create the parent directory of a file-backed SQLite database."""
    if not url.startswith("sqlite+aiosqlite:///"):
        return
    db_path = url.replace("sqlite+aiosqlite:///", "")
    if not db_path or db_path == ":memory:":
        return
    # Handle relative paths (./data/faultline.db -> data/faultline.db)
    if db_path.startswith("./"):
        db_path = db_path[2:]
    if not db_path.startswith("/"):
        db_path = os.path.abspath(db_path)

    db_dir = os.path.dirname(db_path)
    if db_dir and not os.path.exists(db_dir):
        Path(db_dir).mkdir(parents=True, exist_ok=True)


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


_ensure_sqlite_dir(DATABASE_URL)

# Create async engine
engine = create_async_engine(
    DATABASE_URL,
    echo=False,
    future=True,
)

# Create async session factory
AsyncSessionLocal = make_session_factory(engine)

# Base class for models
Base = declarative_base()


async def init_db(target: AsyncEngine = None):
    """
    Initialize database - create tables if they don't exist.
    """
    # Models register themselves on Base.metadata at import time
    import faultline.models  # noqa: F401

    async with (target or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
