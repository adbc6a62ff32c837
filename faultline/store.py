"""
Storage boundary for raw events, issues, alerts and rollups.

SqlStore runs statements through an async SQLAlchemy session factory and
turns driver failures into StoreUnavailable so callers can degrade instead of
crashing. NullStore implements the same interface without a backend: reads
come back empty and writes are dropped.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from faultline.errors import StoreUnavailable

logger = logging.getLogger(__name__)


class SqlStore:
    """Store backed by an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    def _unavailable(self, operation: str, error: Exception) -> StoreUnavailable:
        logger.warning(f"Store {operation} failed: {str(error)}")
        return StoreUnavailable(f"{operation} failed: {error}")

    async def insert(self, model: Any, rows: List[Dict[str, Any]]) -> int:
        """Bulk insert plain row dicts into the model's table."""
        if not rows:
            return 0
        try:
            async with self.session_factory() as session:
                session.add_all([model(**row) for row in rows])
                await session.commit()
            return len(rows)
        except (SQLAlchemyError, OSError) as e:
            raise self._unavailable(f"insert into {model.__tablename__}", e) from e

    async def add(self, obj: Any) -> Any:
        try:
            async with self.session_factory() as session:
                session.add(obj)
                await session.commit()
                await session.refresh(obj)
            return obj
        except (SQLAlchemyError, OSError) as e:
            raise self._unavailable(f"add {type(obj).__name__}", e) from e

    async def save(self, obj: Any) -> Any:
        """
        Full-row replace keyed by primary key: the last write for a key wins.
        """
        try:
            async with self.session_factory() as session:
                merged = await session.merge(obj)
                await session.commit()
                await session.refresh(merged)
            return merged
        except (SQLAlchemyError, OSError) as e:
            raise self._unavailable(f"save {type(obj).__name__}", e) from e

    async def first(self, stmt) -> Optional[Any]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                return result.scalars().first()
        except (SQLAlchemyError, OSError) as e:
            raise self._unavailable("query", e) from e

    async def all(self, stmt) -> List[Any]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                return list(result.scalars().all())
        except (SQLAlchemyError, OSError) as e:
            raise self._unavailable("query", e) from e

    async def rows(self, stmt) -> List[Any]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                return list(result.all())
        except (SQLAlchemyError, OSError) as e:
            raise self._unavailable("query", e) from e

    async def scalar(self, stmt) -> Any:
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                return result.scalar()
        except (SQLAlchemyError, OSError) as e:
            raise self._unavailable("query", e) from e

    async def execute(self, *stmts) -> int:
        """Run update/delete statements in one transaction; returns affected rows."""
        affected = 0
        try:
            async with self.session_factory() as session:
                for stmt in stmts:
                    result = await session.execute(stmt)
                    affected += result.rowcount or 0
                await session.commit()
            return affected
        except (SQLAlchemyError, OSError) as e:
            raise self._unavailable("execute", e) from e

    async def replace(self, model: Any, match: Dict[str, Any], values: Dict[str, Any]) -> None:
        """
        Replace every row matching `match` with a single row built from `values`,
        atomically. Used for rollups that must never accumulate.
        """
        conditions = [getattr(model, key) == value for key, value in match.items()]
        try:
            async with self.session_factory() as session:
                await session.execute(delete(model).where(*conditions))
                session.add(model(**{**values, **match}))
                await session.commit()
        except (SQLAlchemyError, OSError) as e:
            raise self._unavailable(f"replace in {model.__tablename__}", e) from e


class NullStore:
    """Store used when no backend is configured: empty reads, dropped writes."""

    async def insert(self, model: Any, rows: List[Dict[str, Any]]) -> int:
        return 0

    async def add(self, obj: Any) -> Any:
        return obj

    async def save(self, obj: Any) -> Any:
        return obj

    async def first(self, stmt) -> Optional[Any]:
        return None

    async def all(self, stmt) -> List[Any]:
        return []

    async def rows(self, stmt) -> List[Any]:
        return []

    async def scalar(self, stmt) -> Any:
        return None

    async def execute(self, *stmts) -> int:
        return 0

    async def replace(self, model: Any, match: Dict[str, Any], values: Dict[str, Any]) -> None:
        return None
