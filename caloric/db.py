# caloric/db.py
"""
Async SQLAlchemy engine + the response cache.

ResponseCache exposes exactly four operations:
- find_cached_search(params)           -> StoredResponse | None
- find_cached_detail(food_id, version) -> StoredResponse | None
- insert_search(params, response)      -> new id
- insert_detail(search_id, key, ...)   -> None (no-op on duplicate)

Lookups return the most recent row by created_at, ties broken by id desc.
"""

from typing import Any, Optional

from sqlalchemy import insert, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from caloric import monitoring
from caloric.config import DEFAULT_DATABASE_URL
from caloric.schemas import DetailKey, SearchParams, StoredResponse, UpstreamResponse

Base = declarative_base()


def make_engine(url: str = DEFAULT_DATABASE_URL) -> AsyncEngine:
    # SQLite connections are bound to the loop that opened them; don't pool them.
    if url.startswith("sqlite"):
        return create_async_engine(url, poolclass=NullPool)
    return create_async_engine(url, pool_pre_ping=True)


async def init_db(engine: AsyncEngine):
    """Create tables if they don't exist."""
    import caloric.models  # noqa: F401  (registers tables on Base)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def _insert_ignoring_duplicates(dialect_name: str, table):
    if dialect_name == "postgresql":
        return postgresql.insert(table).on_conflict_do_nothing()
    if dialect_name == "sqlite":
        return sqlite.insert(table).on_conflict_do_nothing()
    return None


class ResponseCache:
    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self._sessions = async_sessionmaker(engine, expire_on_commit=False)

    async def find_cached_search(self, params: SearchParams) -> Optional[StoredResponse]:
        from caloric.models import SearchResponseRecord as R

        stmt = (
            select(R.id, R.mfp_status, R.mfp_url, R.response_json, R.response_text)
            .where(
                R.query == params.query,
                R.offset == params.offset,
                R.max_items == params.max_items,
                R.country_code == params.country_code,
                R.resource_type == params.resource_type,
            )
            .order_by(R.created_at.desc(), R.id.desc())
            .limit(1)
        )
        async with self._sessions() as session:
            row = (await session.execute(stmt)).first()
        if row is None:
            return None
        return StoredResponse(id=row.id, status=row.mfp_status, url=row.mfp_url,
                              data=row.response_json, text=row.response_text)

    async def find_cached_detail(self, food_id: str, version: str) -> Optional[StoredResponse]:
        from caloric.models import FoodDetailResponseRecord as R

        stmt = (
            select(R.id, R.mfp_status, R.mfp_url, R.response_json, R.response_text)
            .where(R.food_id == food_id, R.version == version)
            .order_by(R.created_at.desc(), R.id.desc())
            .limit(1)
        )
        async with self._sessions() as session:
            row = (await session.execute(stmt)).first()
        if row is None:
            return None
        return StoredResponse(id=row.id, status=row.mfp_status, url=row.mfp_url,
                              data=row.response_json, text=row.response_text)

    async def insert_search(self, params: SearchParams, response: UpstreamResponse) -> int:
        from caloric.models import SearchResponseRecord

        record = SearchResponseRecord(
            query=params.query,
            offset=params.offset,
            max_items=params.max_items,
            country_code=params.country_code,
            resource_type=params.resource_type,
            mfp_url=response.url,
            mfp_status=response.status,
            response_json=response.data,
            response_text=response.text,
        )
        async with self._sessions() as session:
            session.add(record)
            await session.commit()
        return record.id

    async def insert_detail(self, search_response_id: int, key: DetailKey, *, url: str,
                            status: int, data: Any = None, text: Optional[str] = None) -> None:
        from caloric.models import FoodDetailResponseRecord

        values = {
            "search_response_id": search_response_id,
            "food_id": key.food_id,
            "version": key.version,
            "mfp_url": url,
            "mfp_status": status,
            "response_json": data,
            "response_text": text,
        }
        stmt = _insert_ignoring_duplicates(self.engine.dialect.name, FoodDetailResponseRecord.__table__)
        async with self._sessions() as session:
            if stmt is not None:
                await session.execute(stmt, [values])
                await session.commit()
                return
            try:
                await session.execute(insert(FoodDetailResponseRecord.__table__), [values])
                await session.commit()
            except IntegrityError:
                await session.rollback()
                monitoring.logger.debug(
                    "Detail already attached to search",
                    extra={"search_response_id": search_response_id, "food_id": key.food_id},
                )
