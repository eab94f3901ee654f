"""Async SQLAlchemy engine and session factory.

Usage in routes:
    from gleaming.database import get_db

    @router.get("/items")
    async def list_items(db: AsyncSession = Depends(get_db)):
        result = await db.execute(select(Item))
        return result.scalars().all()
"""
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from gleaming.config import settings

_pool_options = {} if settings.DATABASE_URL.startswith("sqlite") else {
    "pool_size": 10,
    "max_overflow": 20,
    "pool_pre_ping": True,
}

engine = create_async_engine(settings.DATABASE_URL, echo=False, **_pool_options)

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db():
    """FastAPI dependency that yields an async DB session."""
    async with async_session() as session:
        try:
            yield session
        finally:
            await session.close()
