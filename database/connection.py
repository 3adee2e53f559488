"""Engine and session factory for the fulfillment database."""
from contextlib import asynccontextmanager
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from config import DATABASE_URL

engine = create_async_engine(DATABASE_URL, echo=False, pool_pre_ping=True)
OrderSession = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

@asynccontextmanager
async def get_db():
    """One session per lifecycle operation; uncommitted work is rolled back on exit."""
    async with OrderSession() as session:
        yield session

async def init_db():
    """Create the order, payment, timeline, outbox and review tables."""
    from .models import Base
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

async def drop_db():
    from .models import Base
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

async def close_db():
    """Release pooled connections. The engine reconnects on next use."""
    await engine.dispose()
