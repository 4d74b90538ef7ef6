# backend/tracking/core/db.py
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from tracking.core.config import settings

engine = create_async_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
AsyncSessionLocal = async_sessionmaker(bind=engine, class_=AsyncSession, autoflush=False, expire_on_commit=False)

# Dependency for a request-scoped session
async def get_db():
    async with AsyncSessionLocal() as session:
        yield session

# Dependency for code that outlives the request (background tasks open their own session)
def get_session_factory() -> async_sessionmaker:
    return AsyncSessionLocal
