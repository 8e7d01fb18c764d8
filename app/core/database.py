from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase
from app.core.config import settings

engine = create_async_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)

# Sessions keep their objects usable after commit, stores hand out plain schemas anyway
AsyncSessionLocal = async_sessionmaker(
    bind=engine, class_=AsyncSession, expire_on_commit=False
)


# Request-scoped session for the health surface
async def get_db():
    async with AsyncSessionLocal() as session:
        yield session


# Templates, rules, knowledge and generation logs all hang off this Base
class Base(DeclarativeBase):
    pass
