from sqlmodel import SQLModel
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker

from adventure95.core.config import settings
# Table modules must be imported so their metadata is registered before create_all
from adventure95.models import character, entity, game  # noqa: F401

# Create an async engine
async_engine = create_async_engine(settings.DATABASE_URL, echo=False, future=True)

async def init_db(engine=None):
    """
    Initializes the database and creates tables.
    """
    async with (engine or async_engine).begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

# Create a configured "Session" class
AsyncSessionLocal = sessionmaker(
    bind=async_engine, class_=AsyncSession, expire_on_commit=False
)

async def get_session() -> AsyncSession:
    """
    Dependency to get an async database session.
    """
    async with AsyncSessionLocal() as session:
        yield session
