import os

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from modelgate.config import settings

data_dir = os.environ.get("DATA_DIR", settings.data_dir)
db_path = os.path.join(data_dir, "modelgate.db")
os.makedirs(data_dir, exist_ok=True)

DATABASE_URL = settings.database_url or f"sqlite+aiosqlite:///{db_path}"

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


async def init_db():
    # Import for side effect: registers tables on Base.metadata
    import modelgate.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
