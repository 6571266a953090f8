"""Session factory shared by the kv store and the health_connect metric reader."""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from haygate.config import settings


def asyncpg_url(url: str) -> str:
    """Point plain postgres URLs (as hosting providers hand them out) at the asyncpg driver."""
    for prefix in ("postgres://", "postgresql://"):
        if url.startswith(prefix):
            return "postgresql+asyncpg://" + url[len(prefix):]
    return url


db_engine = create_async_engine(asyncpg_url(settings.database_url), pool_pre_ping=True)
async_session = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
