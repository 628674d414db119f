"""Database engine and session factory."""

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from stocksync.config import settings

engine = create_async_engine(
    settings.database_url,
    echo=False,
    pool_pre_ping=True,
)

AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def dialect_insert(session: AsyncSession, model):
    """
    Build an INSERT that supports ON CONFLICT for the session's dialect.

    Args:
        session: Session bound to PostgreSQL or SQLite
        model: Mapped class to insert into

    Returns:
        Dialect-specific Insert construct
    """
    if session.get_bind().dialect.name == "sqlite":
        return sqlite.insert(model)
    return postgresql.insert(model)
