from typing import Callable

from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession
from sqlalchemy.orm import sessionmaker, declarative_base

from ..config.settings import Settings

Base = declarative_base()

SessionFactory = Callable[[], AsyncSession]


def create_engine_from_settings(settings: Settings, database_url: str = None) -> AsyncEngine:
    url = database_url or settings.DATABASE_URL
    engine_kwargs = {"echo": settings.DB_ECHO}
    if not url.startswith("sqlite"):
        engine_kwargs.update(pool_size=settings.DB_POOL_SIZE, max_overflow=settings.DB_MAX_OVERFLOW)
    return create_async_engine(url, **engine_kwargs)


def create_session_factory(engine: AsyncEngine) -> SessionFactory:
    return sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )

