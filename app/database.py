"""Async SQLAlchemy engine & session — supports SQLite and PostgreSQL."""

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from app.config import get_settings

settings = get_settings()

# SQLite needs connect_args for async; PostgreSQL uses pool_size
if settings.is_sqlite:
    engine = create_async_engine(
        settings.database_url,
        echo=settings.debug,
        connect_args={"check_same_thread": False},
    )
else:
    engine = create_async_engine(
        settings.database_url,
        echo=settings.debug,
        pool_size=10,
    )

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@event.listens_for(Base, "init", propagate=True)
def _apply_defaults(target, args, kwargs):
    """Fill scalar Column defaults on construction so unsaved rows read sensibly."""
    from sqlalchemy import inspect as sa_inspect

    for col_attr in sa_inspect(type(target)).column_attrs:
        if col_attr.key in kwargs or getattr(target, col_attr.key, None) is not None:
            continue
        default = col_attr.columns[0].default
        if default is None or not default.is_scalar:
            continue
        setattr(target, col_attr.key, default.arg)


async def get_db():
    async with async_session() as session:
        yield session
