"""
Database engine + session factory.

Always initializes — defaults to SQLite for local dev, Postgres in production.
get_session() always returns a real session.
"""
from datetime import datetime, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from skiptrace.config import DATABASE_URL


class Base(DeclarativeBase):
    pass


def make_engine(database_url):
    """Build an engine with the right kwargs for SQLite or Postgres."""
    # Railway injects postgres:// but SQLAlchemy 2.x requires postgresql://
    url = database_url.replace('postgres://', 'postgresql://', 1)

    # SQLite needs different engine kwargs than Postgres
    if url.startswith('sqlite'):
        return create_engine(url, connect_args={'check_same_thread': False})
    return create_engine(url, pool_pre_ping=True, pool_size=5, max_overflow=10)


def sqlite_url(path):
    """CLI helper: turn a --db file path into a SQLAlchemy URL."""
    if '://' in path:
        return path
    return f'sqlite:///{path}'


def import_models():
    """Import models so Base.metadata knows about every table."""
    import skiptrace.models.run  # noqa: F401
    import skiptrace.models.run_item  # noqa: F401
    import skiptrace.models.provider_call  # noqa: F401
    import skiptrace.models.cache_entry  # noqa: F401


def init_db(bind):
    """Create engine tables on a local database (CLI/dev only — prod uses Alembic)."""
    import_models()
    Base.metadata.create_all(bind)


engine = make_engine(DATABASE_URL)

SessionLocal = sessionmaker(bind=engine)


def get_session():
    """Return a new DB session."""
    return SessionLocal()


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
