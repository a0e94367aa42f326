from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from fibertrace.config import settings


class Base(DeclarativeBase):
    """Server-of-record tables."""


class LocalBase(DeclarativeBase):
    """On-device tables; kept apart so the server never creates them."""


_engine = None


def get_engine():
    global _engine
    if _engine is None:
        _engine = create_engine(settings.database_url, pool_pre_ping=True)
    return _engine


SessionLocal = sessionmaker(bind=get_engine(), autoflush=False, autocommit=False)


def local_session_factory(url: str) -> sessionmaker:
    """Session factory for one device store; creates its tables on first use."""
    engine = create_engine(url)
    LocalBase.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


def get_db():
    """Centralized database session dependency for FastAPI.

    Yields a database session and ensures it is closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
