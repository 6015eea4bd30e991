from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from .models import Base

# Will be set by app initialization
engine = None
SessionLocal = None


def init_db(database_url: str):
    """Initialize database connection."""
    global engine, SessionLocal
    kwargs = {}
    if database_url.startswith('sqlite'):
        kwargs['connect_args'] = {'check_same_thread': False}
        if ':memory:' in database_url or database_url.rstrip('/') == 'sqlite:':
            kwargs['poolclass'] = StaticPool
    engine = create_engine(database_url, **kwargs)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)
    return SessionLocal


def get_session_factory():
    if SessionLocal is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return SessionLocal


def get_db():
    """Get database session."""
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()
