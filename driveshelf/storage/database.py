from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from contextlib import contextmanager
from typing import Generator

from driveshelf.config.settings import settings

engine = create_engine(
    settings.database_url,
    connect_args={"check_same_thread": False},  # SQLite specific
    echo=False,
)

# Records are handed out detached, so their loaded state must survive commit.
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

Base = declarative_base()


def init_db(bind=None):
    """Create all tables. Call once on startup."""
    import driveshelf.models.files  # noqa: F401  register models
    Base.metadata.create_all(bind=bind or engine)


@contextmanager
def get_db(session_factory=None) -> Generator[Session, None, None]:
    db = (session_factory or SessionLocal)()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
