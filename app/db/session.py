import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.db.models import Base

DEFAULT_DB_PATH = "./data/coach_jobs.db"
DB_PATH = os.getenv("DB_PATH", DEFAULT_DB_PATH)


def resolve_db_path(override: Optional[str] = None) -> Path:
    return Path(override or os.getenv("DB_PATH") or DEFAULT_DB_PATH).expanduser().resolve()


def _sqlite_engine(db_path: str) -> Engine:
    path = Path(db_path).expanduser().resolve()
    path.parent.mkdir(parents=True, exist_ok=True)
    # Jobs and request handlers share one file from different threads.
    return create_engine(f"sqlite:///{path}", connect_args={"check_same_thread": False})


engine = _sqlite_engine(DB_PATH)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def configure_database(db_path: str) -> None:
    """Point the module engine and session factory at another SQLite file."""
    global DB_PATH, engine
    DB_PATH = db_path
    engine = _sqlite_engine(db_path)
    SessionLocal.configure(bind=engine)


def create_tables() -> None:
    Base.metadata.create_all(bind=engine)


@contextmanager
def session_scope() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_db() -> Iterator[Session]:
    with session_scope() as db:
        yield db
