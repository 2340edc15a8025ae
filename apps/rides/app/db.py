from collections.abc import Iterator

from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, sessionmaker

from .models import Base
from .settings import DB_URL

engine = create_engine(
    DB_URL,
    pool_pre_ping=True,
    connect_args={"check_same_thread": False} if DB_URL.startswith("sqlite") else {},
)
SessionLocal = sessionmaker(bind=engine)


def get_session() -> Iterator[Session]:
    with SessionLocal() as s:
        yield s


def get_session_factory() -> sessionmaker:
    """Background work (payouts, webhooks) opens its own sessions from this factory."""
    return SessionLocal


def init_db() -> None:
    Base.metadata.create_all(engine)


def ping_db() -> None:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
