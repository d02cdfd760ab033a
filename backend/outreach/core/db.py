from sqlalchemy.pool import StaticPool
from sqlmodel import Session, create_engine, SQLModel

from outreach import models  # noqa: F401  (registers table metadata)
from outreach.core.config import settings


def _build_engine(url: str):
    # In-memory SQLite must share one connection across sessions
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(url, pool_pre_ping=True)


engine = _build_engine(settings.DATABASE_URL)


def get_session():
    """FastAPI dependency to get database session."""
    with Session(engine) as session:
        yield session


def init_db():
    SQLModel.metadata.create_all(engine)
