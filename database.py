import logging

from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine, Session

from config import get_settings

logger = logging.getLogger(__name__)


def make_engine(database_url: str, echo: bool = False):
    """
    Builds an engine; SQLite connections are shared across the threadpool.
    """
    kwargs = {"echo": echo}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    return create_engine(database_url, **kwargs)


settings = get_settings()
engine = make_engine(settings.database_url, echo=settings.database_echo)


def init_db(bind=None):
    """
    Creates the tables defined in models.py.
    """
    import models  # noqa: F401  registers the tables on SQLModel.metadata

    SQLModel.metadata.create_all(bind or engine)
    logger.info("Database tables ready")


def get_session():
    """
    Dependency to get a DB session per request.
    """
    with Session(engine) as session:
        yield session
