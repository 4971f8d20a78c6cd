import logging

from sqlmodel import SQLModel

from database import engine as default_engine
from logging_utils import setup_logging

logger = logging.getLogger(__name__)


def reset_database(bind=None):
    """
    Drops every ledger and correlation table and creates them again.
    All transaction history is lost.
    """
    import models  # noqa: F401  registers the tables on SQLModel.metadata

    bind = bind or default_engine
    logger.warning("Resetting database %s", bind.url.render_as_string(hide_password=True))
    SQLModel.metadata.drop_all(bind)
    logger.info("Old tables dropped")
    SQLModel.metadata.create_all(bind)
    logger.info("New tables created")


if __name__ == "__main__":
    setup_logging()
    reset_database()
