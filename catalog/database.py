import logging

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

logger = logging.getLogger(__name__)


def make_engine(database_url: str) -> Engine:
    connect_args = {}
    if database_url.startswith("sqlite"):
        # Handlers run on the threadpool, sessions are opened per call
        connect_args = {"check_same_thread": False, "timeout": 30}
    engine = create_engine(database_url, connect_args=connect_args)

    if database_url.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def create_db_and_tables(engine: Engine):
    # Import registers the tables on SQLModel.metadata
    from catalog import models  # noqa: F401

    logger.info("Creating catalog tables on %s", engine.url.render_as_string(hide_password=True))
    SQLModel.metadata.create_all(engine)
