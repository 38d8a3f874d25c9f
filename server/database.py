"""Database setup and session management using SQLAlchemy + SQLite."""

import logging
import os

from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker

logger = logging.getLogger(__name__)

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///locations.db")

_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}


def enable_sqlite_savepoints(engine):
    """Let SQLAlchemy own BEGIN on pysqlite so SAVEPOINTs nest inside the transaction."""
    @event.listens_for(engine, "connect")
    def _no_implicit_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


engine = create_engine(DATABASE_URL, connect_args=_connect_args)
if engine.dialect.name == "sqlite":
    enable_sqlite_savepoints(engine)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Create all tables and seed the global detection thresholds."""
    from models import User, Point, Area, Place, Visit, PlaceVisit, Notification, Job, Config  # noqa: F401

    logger.info("Initializing database at %s", DATABASE_URL)
    Base.metadata.create_all(bind=engine)
    _seed_config()


def _seed_config():
    """Insert the global default thresholds if not present."""
    from models import Config
    from settings import DEFAULT_SETTINGS

    db = SessionLocal()
    try:
        for key, value in DEFAULT_SETTINGS.items():
            exists = (
                db.query(Config)
                .filter(Config.user_id.is_(None), Config.key == key)
                .first()
            )
            if not exists:
                db.add(Config(key=key, value=str(value)))
        db.commit()
    finally:
        db.close()
