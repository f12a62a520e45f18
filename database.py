from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from pathlib import Path
from models import Base
import logging

logger = logging.getLogger(__name__)

def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()

def create_db_engine(db_path: str):
    """
    Create an engine for a SQLite database file with foreign keys enforced.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLAlchemy engine
    """
    engine = create_engine(f'sqlite:///{db_path}')
    event.listen(engine, 'connect', _enable_sqlite_foreign_keys)
    return engine

def init_db(db_path: str = "/var/lib/ovpn-portal/portal.db"):
    """
    Initialize database and create tables.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLAlchemy engine
    """
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    engine = create_db_engine(db_path)
    Base.metadata.create_all(engine)
    logger.info(f"Database initialized at {db_path}")
    return engine

def get_session_factory(engine):
    """
    Create a session factory for the given engine.

    Args:
        engine: SQLAlchemy engine

    Returns:
        Session factory (sessionmaker)
    """
    return sessionmaker(bind=engine)
