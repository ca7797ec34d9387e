import logging
from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import settings

logger = logging.getLogger(__name__)


def normalize_database_url(database_url: str) -> str:
    """Hosted PostgreSQL providers hand out postgres://, SQLAlchemy needs postgresql://"""
    if database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql://", 1)
    return database_url


def build_engine(database_url: str, echo: bool = False):
    """Create an engine with the per-dialect connection options we rely on."""
    database_url = normalize_database_url(database_url)

    # Handle SQLite special case for check_same_thread; writers wait on the file lock
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": 30}

    engine = create_engine(
        database_url,
        connect_args=connect_args,
        echo=echo,
        pool_pre_ping=True,
    )

    if engine.dialect.name == "sqlite":
        _serialize_sqlite_transactions(engine)

    return engine


def _serialize_sqlite_transactions(engine):
    """
    Take the SQLite write lock when a transaction begins.

    pysqlite otherwise defers BEGIN until the first write, which lets two
    sessions read the same state and then race to upgrade their locks.
    """
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


database_url = normalize_database_url(settings.database_url)

engine = build_engine(database_url)

# Services commit their own units of work and hand back the committed rows
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

Base = declarative_base()


def get_db():
    """Dependency to get database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_tables():
    """Create all tables in the database"""
    from . import models  # noqa: F401  register mappers

    Base.metadata.create_all(bind=engine)
    logger.info(f"Tables ready on {database_url.split('://', 1)[0]}")
