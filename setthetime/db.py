import logging
import time

from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from setthetime.config import Settings

logger = logging.getLogger(__name__)

Base = declarative_base()


def make_engine(config: Settings):
    """Create the SQLAlchemy engine with pooling and slow-query logging."""
    url = config.database_url
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False, "timeout": 30}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection so every session sees the same database
            kwargs["poolclass"] = StaticPool
    else:
        kwargs = {
            "pool_pre_ping": True,  # Test connections before using
            "pool_recycle": config.db_pool_recycle,
            "pool_size": config.db_pool_size,
            "max_overflow": config.db_max_overflow,
            "pool_timeout": config.db_pool_timeout,
        }

    try:
        engine = create_engine(url, echo=False, **kwargs)
    except Exception as e:
        logger.error("Failed to create database engine: %s", e)
        raise
    logger.info("Database engine created (%s)", engine.dialect.name)

    if engine.dialect.name == "sqlite":
        _serialize_sqlite_transactions(engine)

    threshold = config.db_slow_query_threshold

    @event.listens_for(engine, "before_cursor_execute")
    def before_cursor_execute(conn, _cursor, statement, _parameters, context, _executemany):
        conn.info.setdefault("query_start_time", []).append(time.time())

    @event.listens_for(engine, "after_cursor_execute")
    def after_cursor_execute(conn, _cursor, statement, _parameters, context, _executemany):
        total = time.time() - conn.info["query_start_time"].pop(-1)
        if total > threshold:
            logger.warning("Slow query (%.2fs): %s...", total, statement[:200])

    return engine


def _serialize_sqlite_transactions(engine) -> None:
    """Take SQLite's write lock at BEGIN.

    SQLite ignores ``SELECT ... FOR UPDATE``, and a deferred transaction
    lets two writers both run their overlap check before either inserts.
    With ``BEGIN IMMEDIATE`` the second transaction waits for the first to
    commit, so the check always sees the other booking.
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, _connection_record):
        # pysqlite would otherwise emit its own deferred BEGIN
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def make_session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine) -> None:
    """Create missing tables."""
    # Import for side effects: registers the mapped tables on Base
    from setthetime.store import tables  # noqa: F401

    Base.metadata.create_all(bind=engine)
