# dependencies.py
from redis import Redis
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from .config import DATABASE_URL, REDIS_URL


def make_engine(database_url: str, **kwargs):
    """
    Create an engine for the transactional store.

    SQLite has no SERIALIZABLE isolation level to ask for, so every transaction is
    opened with BEGIN IMMEDIATE instead: writers queue up behind each other and
    read-check-write sequences cannot interleave.
    """
    if database_url.startswith('sqlite'):
        connect_args = kwargs.pop('connect_args', {})
        connect_args.setdefault('check_same_thread', False)
        connect_args.setdefault('timeout', 30)
        engine = create_engine(database_url, connect_args=connect_args, **kwargs)

        @event.listens_for(engine, "connect")
        def _disable_pysqlite_transactions(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine

    return create_engine(database_url, pool_pre_ping=True, **kwargs)


def make_session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


engine = make_engine(DATABASE_URL)
SessionLocal = make_session_factory(engine)

redis_client = Redis.from_url(REDIS_URL, decode_responses=True)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory():
    return SessionLocal


def get_redis_client():
    return redis_client
