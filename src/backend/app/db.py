import os
from dotenv import load_dotenv
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from sqlalchemy.pool import StaticPool


# Ensure local development loads environment from project root by default
load_dotenv(dotenv_path=os.getenv("ENV_FILE", ".env"), override=False)

# Choose SQLite automatically for pytest runs unless explicitly forced
_is_pytest = bool(os.getenv("PYTEST_CURRENT_TEST")) or os.getenv("TESTING") == "1" or bool(os.getenv("PYTEST_RUNNING"))
_force_pg_tests = os.getenv("FORCE_POSTGRES_TESTS") == "1"
if _is_pytest and not _force_pg_tests:
    DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite:///./test_onboarding.db")
else:
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./onboarding.db")
    # Normalize Render/Heroku style postgres URLs for SQLAlchemy 2.x
    if DATABASE_URL.startswith("postgres://"):
        DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql+psycopg2://", 1)


class Base(DeclarativeBase):
    pass


pool_size = int(os.getenv("DB_POOL_SIZE", "5"))
max_overflow = int(os.getenv("DB_MAX_OVERFLOW", "5"))
pool_timeout = int(os.getenv("DB_POOL_TIMEOUT", "10"))
pool_recycle = int(os.getenv("DB_POOL_RECYCLE_SECONDS", "900"))
pool_pre_ping = os.getenv("DB_POOL_PRE_PING", "0") == "1"

# Per-connection defaults (can be overridden by PGOPTIONS or role settings)
pg_statement_timeout_ms = int(os.getenv("PG_STATEMENT_TIMEOUT_MS", "12000"))
pg_lock_timeout_ms = int(os.getenv("PG_LOCK_TIMEOUT_MS", "3000"))
pg_idle_txn_timeout_ms = int(os.getenv("PG_IDLE_IN_TXN_TIMEOUT_MS", "10000"))
db_app_name = os.getenv("DB_APP_NAME", "onboarding-reconciler")
db_connect_timeout = int(os.getenv("DB_CONNECT_TIMEOUT", "5"))


def _install_sqlite_transaction_hooks(engine: Engine) -> None:
    # pysqlite defers BEGIN on its own, which breaks SAVEPOINT semantics.
    # Take over transaction control so begin_nested() behaves like Postgres.
    @event.listens_for(engine, "connect")
    def _sqlite_connect(dbapi_connection, connection_record):  # type: ignore
        dbapi_connection.isolation_level = None
        cur = dbapi_connection.cursor()
        try:
            cur.execute("PRAGMA foreign_keys=ON")
        finally:
            cur.close()

    @event.listens_for(engine, "begin")
    def _sqlite_begin(conn):  # type: ignore
        conn.exec_driver_sql("BEGIN")


def _install_postgres_timeouts(engine: Engine) -> None:
    # Apply Postgres per-connection timeouts at DBAPI connect
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):  # type: ignore
        cur = dbapi_connection.cursor()
        try:
            cur.execute("SET statement_timeout TO %s", (pg_statement_timeout_ms,))
            cur.execute("SET lock_timeout TO %s", (pg_lock_timeout_ms,))
            cur.execute(
                "SET idle_in_transaction_session_timeout TO %s",
                (pg_idle_txn_timeout_ms,),
            )
            cur.execute("SET application_name TO %s", (db_app_name,))
        finally:
            cur.close()
        dbapi_connection.commit()


def make_engine(url: str) -> Engine:
    """Build an engine with the dialect hooks this service relies on.

    SQLite in-memory URLs share a single connection so every session sees the
    same database (used by the test-suite).
    """
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        eng = create_engine(url, **kwargs)
        _install_sqlite_transaction_hooks(eng)
        return eng
    eng = create_engine(
        url,
        connect_args={
            "connect_timeout": db_connect_timeout,
            "application_name": db_app_name,
        },
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
        pool_recycle=pool_recycle,
        pool_pre_ping=pool_pre_ping,
    )
    if url.startswith("postgresql"):
        _install_postgres_timeouts(eng)
    return eng


engine = make_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_models(bind: Engine = engine) -> None:
    """Create tables directly from the models (tests and ad-hoc local dev)."""
    from . import models  # noqa: F401

    Base.metadata.create_all(bind)


# Only auto-create tables for ad-hoc local dev when not using Alembic
if os.getenv("TESTING") == "1" and DATABASE_URL.startswith("sqlite") and os.getenv("USE_ALEMBIC") != "1":
    init_models(engine)
