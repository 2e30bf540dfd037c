from sqlalchemy import create_engine, event
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker

from eventcrm.core.config import settings

connect_args = {}
backend = make_url(settings.DATABASE_URL).get_backend_name()
if backend.startswith("postgresql"):
    connect_args["options"] = "-c timezone=utc"
elif backend == "sqlite":
    # FastAPI runs sync routes in a threadpool
    connect_args["check_same_thread"] = False

engine = create_engine(
    settings.DATABASE_URL, pool_pre_ping=True, connect_args=connect_args
)

if backend == "sqlite":
    # pysqlite's own transaction handling breaks SAVEPOINT; let SQLAlchemy
    # emit BEGIN itself so begin_nested() works as on Postgres.
    @event.listens_for(engine, "connect")
    def _sqlite_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        dbapi_connection.execute("PRAGMA foreign_keys=ON")
        # Readers must not block the writer (API threadpool + worker)
        dbapi_connection.execute("PRAGMA journal_mode=WAL")
        dbapi_connection.execute("PRAGMA busy_timeout=5000")

    @event.listens_for(engine, "begin")
    def _sqlite_begin(conn):
        # Set by begin_write(); plain reads stay deferred
        mode = conn.get_execution_options().get("sqlite_begin")
        conn.exec_driver_sql(f"BEGIN {mode}" if mode else "BEGIN")


SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def begin_write(db: Session) -> None:
    """
    Start a read-then-write unit of work.

    On SQLite the transaction takes the write lock up front (BEGIN
    IMMEDIATE): a deferred transaction that has already read cannot be
    upgraded once another connection commits, and fails with "database is
    locked" instead of waiting. Whatever transaction the session already has
    open is committed first. Postgres needs nothing here; its row locks and
    conditional UPDATEs serialize the same units.
    """
    if db.get_bind().dialect.name != "sqlite":
        return
    if db.in_transaction():
        db.commit()
    db.connection(execution_options={"sqlite_begin": "IMMEDIATE"})
