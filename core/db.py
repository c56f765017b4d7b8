"""
core/db.py -- Engine construction shared by accounts/store.py and nav/store.py.

Both stores use SQLAlchemy Core against the same DATABASE_URL. SQLite gets two
tweaks: check_same_thread=False (TestClient and uvicorn run handlers in a
thread pool) and WAL journal mode.
"""

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block during writes.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str) -> Engine:
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine
