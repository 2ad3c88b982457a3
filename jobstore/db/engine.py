"""SQLAlchemy async engine construction."""

from __future__ import annotations

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from jobstore.config import Settings, settings as default_settings


def _build_engine_kwargs(cfg: Settings) -> dict:
    """Return engine kwargs appropriate for the configured dialect."""
    if cfg.is_postgres:
        kwargs = {
            "echo": cfg.DEBUG,
            "future": True,
            "pool_size": cfg.STORE_DB_POOL_SIZE,
            "max_overflow": cfg.STORE_DB_MAX_OVERFLOW,
            "pool_timeout": cfg.STORE_DB_POOL_TIMEOUT,
            "pool_pre_ping": True,   # ensure stale connections are recycled
            "pool_recycle": 1800,    # recycle connections older than 30 min
        }
        if cfg.schema_name:
            # Models are declared without a schema; every statement is
            # rewritten to target the configured one.
            kwargs["execution_options"] = {"schema_translate_map": {None: cfg.schema_name}}
        return kwargs
    # SQLite: single file, no pool tunables
    return {
        "echo": cfg.DEBUG,
        "future": True,
        "connect_args": {"check_same_thread": False},
    }


def build_engine(cfg: Settings | None = None) -> AsyncEngine:
    """Create the async engine for *cfg* (defaults to the process settings)."""
    cfg = cfg or default_settings
    engine = create_async_engine(cfg.STORE_DB_URL, **_build_engine_kwargs(cfg))

    if cfg.is_sqlite:
        busy_timeout = cfg.SQLITE_BUSY_TIMEOUT_MS

        # WAL lets lock polls read while another worker holds the write lock.
        @event.listens_for(engine.sync_engine, "connect")
        def _set_sqlite_pragmas(dbapi_conn, _conn_rec):  # type: ignore[misc]
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout)}")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine
