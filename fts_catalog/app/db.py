# fts_catalog/app/db.py
from __future__ import annotations

import json
import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, List, Optional

from flask import g, has_app_context
from dotenv import load_dotenv
from sqlalchemy import URL, create_engine, make_url, text
from sqlalchemy.engine import Connection, Engine, Result
from sqlalchemy.orm import Session, scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

from .config_loader import get_expected_dbms
from .dialects import DialectAdapter, resolve_adapter

log = logging.getLogger(__name__)

_ENGINE: Optional[Engine] = None
_SESSION_FACTORY: Optional[sessionmaker] = None
_SESSION_LOCAL: Optional[scoped_session] = None
_INIT_LOCK = threading.Lock()

REPO_ROOT = Path(__file__).resolve().parents[2]
ROOT_ENV = REPO_ROOT / ".env"
DB_JSON_PATH = REPO_ROOT / "config" / "db.json"

# driver, default port and libpq-style env prefix per dialect tag
_URL_DEFAULTS = {
    "postgresql": ("postgresql+psycopg", 5432, "PG"),
    "mariadb": ("mariadb+pymysql", 3306, "MYSQL_"),
}
_PART_ENV = {
    "user": ("DB_USER", "USER"),
    "password": ("DB_PASSWORD", "PASSWORD"),
    "database": ("DB_NAME", "DATABASE"),
    "host": ("DB_HOST", "HOST"),
    "port": ("DB_PORT", "PORT"),
}


def _load_env_once() -> None:
    if ROOT_ENV.exists():
        log.debug("loading %s", ROOT_ENV)
        load_dotenv(ROOT_ENV, override=False)


def _db_json() -> dict[str, str]:
    """Connection parts from ``config/db.json`` (see ``config/db.json.example``); empty when absent."""
    if not DB_JSON_PATH.exists():
        return {}
    try:
        data = json.loads(DB_JSON_PATH.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        log.warning("Ignoring unreadable %s", DB_JSON_PATH, exc_info=True)
        return {}
    if not isinstance(data, dict):
        log.warning("Ignoring %s: expected a JSON object", DB_JSON_PATH)
        return {}
    return {str(k): str(v) for k, v in data.items() if v is not None}


def _build_db_url() -> str:
    """
    Effective database URL, first match wins:
      1) DATABASE_URL
      2) DB_DIALECT (postgresql | mariadb | sqlite, default postgresql) plus
         DB_USER / DB_PASSWORD / DB_NAME / DB_HOST / DB_PORT, each falling back
         to the driver's own variable (PGUSER, MYSQL_HOST, ...) and then to
         config/db.json
    For sqlite, DB_NAME is the database file; empty means in-memory.
    """
    _load_env_once()

    url = os.getenv("DATABASE_URL")
    if url:
        return url

    file_parts = _db_json()
    dialect = (os.getenv("DB_DIALECT") or file_parts.get("DB_DIALECT") or "postgresql").strip().lower()
    if dialect in ("sqlite", "sqlite3"):
        path = os.getenv("DB_NAME") or file_parts.get("DB_NAME") or ""
        return f"sqlite:///{path}" if path else "sqlite://"
    if dialect in ("mysql", "maria"):
        dialect = "mariadb"
    if dialect not in _URL_DEFAULTS:
        raise ValueError(f"Unsupported DB_DIALECT {dialect!r}")

    drivername, default_port, prefix = _URL_DEFAULTS[dialect]
    parts: dict[str, Optional[str]] = {}
    for part, (generic, suffix) in _PART_ENV.items():
        parts[part] = os.getenv(generic) or os.getenv(prefix + suffix) or file_parts.get(generic)

    # URL.create escapes reserved characters in the password
    return URL.create(
        drivername,
        username=parts["user"] or "app",
        password=parts["password"] or "app",
        host=parts["host"] or "127.0.0.1",
        port=int(parts["port"] or default_port),
        database=parts["database"] or "app",
    ).render_as_string(hide_password=False)


def _engine_options(db_url: str) -> dict[str, Any]:
    url = make_url(db_url)
    options: dict[str, Any] = {
        "echo": bool(int(os.getenv("SQLALCHEMY_ECHO", "0"))),
        "pool_pre_ping": bool(int(os.getenv("SQLALCHEMY_POOL_PRE_PING", "1"))),
    }
    if url.get_backend_name() == "sqlite":
        if url.database in (None, "", ":memory:"):
            # one shared connection, otherwise every checkout sees an empty database
            options["poolclass"] = StaticPool
            options["connect_args"] = {"check_same_thread": False}
    else:
        options["pool_size"] = int(os.getenv("SQLALCHEMY_POOL_SIZE", "5"))
        options["max_overflow"] = int(os.getenv("SQLALCHEMY_MAX_OVERFLOW", "10"))
    return options


def create_engine_for(db_url: str) -> Engine:
    """Engine for ``db_url`` with the pool settings taken from ``SQLALCHEMY_*``."""
    options = _engine_options(db_url)
    log.info("Creating DB engine url=%s", make_url(db_url).render_as_string(hide_password=True))
    return create_engine(db_url, **options)


def _install(engine: Engine) -> None:
    global _ENGINE, _SESSION_FACTORY, _SESSION_LOCAL
    _ENGINE = engine
    _SESSION_FACTORY = sessionmaker(bind=engine)
    _SESSION_LOCAL = scoped_session(_SESSION_FACTORY)


def get_engine() -> Engine:
    """Process-wide engine, built from the environment on first use."""
    if _ENGINE is not None:
        return _ENGINE
    with _INIT_LOCK:
        if _ENGINE is None:
            _install(create_engine_for(_build_db_url()))
        return _ENGINE


def set_engine(engine: Engine) -> None:
    """Install an externally created engine (tests, embedded deployments)."""
    with _INIT_LOCK:
        _install(engine)


def get_db_conn() -> Connection:
    """Raw connection from the shared engine; close it (``with get_db_conn() as conn:``)."""
    return get_engine().connect()


def get_or_create_session() -> Session:
    """The ORM session bound to the current Flask app context, created on first request."""
    if _SESSION_LOCAL is None:
        get_engine()
    session = g.get("db")
    if session is None:
        session = _SESSION_LOCAL()
        g.db = session
    return session


@contextmanager
def session_scope() -> Iterator[Session]:
    """Yield an ORM session and guarantee the associated connection is released.

    Inside a Flask application context the request-scoped session from
    :func:`get_or_create_session` is reused and left open for the teardown
    hook.  Everything else gets a private session closed on exit.
    """
    if has_app_context():
        session, owned = get_or_create_session(), False
    else:
        if _SESSION_FACTORY is None:
            get_engine()
        session, owned = _SESSION_FACTORY(), True

    try:
        yield session
    except Exception:
        if session.in_transaction():
            session.rollback()
        raise
    finally:
        if owned:
            session.close()


class StagingSession:
    """One connection plus one transaction, owning the temporary tables created in it.

    Temporary tables are connection-scoped in MariaDB and SQLite, so staging
    and the join that reads the staged rows must share this object.
    """

    def __init__(self, connection: Connection, adapter: DialectAdapter):
        self.connection = connection
        self.adapter = adapter
        self._temp_tables: List[str] = []
        self._open_results: List[Result] = []

    def __repr__(self) -> str:
        return f"<StagingSession dialect={self.adapter.name} temp_tables={self._temp_tables}>"

    @property
    def dialect_name(self) -> str:
        return self.adapter.name

    @property
    def temp_tables(self) -> tuple[str, ...]:
        return tuple(self._temp_tables)

    @property
    def open_results(self) -> tuple[Result, ...]:
        return tuple(self._open_results)

    def has_temp_table(self, name: str) -> bool:
        return name.lower() in (t.lower() for t in self._temp_tables)

    def register_temp_table(self, name: str) -> None:
        self._temp_tables.append(name)

    def execute(self, statement: Any, parameters: Any = None) -> Result:
        if parameters is None:
            return self.connection.execute(statement)
        return self.connection.execute(statement, parameters)

    def execute_ddl(self, ddl: str) -> None:
        log.debug("DDL: %s", ddl)
        self.connection.exec_driver_sql(ddl)

    def track_result(self, result: Result) -> Result:
        """Remember a streaming result so it is closed before the scope ends."""
        self._open_results.append(result)
        return result

    def release_result(self, result: Result) -> None:
        """Close ``result`` and stop tracking it."""
        if result in self._open_results:
            self._open_results.remove(result)
        result.close()

    def close_results(self) -> None:
        while self._open_results:
            self._open_results.pop().close()

    def drop_temp_tables(self) -> None:
        """Drop every registered temp table the database would otherwise keep alive."""
        while self._temp_tables:
            name = self._temp_tables.pop()
            ddl = self.adapter.drop_temporary_table_ddl(name)
            if ddl is not None:
                self.execute_ddl(ddl)


@contextmanager
def staging_session(engine: Optional[Engine] = None, *, dbms: Optional[str] = None) -> Iterator[StagingSession]:
    """Open a connection-bound transaction for staging search results and joining them.

    On normal exit temp tables are dropped and the transaction commits.  On
    any exception, including ``GeneratorExit`` from an abandoned caller, the
    transaction rolls back before the temp tables are dropped, so a failed
    stage never leaves rows or tables behind on the pooled connection.
    """
    engine = engine or get_engine()
    expected = dbms if dbms is not None else get_expected_dbms()
    with engine.connect() as conn:
        adapter = resolve_adapter(conn, expected)
        session = StagingSession(conn, adapter)
        trans = conn.begin()
        try:
            yield session
        except BaseException:
            if trans.is_active:
                trans.rollback()
            try:
                session.close_results()
                session.drop_temp_tables()
                conn.commit()
            except Exception:
                log.warning("Could not drop temporary tables after rollback", exc_info=True)
            raise
        else:
            session.close_results()
            session.drop_temp_tables()
            trans.commit()


def ping_db() -> bool:
    """Quick health check."""
    try:
        with get_db_conn() as conn:
            conn.execute(text("select 1"))
        return True
    except Exception:
        log.exception("DB ping failed")
        return False


def dispose_engine() -> None:
    """Close pooled connections and forget the engine (tests, graceful shutdown)."""
    global _ENGINE, _SESSION_FACTORY, _SESSION_LOCAL
    with _INIT_LOCK:
        if _SESSION_LOCAL is not None:
            _SESSION_LOCAL.remove()
        if _ENGINE is not None:
            _ENGINE.dispose()
        _ENGINE = _SESSION_FACTORY = _SESSION_LOCAL = None


def db_cleanup(_exc: Optional[BaseException] = None) -> None:
    """Teardown hook: drop the session stored on ``g`` and return its connection to the pool."""
    if has_app_context():
        g.pop("db", None)
    if _SESSION_LOCAL is not None:
        _SESSION_LOCAL.remove()


def init_app(app: Any) -> None:
    """Release the request-scoped session when each Flask app context ends."""
    app.teardown_appcontext(db_cleanup)
