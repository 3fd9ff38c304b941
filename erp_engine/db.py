import contextlib
import sqlite3
from typing import Iterable

try:
    import psycopg2
    import psycopg2.extras
except ImportError:  # pragma: no cover - optional dependency for postgres
    psycopg2 = None

from flask import current_app, g


class Database:
    def __init__(self, backend: str, connection):
        self.backend = backend
        self._conn = connection
        self._in_transaction = False

    def execute(self, sql: str, params: Iterable | None = None):
        if self.backend == "postgres":
            cursor = self._conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            if params:
                sql = _convert_qmark_to_pg(sql)
                cursor.execute(sql, list(params))
            else:
                cursor.execute(sql)
            return cursor
        return self._conn.execute(sql, params or ())

    @contextlib.contextmanager
    def transaction(self):
        """Explicit BEGIN/COMMIT block; nested calls join the outer transaction."""
        if self._in_transaction:
            yield self
            return
        # IMMEDIATE takes the sqlite write lock up front so concurrent writers queue instead of failing on upgrade.
        self.execute("BEGIN IMMEDIATE" if self.backend == "sqlite" else "BEGIN")
        self._in_transaction = True
        try:
            yield self
        except BaseException:
            self.execute("ROLLBACK")
            raise
        else:
            self.execute("COMMIT")
        finally:
            self._in_transaction = False

    def close(self):
        self._conn.close()


def _convert_qmark_to_pg(sql: str) -> str:
    return sql.replace("?", "%s")


def connect_database(db_path: str) -> Database:
    if db_path.lower().startswith("postgres"):
        if psycopg2 is None:
            raise RuntimeError("psycopg2 is not installed.")
        conn = psycopg2.connect(db_path)
        conn.autocommit = True
        return Database("postgres", conn)

    conn = sqlite3.connect(db_path, timeout=30.0, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return Database("sqlite", conn)


def get_db():
    if "db" not in g:
        db_path = current_app.config["DB_PATH"]
        g.db = connect_database(db_path)
    return g.db


def close_db(_error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS documents (
        id TEXT NOT NULL,
        tenant_id TEXT NOT NULL,
        kind TEXT NOT NULL,
        number TEXT,
        status TEXT,
        supplier_ref TEXT,
        parent_ref TEXT,
        unique_key TEXT,
        version INTEGER NOT NULL DEFAULT 1,
        payload TEXT NOT NULL,
        created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (tenant_id, id)
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_documents_tenant_kind_unique_key
    ON documents (tenant_id, kind, unique_key)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_documents_tenant_kind_status
    ON documents (tenant_id, kind, status)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_documents_tenant_kind_parent
    ON documents (tenant_id, kind, parent_ref)
    """,
    """
    CREATE TABLE IF NOT EXISTS document_sequences (
        tenant_id TEXT NOT NULL,
        kind TEXT NOT NULL,
        last_value INTEGER NOT NULL,
        PRIMARY KEY (tenant_id, kind)
    )
    """,
)


def init_db(db: Database | None = None):
    db = db or get_db()
    for statement in SCHEMA_STATEMENTS:
        db.execute(statement)
