#!/usr/bin/env python3
"""
🗄️ Production Database Manager for Vouch Escrow
SQLite or PostgreSQL connection handling, migrations, audit log
"""

import sqlite3
import threading
import time
import json
from datetime import datetime, timezone
from typing import Dict, List, Any, Optional, Union
from contextlib import contextmanager
import os

import psycopg2
import psycopg2.pool
from psycopg2.extras import RealDictCursor

from ..core.exceptions import DatabaseError, ConnectionPoolError
from ..utils.production_logger import LoggerFactory, log_errors
from ..utils.timeutil import to_db_time, utcnow


ESCROW_TABLE = """
CREATE TABLE IF NOT EXISTS escrows (
    id TEXT PRIMARY KEY,
    ledger_escrow_id BIGINT UNIQUE,
    ledger_tx_hash TEXT,
    seller_address TEXT NOT NULL,
    buyer_address TEXT,
    buyer_token TEXT,
    item_name TEXT NOT NULL,
    item_description TEXT,
    item_image TEXT,
    settlement_token TEXT NOT NULL,
    settlement_amount TEXT NOT NULL,
    fiat_amount TEXT NOT NULL,
    fiat_currency TEXT NOT NULL DEFAULT 'IDR',
    release_duration_seconds INTEGER NOT NULL,
    release_time_unix BIGINT,
    status TEXT NOT NULL DEFAULT 'CREATED',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    funded_at TEXT,
    shipped_at TEXT,
    delivered_at TEXT,
    released_at TEXT,
    refunded_at TEXT,
    disputed_at TEXT,
    auto_release_at TEXT,
    shipment_proof TEXT,
    dispute_reason TEXT,
    dispute_resolution TEXT,
    fiat_invoice_id TEXT,
    fiat_invoice_url TEXT,
    ledger_pending INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_escrows_seller ON escrows (seller_address, created_at);
CREATE INDEX IF NOT EXISTS idx_escrows_status_shipped ON escrows (status, shipped_at);
CREATE INDEX IF NOT EXISTS idx_escrows_status_funded ON escrows (status, funded_at);
CREATE INDEX IF NOT EXISTS idx_escrows_status_created ON escrows (status, created_at);
CREATE INDEX IF NOT EXISTS idx_escrows_invoice ON escrows (fiat_invoice_id);
"""

AUDIT_TABLE = """
CREATE TABLE IF NOT EXISTS audit_log (
    id {id_column},
    event_type TEXT NOT NULL,
    entity_type TEXT,
    entity_id TEXT,
    actor TEXT,
    old_values TEXT,
    new_values TEXT,
    created_at TEXT NOT NULL,
    correlation_id TEXT
);

CREATE INDEX IF NOT EXISTS idx_audit_log_event_type ON audit_log (event_type);
CREATE INDEX IF NOT EXISTS idx_audit_log_entity ON audit_log (entity_type, entity_id);
CREATE INDEX IF NOT EXISTS idx_audit_log_created_at ON audit_log (created_at);
"""


class ProductionDatabase:
    """Database manager shared by the record store and audit log."""

    def __init__(self, config):
        self.config = config
        self.logger = LoggerFactory.get_database_logger()
        self._connection_pool = None
        self._sqlite_connection = None
        self._lock = threading.RLock()

        self._initialize_database()

    @property
    def is_sqlite(self) -> bool:
        return self.config.database.use_sqlite

    def _initialize_database(self):
        """Initialize database connection and schema."""
        try:
            if self.is_sqlite:
                self._initialize_sqlite()
            else:
                self._initialize_postgresql()

            self._ensure_schema()
            self.logger.info("Database initialized successfully",
                             database_type="sqlite" if self.is_sqlite else "postgresql")

        except DatabaseError:
            raise
        except Exception as e:
            self.logger.error("Failed to initialize database", error=str(e))
            raise DatabaseError(f"Database initialization failed: {e}")

    def _initialize_sqlite(self):
        """Initialize SQLite database."""
        path = self.config.database.sqlite_path
        directory = os.path.dirname(path)
        if path != ':memory:' and directory:
            os.makedirs(directory, exist_ok=True)

        self._sqlite_connection = sqlite3.connect(
            path,
            check_same_thread=False,
            timeout=self.config.database.connection_timeout
        )
        self._sqlite_connection.row_factory = sqlite3.Row

        if path != ':memory:':
            self._sqlite_connection.execute("PRAGMA journal_mode=WAL")
        self._sqlite_connection.execute("PRAGMA synchronous=NORMAL")
        self._sqlite_connection.commit()

    def _initialize_postgresql(self):
        """Initialize PostgreSQL connection pool."""
        try:
            self._connection_pool = psycopg2.pool.ThreadedConnectionPool(
                minconn=1,
                maxconn=self.config.database.max_connections,
                host=self.config.database.host,
                port=self.config.database.port,
                database=self.config.database.name,
                user=self.config.database.user,
                password=self.config.database.password,
                sslmode=self.config.database.ssl_mode,
                connect_timeout=self.config.database.connection_timeout,
                cursor_factory=RealDictCursor
            )
        except Exception as e:
            self.logger.error("Failed to create PostgreSQL connection pool", error=str(e))
            raise ConnectionPoolError(f"Connection pool creation failed: {e}")

    @contextmanager
    def get_connection(self):
        """Get database connection with automatic cleanup."""
        if self.is_sqlite:
            # One shared connection; serialize access across threads.
            with self._lock:
                yield self._sqlite_connection
            return

        connection = self._connection_pool.getconn()
        try:
            if connection.closed:
                self._connection_pool.putconn(connection, close=True)
                connection = self._connection_pool.getconn()
            yield connection
        finally:
            self._connection_pool.putconn(connection)

    @contextmanager
    def get_cursor(self, commit=True):
        """Get database cursor with transaction management."""
        with self.get_connection() as conn:
            cursor = conn.cursor()
            try:
                yield cursor
                if commit:
                    conn.commit()
            except Exception as e:
                conn.rollback()
                self.logger.error("Database transaction error", error=str(e))
                raise
            finally:
                cursor.close()

    def adapt_query(self, query: str) -> str:
        """Queries are written with sqlite '?' placeholders; psycopg2 wants '%s'."""
        if self.is_sqlite:
            return query
        return query.replace('?', '%s')

    def _ensure_schema(self):
        """Ensure database schema is up to date."""
        schema_version = self._get_schema_version()
        latest_version = self._get_latest_schema_version()

        if schema_version < latest_version:
            self.logger.info("Running database migrations",
                             current_version=schema_version,
                             target_version=latest_version)
            self._run_migrations(schema_version, latest_version)

    def _get_schema_version(self) -> int:
        """Get current schema version."""
        with self.get_cursor() as cursor:
            cursor.execute(
                "CREATE TABLE IF NOT EXISTS schema_version ("
                "version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)"
            )
            cursor.execute("SELECT MAX(version) AS version FROM schema_version")
            result = cursor.fetchone()
            version = result['version'] if result else None
            return version or 0

    def _get_latest_schema_version(self) -> int:
        return max(migration['version'] for migration in self._get_migrations(0))

    def _run_migrations(self, from_version: int, to_version: int):
        """Run database migrations."""
        for migration in self._get_migrations(from_version):
            if migration['version'] > to_version:
                break
            try:
                with self.get_cursor() as cursor:
                    self.logger.info("Running migration", migration_version=migration['version'])
                    self._execute_script(cursor, migration['sql'])
                    cursor.execute(
                        self.adapt_query("INSERT INTO schema_version (version, applied_at) VALUES (?, ?)"),
                        (migration['version'], to_db_time(utcnow()))
                    )

                self.logger.info("Migration completed", migration_version=migration['version'])

            except Exception as e:
                self.logger.error("Migration failed",
                                  migration_version=migration['version'],
                                  error=str(e))
                raise DatabaseError(f"Migration {migration['version']} failed: {e}")

    def _execute_script(self, cursor, sql: str):
        if self.is_sqlite:
            # sqlite3's execute() accepts a single statement only
            for statement in sql.split(';'):
                if statement.strip():
                    cursor.execute(statement)
        else:
            cursor.execute(sql)

    def _get_migrations(self, from_version: int) -> List[Dict]:
        """Migration scripts newer than ``from_version``."""
        id_column = "INTEGER PRIMARY KEY AUTOINCREMENT" if self.is_sqlite else "SERIAL PRIMARY KEY"
        migrations = [
            {'version': 1, 'sql': ESCROW_TABLE},
            {'version': 2, 'sql': AUDIT_TABLE.format(id_column=id_column)},
        ]
        return [m for m in migrations if m['version'] > from_version]

    @log_errors("vouch.database")
    def execute_query(self, query: str, params: tuple = None, fetch_one: bool = False,
                      fetch_all: bool = False) -> Union[Dict[str, Any], List[Dict[str, Any]], int, None]:
        """Execute a query. Returns a row dict, a list of row dicts, or the affected row count."""
        start_time = time.time()

        try:
            with self.get_cursor() as cursor:
                cursor.execute(self.adapt_query(query), params or ())

                if fetch_one:
                    row = cursor.fetchone()
                    result = dict(row) if row is not None else None
                elif fetch_all:
                    result = [dict(row) for row in cursor.fetchall()]
                else:
                    result = cursor.rowcount

                self.logger.debug("Query executed",
                                  query=query[:100],
                                  execution_time_ms=(time.time() - start_time) * 1000)
                return result

        except (sqlite3.Error, psycopg2.Error) as e:
            self.logger.error("Query execution failed",
                              query=query[:100],
                              error=str(e),
                              execution_time_ms=(time.time() - start_time) * 1000)
            raise DatabaseError(f"Query execution failed: {e}")

    def get_health_status(self) -> Dict[str, Any]:
        """Probe the database with a trivial query."""
        try:
            self.execute_query("SELECT 1 AS ok", fetch_one=True)
            return {'db_status': 'healthy', 'last_check_at': datetime.now(timezone.utc).isoformat()}
        except DatabaseError as e:
            return {'db_status': 'unhealthy', 'error': str(e)}

    def record_audit_event(self, event_type: str, entity_type: Optional[str] = None,
                           entity_id: Optional[str] = None, actor: Optional[str] = None,
                           old_values: Optional[Dict] = None, new_values: Optional[Dict] = None,
                           correlation_id: Optional[str] = None):
        """Record audit event. Audit failures are logged, never raised."""
        try:
            self.execute_query(
                """INSERT INTO audit_log
                   (event_type, entity_type, entity_id, actor, old_values, new_values,
                    created_at, correlation_id)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (event_type, entity_type, entity_id, actor,
                 json.dumps(old_values, default=str) if old_values else None,
                 json.dumps(new_values, default=str) if new_values else None,
                 to_db_time(utcnow()),
                 correlation_id)
            )
        except DatabaseError as e:
            self.logger.error("Failed to record audit event", error=str(e), event_type=event_type)

    def get_audit_events(self, entity_id: str, event_type: Optional[str] = None) -> List[Dict[str, Any]]:
        if event_type:
            return self.execute_query(
                "SELECT * FROM audit_log WHERE entity_id = ? AND event_type = ? ORDER BY id",
                (entity_id, event_type), fetch_all=True)
        return self.execute_query(
            "SELECT * FROM audit_log WHERE entity_id = ? ORDER BY id", (entity_id,), fetch_all=True)

    def close(self):
        """Close database connections."""
        if self._connection_pool:
            self._connection_pool.closeall()

        if self._sqlite_connection:
            self._sqlite_connection.close()

        self.logger.info("Database connections closed")
