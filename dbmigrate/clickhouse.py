"""Migration driver for ClickHouse over a DB-API connection."""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from urllib.parse import parse_qs, parse_qsl, urlencode, urlsplit, urlunsplit

from dbmigrate.driver import NIL_VERSION, Driver, LocalLock
from dbmigrate.errors import DatabaseError
from dbmigrate.multistmt import iter_statements

DEFAULT_MIGRATIONS_TABLE = "schema_migrations"
DEFAULT_MIGRATIONS_TABLE_ENGINE = "TinyLog"
DEFAULT_MULTI_STATEMENT_MAX_SIZE = 10 * 1 << 20

_MULTI_STMT_DELIMITER = b";"
_INTEGER = re.compile(r"[+-]?[0-9]+")


@dataclass
class Config:
    database_name: str = ""
    cluster_name: str = ""
    migrations_table: str = ""
    migrations_table_engine: str = ""
    multi_statement_enabled: bool = False
    multi_statement_max_size: int = 0


def _atoi(text):
    if not _INTEGER.fullmatch(text):
        raise ValueError(f'parsing "{text}": invalid syntax')
    return int(text)


def _text(value):
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8")
    return value


def _connection_dsn(url):
    """Return the URL with scheme tcp and without its x- query options."""
    parts = urlsplit(url)
    kept = [
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if len(key) <= 1 or not key.startswith("x-")
    ]
    kept.sort(key=lambda item: item[0])
    return urlunsplit(parts._replace(scheme="tcp", query=urlencode(kept)))


def with_instance(conn, config):
    """Wrap an open DB-API connection; creates the version table if needed."""
    if config is None:
        raise ValueError("no config")
    ping = getattr(conn, "ping", None)
    if callable(ping):
        ping()
    driver = ClickHouse()
    driver.conn = conn
    driver.config = config
    driver._init()
    return driver


class ClickHouse(Driver):
    """ClickHouse driver; ``connect`` turns a DSN into a DB-API connection."""

    def __init__(self, connect=None):
        self._connect = connect
        self._lock = LocalLock()
        self.conn = None
        self.config = None

    def open(self, url):
        if self._connect is None:
            raise RuntimeError("no connect function configured")
        values = parse_qs(urlsplit(url).query, keep_blank_values=True)

        def get(key):
            return values.get(key, [""])[0]

        max_size = DEFAULT_MULTI_STATEMENT_MAX_SIZE
        if raw := get("x-multi-statement-max-size"):
            max_size = _atoi(raw)

        driver = ClickHouse(self._connect)
        driver.conn = self._connect(_connection_dsn(url))
        driver.config = Config(
            migrations_table=get("x-migrations-table"),
            migrations_table_engine=get("x-migrations-table-engine")
            or DEFAULT_MIGRATIONS_TABLE_ENGINE,
            database_name=get("database"),
            cluster_name=get("x-cluster-name"),
            multi_statement_enabled=get("x-multi-statement") == "true",
            multi_statement_max_size=max_size,
        )
        driver._init()
        return driver

    def _init(self):
        config = self.config
        if not config.database_name:
            row = self._fetch_one("SELECT currentDatabase()")
            if row is None:
                raise LookupError("current database could not be determined")
            config.database_name = row[0]
        if not config.migrations_table:
            config.migrations_table = DEFAULT_MIGRATIONS_TABLE
        if config.multi_statement_max_size <= 0:
            config.multi_statement_max_size = DEFAULT_MULTI_STATEMENT_MAX_SIZE
        if not config.migrations_table_engine:
            config.migrations_table_engine = DEFAULT_MIGRATIONS_TABLE_ENGINE
        self._ensure_version_table()

    def _execute(self, query, params=None):
        cursor = self.conn.cursor()
        try:
            if params is None:
                cursor.execute(query)
            else:
                cursor.execute(query, params)
        finally:
            cursor.close()

    def _fetch_one(self, query):
        cursor = self.conn.cursor()
        try:
            cursor.execute(query)
            return cursor.fetchone()
        finally:
            cursor.close()

    def _fetch_all(self, query):
        cursor = self.conn.cursor()
        try:
            cursor.execute(query)
            return cursor.fetchall()
        finally:
            cursor.close()

    def close(self):
        self.conn.close()

    def lock(self):
        self._lock.acquire()

    def unlock(self):
        self._lock.release()

    def run(self, migration):
        if self.config.multi_statement_enabled:
            statements = iter_statements(
                migration, _MULTI_STMT_DELIMITER, self.config.multi_statement_max_size
            )
            for statement in statements:
                query = _text(statement)
                if not query.strip():
                    continue
                try:
                    self._execute(query)
                except Exception as exc:
                    raise DatabaseError(
                        orig_err=exc, err="migration failed", query=statement
                    ) from exc
            return

        data = migration.read()
        try:
            self._execute(_text(data))
        except Exception as exc:
            raise DatabaseError(orig_err=exc, err="migration failed", query=data) from exc

    def version(self):
        query = (
            f"SELECT version, dirty FROM `{self.config.migrations_table}` "
            "ORDER BY sequence DESC LIMIT 1"
        )
        try:
            row = self._fetch_one(query)
        except Exception as exc:
            raise DatabaseError(orig_err=exc, query=query.encode()) from exc
        if row is None:
            return NIL_VERSION, False
        return int(row[0]), int(row[1]) == 1

    def set_version(self, version, dirty):
        query = (
            f"INSERT INTO {self.config.migrations_table} "
            "(version, dirty, sequence) VALUES (?, ?, ?)"
        )
        try:
            self._execute(query, (version, 1 if dirty else 0, time.time_ns()))
        except Exception as exc:
            raise DatabaseError(orig_err=exc, query=query.encode()) from exc
        self.conn.commit()

    def _ensure_version_table(self):
        config = self.config
        self.lock()
        try:
            query = (
                f"SHOW TABLES FROM {config.database_name} "
                f"LIKE '{config.migrations_table}'"
            )
            try:
                row = self._fetch_one(query)
            except Exception as exc:
                raise DatabaseError(orig_err=exc, query=query.encode()) from exc
            if row is not None:
                return

            on_cluster = f" ON CLUSTER {config.cluster_name}" if config.cluster_name else ""
            query = (
                f"\n\t\t\tCREATE TABLE {config.migrations_table}{on_cluster} (\n"
                "\t\t\t\tversion    Int64,\n"
                "\t\t\t\tdirty      UInt8,\n"
                "\t\t\t\tsequence   UInt64\n"
                f"\t\t\t) Engine={config.migrations_table_engine}"
            )
            if config.migrations_table_engine.endswith("Tree"):
                query = f"{query} ORDER BY sequence"
            try:
                self._execute(query)
            except Exception as exc:
                raise DatabaseError(orig_err=exc, query=query.encode()) from exc
        finally:
            self.unlock()

    def drop(self):
        database = self.config.database_name
        query = f"SHOW TABLES FROM {database}"
        try:
            rows = self._fetch_all(query)
        except Exception as exc:
            raise DatabaseError(orig_err=exc, query=query.encode()) from exc
        for row in rows:
            statement = f"DROP TABLE IF EXISTS {database}.{row[0]}"
            try:
                self._execute(statement)
            except Exception as exc:
                raise DatabaseError(orig_err=exc, query=statement.encode()) from exc