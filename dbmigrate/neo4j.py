"""Migration driver for Neo4j graph databases."""

from __future__ import annotations

import re
from dataclasses import dataclass
from urllib.parse import parse_qs, unquote, urlsplit, urlunsplit

from dbmigrate.driver import NIL_VERSION, Driver, LocalLock, parse_bool
from dbmigrate.multistmt import iter_statements

DEFAULT_MIGRATIONS_LABEL = "SchemaMigration"
DEFAULT_MULTI_STATEMENT_MAX_SIZE = 10 * 1 << 20
STATEMENT_SEPARATOR = b";"

ACCESS_MODE_WRITE = "WRITE"
ACCESS_MODE_READ = "READ"

_INTEGER = re.compile(r"[+-]?[0-9]+")


@dataclass
class Config:
    migrations_label: str = ""
    multi_statement: bool = False
    multi_statement_max_size: int = 0


@dataclass
class MigrationRecord:
    version: int = NIL_VERSION
    dirty: bool = False


def _atoi(text):
    if not _INTEGER.fullmatch(text):
        raise ValueError(f'parsing "{text}": invalid syntax')
    return int(text)


def _text(value):
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8")
    return value


def with_instance(driver, config):
    """Wrap a connected graph driver; creates the version constraint if needed."""
    if config is None:
        raise ValueError("no config")
    instance = Neo4j()
    instance.driver = driver
    instance.config = config
    instance._ensure_version_constraint()
    return instance


class Neo4j(Driver):
    """Neo4j driver.

    ``connect(uri, auth, encrypted)`` returns a graph driver whose
    ``session(default_access_mode=...)`` gives sessions offering
    ``run(query, parameters)``, ``write_transaction(work)``,
    ``read_transaction(work)`` and ``close()``.
    """

    def __init__(self, connect=None):
        self._connect = connect
        self._lock = LocalLock()
        self.driver = None
        self.config = None

    def open(self, url):
        if self._connect is None:
            raise RuntimeError("no connect function configured")
        parts = urlsplit(url)
        username = unquote(parts.username or "")
        password = unquote(parts.password or "")
        values = parse_qs(parts.query, keep_blank_values=True)

        def get(key):
            return values.get(key, [""])[0]

        multi = False
        if get("x-multi-statement"):
            multi = parse_bool(get("x-multi-statement"))
        encrypted = False
        if get("x-tls-encrypted"):
            encrypted = parse_bool(get("x-tls-encrypted"))
        max_size = DEFAULT_MULTI_STATEMENT_MAX_SIZE
        if raw := get("x-multi-statement-max-size"):
            max_size = _atoi(raw)

        host = parts.netloc.rpartition("@")[2]
        uri = urlunsplit(("bolt", host, parts.path, "", parts.fragment))
        graph = self._connect(uri, (username, password), encrypted)

        instance = with_instance(
            graph,
            Config(
                migrations_label=DEFAULT_MIGRATIONS_LABEL,
                multi_statement=multi,
                multi_statement_max_size=max_size,
            ),
        )
        instance._connect = self._connect
        return instance

    def close(self):
        self.driver.close()

    # Neo4j has no database locking, so the lock is held in process only.
    def lock(self):
        self._lock.acquire()

    def unlock(self):
        self._lock.release()

    def _session(self, mode):
        return self.driver.session(default_access_mode=mode)

    def run(self, migration):
        session = self._session(ACCESS_MODE_WRITE)
        try:
            if self.config.multi_statement:
                session.write_transaction(lambda tx: self._run_statements(tx, migration))
                return
            body = _text(migration.read())
            list(session.run(body, None))
        finally:
            session.close()

    def _run_statements(self, tx, migration):
        statements = iter_statements(
            migration, STATEMENT_SEPARATOR, self.config.multi_statement_max_size
        )
        for statement in statements:
            text = _text(statement).strip()
            if not text:
                continue
            text = text.removesuffix(";")
            if not text:
                continue
            list(tx.run(text, None))

    def set_version(self, version, dirty):
        query = (
            f"MERGE (sm:{self.config.migrations_label} {{version: $version}}) "
            "SET sm.dirty = $dirty, sm.ts = datetime()"
        )
        session = self._session(ACCESS_MODE_WRITE)
        try:
            list(session.run(query, {"version": version, "dirty": bool(dirty)}))
        finally:
            session.close()

    def version(self):
        query = (
            f"MATCH (sm:{self.config.migrations_label}) "
            "RETURN sm.version AS version, sm.dirty AS dirty\n"
            "ORDER BY COALESCE(sm.ts, datetime({year: 0})) DESC, "
            "sm.version DESC LIMIT 1"
        )

        def work(tx):
            record = next(iter(tx.run(query, None)), None)
            if record is None:
                return None
            version = record.get("version")
            dirty = record.get("dirty")
            return MigrationRecord(
                version=NIL_VERSION if version is None else int(version),
                dirty=False if dirty is None else bool(dirty),
            )

        session = self._session(ACCESS_MODE_READ)
        try:
            result = session.read_transaction(work)
        finally:
            session.close()
        if result is None:
            return NIL_VERSION, False
        return result.version, result.dirty

    def drop(self):
        session = self._session(ACCESS_MODE_WRITE)
        try:
            list(session.run("MATCH (n) DETACH DELETE n", None))
        finally:
            session.close()

    def _ensure_version_constraint(self):
        label = self.config.migrations_label
        session = self._session(ACCESS_MODE_WRITE)
        try:
            # db.labels() works on both Neo4j 3 and 4.
            labels = list(
                session.run(
                    f'CALL db.labels() YIELD label WHERE label="{label}" RETURN label',
                    None,
                )
            )
            if len(labels) == 1:
                return
            query = f"CREATE CONSTRAINT ON (a:{label}) ASSERT a.version IS UNIQUE"
            list(session.run(query, None))
        finally:
            session.close()