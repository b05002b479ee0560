"""Migration driver for MongoDB databases."""

from __future__ import annotations

import os
import random
import re
import socket
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from urllib.parse import parse_qs, unquote, urlsplit, urlunsplit

import pymongo
from bson import json_util

from dbmigrate.driver import NIL_VERSION, Driver, LocalLock, parse_bool
from dbmigrate.errors import DatabaseError, LockedError

DEFAULT_MIGRATIONS_COLLECTION = "schema_migrations"
DEFAULT_LOCKING_COLLECTION = "migrate_advisory_lock"
DEFAULT_LOCK_TIMEOUT = 15
DEFAULT_LOCK_TIMEOUT_INTERVAL = 10
DEFAULT_ADVISORY_LOCKING_FLAG = True
LOCK_INDEX_NAME = "lock_unique_key"

_LOCK_KEY_UNIQUE_VALUE = 0
_SCHEMES = ("mongodb", "mongodb+srv")
_INTEGER = re.compile(r"[+-]?[0-9]+")

_INITIAL_INTERVAL = 0.5
_RANDOMIZATION_FACTOR = 0.5
_MULTIPLIER = 1.5


@dataclass
class Locking:
    collection_name: str = ""
    timeout: int = 0
    enabled: bool = False
    interval: int = 0


@dataclass
class Config:
    database_name: str = ""
    migrations_collection: str = ""
    transaction_mode: bool = False
    locking: Locking = field(default_factory=Locking)


def parse_boolean(url_param, default_value):
    """Parse a boolean URL option; an empty value gives the default."""
    if url_param:
        return parse_bool(url_param)
    return default_value


def parse_int(url_param, default_value):
    """Parse an integer URL option; an empty value gives the default."""
    if url_param:
        if not _INTEGER.fullmatch(url_param):
            raise ValueError(f'parsing "{url_param}": invalid syntax')
        return int(url_param)
    return default_value


def _strip_custom_options(url):
    """Return the URL without query options whose names start with x-."""
    parts = urlsplit(url)
    kept = [
        pair
        for pair in parts.query.split("&")
        if pair and not unquote(pair.partition("=")[0]).lower().startswith("x-")
    ]
    return urlunsplit(parts._replace(query="&".join(kept)))


def _retry(operation, max_elapsed, max_interval, sleep, clock):
    """Call operation until it succeeds, backing off exponentially.

    Raises the last error once the next wait would pass max_elapsed seconds.
    """
    start = clock()
    interval = _INITIAL_INTERVAL
    while True:
        try:
            operation()
            return
        except Exception as exc:
            last = exc
        delta = _RANDOMIZATION_FACTOR * interval
        wait = random.uniform(interval - delta, interval + delta)
        interval = min(interval * _MULTIPLIER, max_interval)
        if clock() - start + wait > max_elapsed:
            raise last
        sleep(wait)


def with_instance(client, config):
    """Wrap a connected client; prepares the lock and version collections."""
    if config is None:
        raise ValueError("no config")
    if not config.database_name:
        raise ValueError("no database name")
    if not config.migrations_collection:
        config.migrations_collection = DEFAULT_MIGRATIONS_COLLECTION
    locking = config.locking
    if not locking.collection_name:
        locking.collection_name = DEFAULT_LOCKING_COLLECTION
    if locking.timeout <= 0:
        locking.timeout = DEFAULT_LOCK_TIMEOUT
    if locking.interval <= 0:
        locking.interval = DEFAULT_LOCK_TIMEOUT_INTERVAL

    driver = Mongo()
    driver.client = client
    driver.db = client[config.database_name]
    driver.config = config

    if locking.enabled:
        driver._ensure_lock_table()
    driver._ensure_version_table()
    return driver


class Mongo(Driver):
    """MongoDB driver; ``client_factory`` turns a URI into a client."""

    def __init__(self, client_factory=None):
        self._client_factory = client_factory or pymongo.MongoClient
        self._lock = LocalLock()
        self.client = None
        self.db = None
        self.config = None
        self.sleep = time.sleep
        self.clock = time.monotonic

    def open(self, url):
        parts = urlsplit(url)
        if parts.scheme not in _SCHEMES:
            raise ValueError(f"scheme must be one of {', '.join(_SCHEMES)}")
        database = unquote(parts.path.lstrip("/"))
        if not database:
            raise ValueError("no database name")

        options = {
            key.lower(): values
            for key, values in parse_qs(parts.query, keep_blank_values=True).items()
        }

        def get(key):
            return options.get(key, [""])[0]

        migrations_collection = get("x-migrations-collection")
        lock_collection = get("x-advisory-lock-collection")
        transaction_mode = parse_boolean(get("x-transaction-mode"), False)
        advisory_locking = parse_boolean(
            get("x-advisory-locking"), DEFAULT_ADVISORY_LOCKING_FLAG
        )
        lock_timeout = parse_int(get("x-advisory-lock-timeout"), DEFAULT_LOCK_TIMEOUT)

        interval_value = get("x-advisory-lock-timeout-interval")
        # The misspelt option is still accepted, but not together with the right one.
        interval_from_typo = get("x-advisory-lock-timout-interval")
        if interval_value and interval_from_typo:
            raise ValueError(
                "both x-advisory-lock-timeout-interval and "
                "x-advisory-lock-timout-interval were specified"
            )
        if interval_from_typo:
            interval_value = interval_from_typo
        interval = parse_int(interval_value, DEFAULT_LOCK_TIMEOUT_INTERVAL)

        client = self._client_factory(_strip_custom_options(url))
        client.admin.command("ping")

        driver = with_instance(
            client,
            Config(
                database_name=database,
                migrations_collection=migrations_collection,
                transaction_mode=transaction_mode,
                locking=Locking(
                    collection_name=lock_collection,
                    timeout=lock_timeout,
                    enabled=advisory_locking,
                    interval=interval,
                ),
            ),
        )
        driver._client_factory = self._client_factory
        return driver

    def set_version(self, version, dirty):
        collection = self.db[self.config.migrations_collection]
        try:
            collection.drop()
        except Exception as exc:
            raise DatabaseError(
                orig_err=exc, err="drop migrations collection failed"
            ) from exc
        try:
            collection.insert_one({"version": version, "dirty": bool(dirty)})
        except Exception as exc:
            raise DatabaseError(orig_err=exc, err="save version failed") from exc

    def version(self):
        try:
            document = self.db[self.config.migrations_collection].find_one({})
        except Exception as exc:
            raise DatabaseError(
                orig_err=exc, err="failed to get migration version"
            ) from exc
        if document is None:
            return NIL_VERSION, False
        return int(document.get("version", 0)), bool(document.get("dirty", False))

    def run(self, migration):
        data = migration.read()
        try:
            commands = json_util.loads(data)
        except Exception as exc:
            raise ValueError(f"unmarshaling json error: {exc}") from exc
        if not isinstance(commands, list) or not all(
            isinstance(command, dict) for command in commands
        ):
            raise ValueError(
                "unmarshaling json error: expected an array of command documents"
            )
        if self.config.transaction_mode:
            self._execute_commands_with_transaction(commands)
        else:
            self._execute_commands(commands)

    def _execute_commands_with_transaction(self, commands):
        with self.client.start_session() as session:
            try:
                session.start_transaction()
            except Exception as exc:
                raise DatabaseError(
                    orig_err=exc, err="failed to start transaction"
                ) from exc
            # A failed command aborts the transaction on the server side.
            self._execute_commands(commands, session)
            try:
                session.commit_transaction()
            except Exception as exc:
                raise DatabaseError(
                    orig_err=exc, err="failed to commit transaction"
                ) from exc

    def _execute_commands(self, commands, session=None):
        for command in commands:
            try:
                self.db.command(command, session=session)
            except Exception as exc:
                raise DatabaseError(
                    orig_err=exc, err=f"failed to execute command:{command}"
                ) from exc

    def close(self):
        self.client.close()

    def drop(self):
        self.client.drop_database(self.config.database_name)

    def _ensure_lock_table(self):
        collection = self.db[self.config.locking.collection_name]
        collection.create_index(
            [("locking_key", -1)], unique=True, name=LOCK_INDEX_NAME
        )

    def _ensure_version_table(self):
        self.lock()
        try:
            self.version()
        finally:
            self.unlock()

    def lock(self):
        self._lock.acquire()
        try:
            self._acquire_advisory_lock()
        except BaseException:
            self._lock.release()
            raise

    def _acquire_advisory_lock(self):
        locking = self.config.locking
        if not locking.enabled:
            return
        try:
            hostname = socket.gethostname()
        except OSError as exc:
            hostname = f"Could not determine hostname. Error: {exc}"
        lock_document = {
            "locking_key": _LOCK_KEY_UNIQUE_VALUE,
            "pid": os.getpid(),
            "hostname": hostname,
            "created_at": datetime.now(timezone.utc),
        }
        collection = self.db[locking.collection_name]

        def insert():
            collection.insert_one(dict(lock_document))

        try:
            _retry(insert, locking.timeout, locking.interval, self.sleep, self.clock)
        except Exception as exc:
            raise LockedError() from exc

    def unlock(self):
        self._lock.release()
        try:
            if self.config.locking.enabled:
                collection = self.db[self.config.locking.collection_name]
                collection.delete_many({"locking_key": _LOCK_KEY_UNIQUE_VALUE})
        except BaseException:
            self._lock.acquire()
            raise