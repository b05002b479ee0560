"""The driver interface, the driver registry and shared helpers."""

from __future__ import annotations

import abc
import contextlib
import threading
from urllib.parse import parse_qs

from dbmigrate.errors import DatabaseError, LockedError, NotLockedError

NIL_VERSION = -1

_TRUE_WORDS = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_WORDS = frozenset({"0", "f", "F", "FALSE", "false", "False"})

_drivers_lock = threading.RLock()
_drivers: dict[str, "Driver"] = {}


class Driver(abc.ABC):
    """The interface every database driver implements."""

    @abc.abstractmethod
    def open(self, url):
        """Return a new driver instance configured from the URL."""

    @abc.abstractmethod
    def close(self):
        """Close the underlying database connection."""

    @abc.abstractmethod
    def lock(self):
        """Acquire the migration lock; raise LockedError if it is held."""

    @abc.abstractmethod
    def unlock(self):
        """Release the migration lock."""

    @abc.abstractmethod
    def run(self, migration):
        """Apply a migration read from a file-like object."""

    @abc.abstractmethod
    def set_version(self, version, dirty):
        """Store the version and dirty state; version -1 means no version."""

    @abc.abstractmethod
    def version(self):
        """Return (version, dirty); version is NIL_VERSION when none applied."""

    @abc.abstractmethod
    def drop(self):
        """Delete everything in the database."""


class LocalLock:
    """An in-process lock that refuses to be taken or released twice."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locked = False

    @property
    def locked(self) -> bool:
        return self._locked

    def _swap(self, expected, error):
        with self._guard:
            if self._locked != expected:
                raise error()
            self._locked = not expected

    def acquire(self):
        self._swap(False, LockedError)

    def release(self):
        self._swap(True, NotLockedError)


class _LocallyLocked(Driver):
    """A driver whose lock lives in this process and that opens via ``connect``."""

    def __init__(self, connect=None):
        self._connect = connect
        self._lock = LocalLock()

    def _connector(self):
        if self._connect is None:
            raise RuntimeError("no connect function configured")
        return self._connect

    def lock(self):
        self._lock.acquire()

    def unlock(self):
        self._lock.release()

    @contextlib.contextmanager
    def _locked(self):
        self.lock()
        try:
            yield
        finally:
            self.unlock()


@contextlib.contextmanager
def _database_errors(query, err=""):
    """Turn any failure inside the block into a DatabaseError about ``query``."""
    try:
        yield
    except Exception as exc:
        data = query.encode() if isinstance(query, str) else query
        raise DatabaseError(orig_err=exc, err=err, query=data) from exc


def _as_text(value):
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8")
    return value


def _read_migration(migration):
    """Read a whole migration; return the raw data and its text."""
    data = migration.read()
    return data, _as_text(data)


def _query_getter(query):
    """Return a lookup giving the first value of a query option, or ""."""
    values = parse_qs(query, keep_blank_values=True)
    return lambda key: values.get(key, [""])[0]


def scheme_from_url(url):
    """Return the scheme of a URL, the text before its first colon."""
    if not url:
        raise ValueError("URL cannot be empty")
    index = url.find(":")
    if index < 1:
        raise ValueError("no scheme")
    return url[:index]


def register(name, driver):
    """Register a driver under a name; each name may be registered once."""
    if driver is None:
        raise ValueError("Register driver is nil")
    with _drivers_lock:
        if name in _drivers:
            raise ValueError(f"Register called twice for driver {name}")
        _drivers[name] = driver


def open_driver(url):
    """Open a new instance of the driver registered for the URL's scheme."""
    scheme = scheme_from_url(url)
    with _drivers_lock:
        driver = _drivers.get(scheme)
    if driver is None:
        raise ValueError(f"database driver: unknown driver {scheme} (forgotten import?)")
    return driver.open(url)


def list_drivers():
    """Return the names of the registered drivers."""
    with _drivers_lock:
        return list(_drivers)


def parse_bool(text):
    """Parse a boolean written the way URL options write them."""
    if text in _TRUE_WORDS:
        return True
    if text in _FALSE_WORDS:
        return False
    raise ValueError(f'parsing "{text}": invalid syntax')