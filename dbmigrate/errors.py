"""Exceptions raised by database drivers."""

from __future__ import annotations


def _text(value) -> str:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", "replace")
    return str(value)


class DatabaseError(Exception):
    """An error raised while running a query against the database."""

    def __init__(self, orig_err=None, err="", query=b"", line=0):
        self.orig_err = orig_err
        self.err = err
        self.query = query
        self.line = line
        super().__init__(orig_err, err, query, line)

    def __str__(self) -> str:
        orig = "<nil>" if self.orig_err is None else str(self.orig_err)
        query = _text(self.query)
        if not self.err:
            return f"{orig} in line {self.line}: {query}"
        return f"{self.err} in line {self.line}: {query} (details: {orig})"


class LockedError(Exception):
    """The database lock is already held."""

    def __init__(self, message: str = "can't acquire lock"):
        super().__init__(message)


class NotLockedError(Exception):
    """The database lock was released while not held."""

    def __init__(self, message: str = "can't unlock, as not currently locked"):
        super().__init__(message)