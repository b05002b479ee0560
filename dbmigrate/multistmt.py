"""Splitting multi-statement migrations into single statements."""

from __future__ import annotations

START_BUF_SIZE = 4096


class MigrationTooLargeError(ValueError):
    """A single statement does not fit within the allowed size."""


def _matching(delimiter, sample):
    if isinstance(sample, str) and isinstance(delimiter, (bytes, bytearray)):
        return bytes(delimiter).decode("utf-8")
    if isinstance(sample, (bytes, bytearray)) and isinstance(delimiter, str):
        return delimiter.encode("utf-8")
    return delimiter


def iter_statements(reader, delimiter, max_migration_size):
    """Yield the statements of a migration, each with its delimiter.

    The last statement is yielded without a delimiter when the input does
    not end with one. Items have the type that ``reader.read`` returns.
    """
    if not delimiter:
        raise ValueError("delimiter must not be empty")
    pending = None
    delim = delimiter
    at_eof = False
    while True:
        if pending:
            index = pending.find(delim)
            if index >= 0:
                end = index + len(delim)
                yield pending[:end]
                pending = pending[end:]
                continue
        if at_eof:
            if pending:
                yield pending
            return
        size = len(pending) if pending is not None else 0
        if size >= max_migration_size:
            raise MigrationTooLargeError(
                f"statement longer than {max_migration_size} bytes"
            )
        chunk = reader.read(min(START_BUF_SIZE, max_migration_size - size))
        if not chunk:
            at_eof = True
            continue
        if pending is None:
            delim = _matching(delimiter, chunk)
            pending = chunk
        else:
            pending += chunk


def parse(reader, delimiter, max_migration_size, handler):
    """Pass each statement to handler until it returns a false value."""
    for statement in iter_statements(reader, delimiter, max_migration_size):
        if not handler(statement):
            break