import io

import pytest

from dbmigrate.multistmt import (
    START_BUF_SIZE,
    MigrationTooLargeError,
    iter_statements,
    parse,
)

MAX_MIGRATION_SIZE = 1024

CASES = [
    ("single statement, no delimiter", ";", ["single statement, no delimiter"]),
    ("single statement, one delimiter;", ";", ["single statement, one delimiter;"]),
    ("statement one; statement two", ";", ["statement one;", " statement two"]),
    ("statement one; statement two;", ";", ["statement one;", " statement two;"]),
]


@pytest.mark.parametrize("multi_stmt, delimiter, expected", CASES)
def test_iter_statements_cases(multi_stmt, delimiter, expected):
    result = list(iter_statements(io.StringIO(multi_stmt), delimiter, MAX_MIGRATION_SIZE))
    assert result == expected


@pytest.mark.parametrize("multi_stmt, delimiter, expected", CASES)
def test_parse(multi_stmt, delimiter, expected):
    statements = []

    def handler(statement):
        statements.append(statement)
        return True

    parse(io.StringIO(multi_stmt), delimiter, MAX_MIGRATION_SIZE, handler)
    assert statements == list(
        iter_statements(io.StringIO(multi_stmt), delimiter, MAX_MIGRATION_SIZE)
    )
    assert statements == expected


def test_parse_discontinue():
    text = "statement one; statement two"
    statements = []

    def handler(statement):
        statements.append(statement)
        return False

    parse(io.StringIO(text), ";", MAX_MIGRATION_SIZE, handler)
    all_statements = list(iter_statements(io.StringIO(text), ";", MAX_MIGRATION_SIZE))
    assert statements == all_statements[:1]
    assert statements == ["statement one;"]


def test_bytes_reader_with_bytes_delimiter():
    result = list(iter_statements(io.BytesIO(b"a;b;"), b";", MAX_MIGRATION_SIZE))
    assert result == [b"a;", b"b;"]


def test_bytes_reader_with_str_delimiter():
    result = list(iter_statements(io.BytesIO(b"a;b"), ";", MAX_MIGRATION_SIZE))
    assert result == [b"a;", b"b"]


def test_empty_input_yields_nothing():
    assert list(iter_statements(io.StringIO(""), ";", MAX_MIGRATION_SIZE)) == []


def test_multi_byte_delimiter():
    result = list(iter_statements(io.StringIO("x GO y GO"), " GO", MAX_MIGRATION_SIZE))
    assert result == ["x GO", " y GO"]


def test_statement_too_large():
    with pytest.raises(MigrationTooLargeError):
        list(iter_statements(io.StringIO("a" * 50 + ";"), ";", 10))


def test_too_large_error_reaches_parse():
    with pytest.raises(MigrationTooLargeError):
        parse(io.StringIO("b" * 20), ";", 10, lambda statement: True)


def test_large_input_across_chunks_round_trips():
    text = "".join(f"statement {n};" for n in range(2000))
    assert len(text) > START_BUF_SIZE
    result = list(iter_statements(io.StringIO(text), ";", MAX_MIGRATION_SIZE))
    assert "".join(result) == text
    assert len(result) == 2000
    assert all(statement.endswith(";") for statement in result)


def test_empty_delimiter_rejected():
    with pytest.raises(ValueError):
        list(iter_statements(io.StringIO("a"), "", MAX_MIGRATION_SIZE))