from dbmigrate.errors import DatabaseError, LockedError, NotLockedError


def test_message_without_err_text():
    error = DatabaseError(orig_err=ValueError("boom"), query=b"SELECT 1", line=3)
    assert str(error) == "boom in line 3: SELECT 1"


def test_message_with_err_text():
    error = DatabaseError(orig_err=ValueError("boom"), err="migration failed", query=b"SELECT 1")
    assert str(error) == "migration failed in line 0: SELECT 1 (details: boom)"


def test_message_accepts_str_query():
    error = DatabaseError(orig_err="bad", err="oops", query="DROP x", line=7)
    assert str(error).startswith("oops in line 7: DROP x")
    assert str(error).endswith("(details: bad)")


def test_missing_orig_err_is_shown_as_nil():
    error = DatabaseError(query=b"Q")
    assert str(error) == "<nil> in line 0: Q"


def test_attributes_are_kept():
    cause = RuntimeError("x")
    error = DatabaseError(cause, "e", b"q", 4)
    assert error.orig_err is cause
    assert error.err == "e"
    assert error.query == b"q"
    assert error.line == 4


def test_database_error_is_an_exception_with_message():
    error = DatabaseError(orig_err="cause", err="failed", query=b"SELECT")
    assert isinstance(error, Exception)
    assert error.err == "failed"
    assert str(error) == "failed in line 0: SELECT (details: cause)"


def test_lock_error_messages():
    assert str(LockedError()) == "can't acquire lock"
    assert str(NotLockedError()) == "can't unlock, as not currently locked"