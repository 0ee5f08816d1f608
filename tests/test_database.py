import io

import pytest

from pgstatsinfo.database import (
    Connection,
    ExecStatus,
    QueryError,
    Result,
    Session,
    TransactionStatus,
    YesNo,
)
from pgstatsinfo.elog import Level, Reporter


class FakeBackend:
    def __init__(self, info):
        self.info = info
        self.queries = []
        self.responses = {}
        self.transaction_status = TransactionStatus.IDLE
        self.closed = False
        self.cancelled = 0
        self.hook = None

    def execute(self, query, params):
        self.queries.append((query, params))
        if self.hook is not None:
            self.hook()
        if query == "BEGIN":
            self.transaction_status = TransactionStatus.INTRANS
        elif query in ("COMMIT", "ROLLBACK"):
            self.transaction_status = TransactionStatus.IDLE
        return self.responses.get(query, Result(ExecStatus.COMMAND_OK))

    def cancel(self):
        self.cancelled += 1
        return True

    def close(self):
        self.closed = True


class NeedsPassword(Exception):
    needs_password = True


class Factory:
    def __init__(self, fail_until_password=False, always_fail=False):
        self.backends = []
        self.infos = []
        self.fail_until_password = fail_until_password
        self.always_fail = always_fail

    def __call__(self, info):
        self.infos.append(info)
        if self.always_fail:
            raise RuntimeError("refused")
        if self.fail_until_password and "password=" not in info:
            raise NeedsPassword("password required")
        backend = FakeBackend(info)
        self.backends.append(backend)
        return backend


def make_session(factory=None, **kwargs):
    stream = io.StringIO()
    session = Session(
        connector=factory or Factory(),
        reporter=Reporter(stream=stream),
        **kwargs,
    )
    return session, stream


def test_execute_returns_result():
    factory = Factory()
    session, _ = make_session(factory)
    conn = session.connect("dbname=repo")
    rows = Result(ExecStatus.TUPLES_OK, rows=[("1", None)], columns=("a", "b"))
    factory.backends[0].responses["SELECT 1"] = rows
    result = session.execute(conn, "SELECT 1", ["x"])
    assert result is rows
    assert factory.backends[0].queries == [("SELECT 1", ("x",))]


def test_result_value_and_null():
    result = Result(ExecStatus.TUPLES_OK, rows=[("t", None)], columns=("a", "b"))
    assert result.value(0, 0) == "t"
    assert result.value(0, 1) == ""
    assert result.is_null(0, 1)
    assert not result.is_null(0, 0)
    assert (result.ntuples, result.nfields) == (1, 2)


def test_failed_query_raises_at_error_level():
    factory = Factory()
    session, stream = make_session(factory)
    conn = session.connect("dbname=repo")
    factory.backends[0].responses["BAD"] = Result(
        ExecStatus.FATAL_ERROR, error_message="syntax error"
    )
    with pytest.raises(QueryError) as info:
        session.execute(conn, "BAD")
    assert info.value.message == "query failed: syntax error"
    assert info.value.detail == "query was: BAD"
    assert info.value.result.status is ExecStatus.FATAL_ERROR
    assert "ERROR: query failed: syntax error\nDETAIL: query was: BAD" in stream.getvalue()


def test_failed_query_below_abort_level_returns_result():
    factory = Factory()
    session, stream = make_session(factory, error_level=Level.WARNING)
    conn = session.connect("dbname=repo")
    factory.backends[0].responses["BAD"] = Result(
        ExecStatus.FATAL_ERROR, error_message="oops"
    )
    assert session.command(conn, "BAD") is ExecStatus.FATAL_ERROR
    assert stream.getvalue().startswith("WARNING: query failed: oops")


def test_execute_without_connection():
    session, _ = make_session()
    with pytest.raises(QueryError, match="not connected"):
        session.execute(None, "SELECT 1")


def test_command_without_connection_below_abort_level():
    session, _ = make_session(error_level=Level.WARNING)
    assert session.command(None, "SELECT 1") is ExecStatus.FATAL_ERROR


def test_commit_when_idle_does_nothing():
    factory = Factory()
    session, _ = make_session(factory)
    conn = session.connect("dbname=repo")
    assert session.commit(conn) is True
    assert factory.backends[0].queries == []


def test_commit_and_rollback_in_transaction():
    factory = Factory()
    session, _ = make_session(factory)
    conn = session.connect("dbname=repo")
    session.command(conn, "BEGIN")
    assert conn.transaction_status is TransactionStatus.INTRANS
    assert session.commit(conn) is True
    session.command(conn, "BEGIN")
    session.rollback(conn)
    assert [q for q, _ in factory.backends[0].queries] == [
        "BEGIN", "COMMIT", "BEGIN", "ROLLBACK"
    ]


def test_rollback_when_idle_does_nothing():
    factory = Factory()
    session, _ = make_session(factory)
    conn = session.connect("dbname=repo")
    session.rollback(conn)
    assert factory.backends[0].queries == []


def test_connect_failure_raises():
    session, _ = make_session(Factory(always_fail=True))
    with pytest.raises(QueryError) as info:
        session.connect("dbname=repo")
    assert info.value.message.startswith(
        'could not connect to database with "dbname=repo": '
    )
    assert session.connections == []


def test_connect_failure_below_abort_level_returns_none():
    session, stream = make_session(Factory(always_fail=True), connect_level=Level.WARNING)
    assert session.connect("dbname=repo") is None
    assert "could not connect to database" in stream.getvalue()


def test_connect_prompts_for_password_when_needed():
    password = "password"
    factory = Factory(fail_until_password=True)
    session, _ = make_session(factory, password_reader=lambda: password)
    conn = session.connect("dbname=repo")
    assert isinstance(conn, Connection)
    assert factory.infos == ["dbname=repo", "dbname=repo password=password "]
    assert conn.info == "dbname=repo"


def test_connect_without_prompt_fails_when_password_needed():
    factory = Factory(fail_until_password=True)
    session, _ = make_session(factory, prompt=YesNo.NO)
    with pytest.raises(QueryError):
        session.connect("dbname=repo")
    assert factory.infos == ["dbname=repo"]


def test_connect_prompt_yes_asks_first():
    password = "password"
    factory = Factory()
    session, _ = make_session(factory, prompt=YesNo.YES, password_reader=lambda: password)
    session.connect("dbname=repo")
    assert factory.infos == ["dbname=repo password=password "]


def test_disconnect_and_disconnect_all():
    factory = Factory()
    session, _ = make_session(factory)
    first = session.connect("dbname=a")
    second = session.connect("dbname=b")
    session.disconnect(first)
    assert factory.backends[0].closed
    assert session.connections == [second]
    session.disconnect_all()
    assert factory.backends[1].closed
    assert session.connections == []


def test_context_manager_closes_connections():
    factory = Factory()
    session, _ = make_session(factory)
    with session:
        session.connect("dbname=a")
    assert factory.backends[0].closed
    assert session.in_cleanup


def test_interrupt_cancels_running_query():
    factory = Factory()
    session, stream = make_session(factory)
    conn = session.connect("dbname=a")
    factory.backends[0].hook = session.interrupt
    session.execute(conn, "SELECT pg_sleep(10)")
    assert factory.backends[0].cancelled == 1
    assert "WARNING: Cancel request sent" in stream.getvalue()
    with pytest.raises(QueryError) as info:
        session.execute(conn, "SELECT 1")
    assert info.value.message == "interrupted"
    assert info.value.level == Level.FATAL


def test_interrupt_when_idle_sends_no_cancel():
    factory = Factory()
    session, _ = make_session(factory)
    session.connect("dbname=a")
    session.interrupt()
    assert factory.backends[0].cancelled == 0
    assert session.interrupted


def test_echo_logs_query_and_params():
    factory = Factory()
    session, stream = make_session(factory, echo=True)
    conn = session.connect("dbname=a")
    session.execute(conn, "SELECT $1, $2", ["v", None])
    output = stream.getvalue()
    assert "LOG: (query) SELECT $1, $2" in output
    assert "(param:0) = v" in output
    assert "(param:1) = (null)" in output