import io

import pytest

from pgstatsinfo.database import Connection, ExecStatus, Result, Session, TransactionStatus
from pgstatsinfo.elog import Reporter
from pgstatsinfo.queue import QueueType
from pgstatsinfo.snapshot import (
    DATABASE_GETS,
    INSTANCE_GETS,
    REQUIRED_QUERIES,
    CollectorOptions,
    CpuStats,
    Snapshot,
    SnapshotCollector,
)
from pgstatsinfo.sql import (
    INSTANCE_PUTS,
    SQL_INSERT_ALERT,
    SQL_INSERT_DATABASE,
    SQL_INSERT_LOG,
    SQL_NEW_SNAPSHOT,
    SQL_UPDATE_SNAPSHOT,
)

QUERIES = {name: f"SELECT {name}" for name in REQUIRED_QUERIES}


class FakeBackend:
    def __init__(self, overrides=None):
        self.overrides = overrides or {}
        self.calls = []
        self.copied = []
        self.status = TransactionStatus.IDLE

    @property
    def transaction_status(self):
        return self.status

    def execute(self, query, params):
        self.calls.append((query, tuple(params)))
        if query.startswith("BEGIN"):
            self.status = TransactionStatus.INTRANS
            return Result(ExecStatus.COMMAND_OK)
        if query in ("COMMIT", "ROLLBACK"):
            self.status = TransactionStatus.IDLE
            return Result(ExecStatus.COMMAND_OK)
        for key, result in self.overrides.items():
            if key in query:
                return result
        if query.startswith("COPY"):
            return Result(ExecStatus.COPY_IN)
        if query.startswith(("INSERT", "UPDATE", "LOCK", "SET")):
            return Result(ExecStatus.COMMAND_OK)
        return Result(ExecStatus.TUPLES_OK, rows=[("x",)], columns=("c",))

    def put_copy_data(self, data):
        self.copied.append(data)
        return True

    def put_copy_end(self, error=None):
        return True

    def cancel(self):
        return False

    def close(self):
        pass


def collect_overrides(cpu_row=("cpu", "11", "22", "33", "44")):
    return {
        "SELECT cpu": Result(ExecStatus.TUPLES_OK, rows=[cpu_row], columns=("a", "b", "c", "d", "e")),
        "SELECT database": Result(ExecStatus.TUPLES_OK, rows=[("1", "db1")], columns=("dbid", "name")),
    }


def make_session():
    return Session(connector=lambda info: FakeBackend(), reporter=Reporter(stream=io.StringIO()))


def make_collector(backend, **kwargs):
    conn = Connection(backend, "info")
    requested = []

    def connect(db):
        requested.append(db)
        return conn

    collector = SnapshotCollector(
        make_session(), connect, QUERIES, clock=lambda: "2024-01-01 00:00:00", **kwargs
    )
    return collector, requested


def write_backend(extra=None):
    overrides = {
        "INSERT INTO statsrepo.snapshot(": Result(
            ExecStatus.TUPLES_OK, rows=[("7", "2024-01-01")], columns=("snapid", "date")
        ),
    }
    overrides.update(extra or {})
    return FakeBackend(overrides)


def test_cpu_stats_param_format():
    assert CpuStats(1, 2, 3, 4).as_param() == "(1,2,3,4)"
    assert CpuStats().as_param() == "(0,0,0,0)"


def test_missing_query_rejected():
    queries = dict(QUERIES)
    del queries["cpu"]
    with pytest.raises(ValueError):
        SnapshotCollector(make_session(), lambda db: None, queries)


def test_collect_builds_full_snapshot():
    backend = FakeBackend(collect_overrides())
    collector, requested = make_collector(backend)
    snap = collector.collect("hello")
    assert isinstance(snap, Snapshot)
    assert snap.item_type is QueueType.SNAPSHOT
    assert snap.comment == "hello"
    assert snap.start == "2024-01-01 00:00:00"
    assert len(snap.instance) == len(INSTANCE_PUTS)
    assert all(result is not None for result in snap.instance)
    assert len(snap.dbsnaps) == 1
    assert len(snap.dbsnaps[0]) == len(DATABASE_GETS) + 2
    assert all(result is not None for result in snap.dbsnaps[0])
    assert requested == [None, "db1"]


def test_collect_sends_previous_cpu_counters():
    backend = FakeBackend(collect_overrides())
    collector, _ = make_collector(backend)
    collector.collect()
    assert ("SELECT cpu", ("(0,0,0,0)",)) in backend.calls
    assert collector.prev_cpustats == CpuStats(11, 22, 33, 44)
    backend.calls.clear()
    collector.collect()
    assert ("SELECT cpu", (CpuStats(11, 22, 33, 44).as_param(),)) in backend.calls


def test_collect_without_pg_stat_statements():
    overrides = collect_overrides()
    overrides["relname = 'pg_stat_statements'"] = Result(ExecStatus.TUPLES_OK, columns=("relname",))
    backend = FakeBackend(overrides)
    collector, _ = make_collector(backend)
    snap = collector.collect()
    statement_slot = len(INSTANCE_GETS) + 3
    assert snap.instance[statement_slot] is None
    queries = [query for query, _ in backend.calls]
    assert QUERIES["ht_info_except_ss"] in queries
    assert QUERIES["statement"] not in queries


def test_collect_gives_up_when_connection_fails():
    delays = []
    collector = SnapshotCollector(
        make_session(),
        lambda db: None,
        QUERIES,
        CollectorOptions(db_max_retry=2),
        delay=lambda: delays.append(1),
    )
    assert collector.collect() is None
    assert len(delays) == 2


def test_collect_stops_when_asked():
    backend = FakeBackend(collect_overrides())
    collector, requested = make_collector(backend, should_stop=lambda: True)
    assert collector.collect() is None
    assert requested == []


def test_execute_writes_snapshot():
    collector, _ = make_collector(FakeBackend(collect_overrides()))
    snap = collector.collect("note")
    snap.on_alert = lambda message: None
    backend = write_backend()
    session = make_session()
    assert snap.execute(session, Connection(backend, "repo"), "5") is True
    assert (SQL_NEW_SNAPSHOT, ("5", "2024-01-01 00:00:00", "note")) in backend.calls
    assert (SQL_INSERT_DATABASE, ("7", "1", "db1")) in backend.calls
    queries = [query for query, _ in backend.calls]
    for sql in INSTANCE_PUTS:
        assert sql in queries
    assert backend.copied
    assert all(line.startswith("7\t1\t") for line in backend.copied)
    assert any(query == SQL_UPDATE_SNAPSHOT for query in queries)
    assert queries[-1] == "COMMIT"


def test_execute_records_alerts():
    collector, _ = make_collector(FakeBackend(collect_overrides()))
    snap = collector.collect()
    alerts = []
    snap.on_alert = alerts.append
    backend = write_backend(
        {"statsrepo.alert($1)": Result(ExecStatus.TUPLES_OK, rows=[("too busy",)], columns=("m",))}
    )
    assert snap.execute(make_session(), Connection(backend, "repo"), "5") is True
    assert alerts == ["too busy"]
    assert (SQL_INSERT_ALERT, ("7", "too busy")) in backend.calls
    log_params = [params for query, params in backend.calls if query == SQL_INSERT_LOG]
    assert len(log_params) == 1
    assert log_params[0][0] == "5"
    assert log_params[0][12] == "ALERT"
    assert log_params[0][14] == "too busy"


def test_execute_rolls_back_without_snapshot_id():
    collector, _ = make_collector(FakeBackend(collect_overrides()))
    snap = collector.collect()
    backend = write_backend(
        {"INSERT INTO statsrepo.snapshot(": Result(ExecStatus.TUPLES_OK, columns=("a", "b"))}
    )
    assert snap.execute(make_session(), Connection(backend, "repo"), "5") is False
    assert backend.calls[-1][0] == "ROLLBACK"


def test_execute_rolls_back_on_failed_insert():
    collector, _ = make_collector(FakeBackend(collect_overrides()))
    snap = collector.collect()
    backend = write_backend(
        {"INSERT INTO statsrepo.database": Result(ExecStatus.FATAL_ERROR, error_message="boom")}
    )
    assert snap.execute(make_session(), Connection(backend, "repo"), "5") is False
    queries = [query for query, _ in backend.calls]
    assert queries[-1] == "ROLLBACK"
    assert "COMMIT" not in queries