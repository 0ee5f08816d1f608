"""Collecting statistics snapshots and writing them to the repository."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Mapping, Optional, Sequence

from pgstatsinfo.copy import FUNC_MAX_ARGS, CopyError, copy_rows
from pgstatsinfo.database import Connection, ExecStatus, QueryError, Result, Session
from pgstatsinfo.elog import Level
from pgstatsinfo.parsing import parse_int64
from pgstatsinfo.queue import QueueItem, QueueType
from pgstatsinfo.sql import (
    DATABASE_PUTS,
    INSTANCE_PUTS,
    SQL_CREATE_REPOLOG_PARTITION,
    SQL_CREATE_SNAPSHOT_PARTITION,
    SQL_INSERT_ALERT,
    SQL_INSERT_DATABASE,
    SQL_INSERT_LOG,
    SQL_NEW_SNAPSHOT,
    SQL_UPDATE_SNAPSHOT,
    is_copy_statement,
    needs_partition_date,
)

# Names of the instance-level queries run together in one transaction.
INSTANCE_GETS = (
    "device",
    "loadavg",
    "memory",
    "tablespace",
    "setting",
    "role",
    "profile",
    "lock",
    "bgwriter",
    "replication",
    "stat_replication_slots",
    "stat_io",
    "stat_wal",
    "xlog",
    "archive",
    "replication_slots",
    "wait_sampling_profile",
)

# Names of the per-database queries run together in one transaction.
DATABASE_GETS = ("schema", "table", "inherits", "function")

REQUIRED_QUERIES = (
    "activity",
    "long_transaction",
    "cpu",
    "database",
    *INSTANCE_GETS,
    "statement",
    "ht_info",
    "ht_info_except_ss",
    "plan",
    "rusage",
    *DATABASE_GETS,
    "column",
    "index",
    "reposize",
)

SQL_HAS_PG_STAT_STATEMENTS = (
    "SELECT relname FROM pg_class"
    " WHERE relname = 'pg_stat_statements' AND relkind = 'v'"
)
SQL_HAS_PG_STORE_PLANS = (
    "SELECT relname FROM pg_class"
    " WHERE relname = 'pg_store_plans' AND relkind = 'v'"
)
SQL_HAS_STATSREPO_ALERT = (
    "SELECT 1 FROM pg_proc, pg_namespace n"
    " WHERE nspname = 'statsrepo'"
    "   AND proname = 'alert'"
    "   AND pronamespace = n.oid"
    " LIMIT 1"
)
SQL_RUSAGE_ENABLED = (
    "SELECT 1 FROM pg_settings"
    " WHERE name = 'pg_statsinfo.rusage_track' AND setting IN ('all', 'top');"
)
SQL_COLLECT_COLUMN_ENABLED = (
    "SELECT 1 FROM pg_settings"
    " WHERE name = 'pg_statsinfo.collect_column' AND setting = 'on';"
)
SQL_COLLECT_INDEX_ENABLED = (
    "SELECT 1 FROM pg_settings"
    " WHERE name = 'pg_statsinfo.collect_index' AND setting = 'on';"
)
SQL_SET_PLAN_FORMAT = "SET pg_store_plans.plan_format TO 'raw'"
SQL_LOCK_INSTANCE = "LOCK TABLE statsrepo.instance IN SHARE MODE"
SQL_RUN_ALERT = "SELECT * FROM statsrepo.alert($1)"

_LOG_FIELDS = 27


def _local_timestamp() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def _get(session: Session, conn: Connection, sql: str, params: Sequence = ()) -> Optional[Result]:
    """Run a query; return its result only if it produced rows."""
    try:
        result = session.execute(conn, sql, params)
    except QueryError:
        return None
    if result is None or result.status is not ExecStatus.TUPLES_OK:
        return None
    return result


def _command(session: Session, conn: Connection, sql: str, params: Sequence = ()) -> ExecStatus:
    try:
        return session.command(conn, sql, params)
    except QueryError:
        return ExecStatus.FATAL_ERROR


def _commit(session: Session, conn: Connection) -> bool:
    try:
        return session.commit(conn)
    except QueryError:
        return False


def _rollback(session: Session, conn: Connection) -> None:
    try:
        session.rollback(conn)
    except QueryError:
        pass


def _exists(session: Session, conn: Connection, sql: str) -> bool:
    result = _get(session, conn, sql)
    return result is not None and result.ntuples > 0


def _gets(
    session: Session, conn: Connection, queries: Sequence[str], params: Sequence = ()
) -> Optional[list]:
    """Run queries in one transaction; return all results or None."""
    if _command(session, conn, "BEGIN") is not ExecStatus.COMMAND_OK:
        _rollback(session, conn)
        return None
    results = []
    for sql in queries:
        result = _get(session, conn, sql, params)
        if result is None:
            _rollback(session, conn)
            return None
        results.append(result)
    if not _commit(session, conn):
        _rollback(session, conn)
        return None
    return results


def _put(
    session: Session,
    conn: Connection,
    sql: str,
    result: Result,
    snapid: str,
    dbid: Optional[str] = None,
) -> bool:
    """Insert every row of a result, prefixed with the snapshot ids."""
    prefix = [snapid] if dbid is None else [snapid, dbid]
    if len(prefix) + result.nfields > FUNC_MAX_ARGS:
        session.reporter.elog(Level.WARNING, f"too many columns: {result.nfields}")
        return False
    for row in result.rows:
        status = _command(session, conn, sql, [*prefix, *row])
        if status not in (ExecStatus.COMMAND_OK, ExecStatus.TUPLES_OK):
            return False
    return True


def _puts(
    session: Session,
    conn: Connection,
    statements: Sequence[str],
    results: Sequence[Optional[Result]],
    snapid: str,
    dbid: Optional[str] = None,
    snap_date: Optional[str] = None,
) -> bool:
    """Write each collected result with the statement in the same position."""
    for sql, result in zip(statements, results):
        if result is None:
            continue
        try:
            if needs_partition_date(sql):
                copy_rows(session, conn, sql, result, snapid, dbid, snap_date)
            elif is_copy_statement(sql):
                copy_rows(session, conn, sql, result, snapid, dbid, None)
            elif not _put(session, conn, sql, result, snapid, dbid):
                return False
        except (CopyError, QueryError):
            return False
    return True


@dataclass(frozen=True)
class CpuStats:
    """Cumulative CPU counters from the previous snapshot."""

    user: int = 0
    system: int = 0
    idle: int = 0
    iowait: int = 0

    def as_param(self) -> str:
        """Format as the row literal passed to the CPU query."""
        return f"({self.user},{self.system},{self.idle},{self.iowait})"

    @classmethod
    def from_result(cls, result: Result) -> "CpuStats":
        """Read the counters from columns 1 to 4 of the first row."""

        def number(column: int) -> int:
            try:
                return parse_int64(result.value(0, column))
            except (ValueError, IndexError):
                return 0

        return cls(number(1), number(2), number(3), number(4))


@dataclass
class CollectorOptions:
    """Settings that shape what a snapshot collects."""

    excluded_dbnames: str = ""
    excluded_schemas: str = ""
    stat_statements_exclude_users: str = ""
    stat_statements_max: str = "30"
    enable_alert: bool = True
    alert_logging: bool = True
    db_max_retry: int = 3


class _WriteFailed(Exception):
    pass


class Snapshot(QueueItem):
    """Statistics collected at one point in time, ready to be written."""

    def __init__(
        self,
        start: str,
        dbnames: Result,
        instance: list,
        dbsnaps: list,
        reposize_query: str,
        comment: Optional[str] = None,
        enable_alert: bool = True,
        alert_logging: bool = True,
        clock: Callable[[], str] = _local_timestamp,
        on_alert: Optional[Callable[[str], None]] = None,
    ):
        super().__init__(QueueType.SNAPSHOT)
        self.start = start
        self.dbnames = dbnames
        self.instance = instance
        self.dbsnaps = dbsnaps
        self.reposize_query = reposize_query
        self.comment = comment
        self.enable_alert = enable_alert
        self.alert_logging = alert_logging
        self.clock = clock
        self.on_alert = on_alert

    def execute(self, session: Session, conn: Connection, instid: str) -> bool:
        """Insert the snapshot into the repository in one transaction."""
        session.reporter.elog(Level.DEBUG2, "write (snapshot)")
        try:
            alerts = self._write(session, conn, instid)
        except _WriteFailed:
            _rollback(session, conn)
            return False
        for message in alerts:
            if self.on_alert is not None:
                self.on_alert(message)
            else:
                session.reporter.elog(Level.LOG, message)
        return True

    def _write(self, session: Session, conn: Connection, instid: str) -> list[str]:
        def require(ok: bool) -> None:
            if not ok:
                raise _WriteFailed

        for sql in (SQL_CREATE_SNAPSHOT_PARTITION, SQL_CREATE_REPOLOG_PARTITION):
            require(_command(session, conn, sql, [self.start]) is ExecStatus.TUPLES_OK)
        require(_command(session, conn, "BEGIN") is ExecStatus.COMMAND_OK)
        # keep maintenance from running at the same time
        require(_command(session, conn, SQL_LOCK_INSTANCE) is ExecStatus.COMMAND_OK)

        repo_size = _get(session, conn, self.reposize_query)
        require(repo_size is not None)

        try:
            created = session.execute(conn, SQL_NEW_SNAPSHOT, [instid, self.start, self.comment])
        except QueryError:
            created = None
        require(created is not None and created.ntuples > 0 and created.nfields == 2)
        snapid = created.value(0, 0)
        snap_date = created.value(0, 1)

        require(_put(session, conn, SQL_INSERT_DATABASE, self.dbnames, snapid))
        require(_puts(session, conn, INSTANCE_PUTS, self.instance, snapid))
        for index, dbsnap in enumerate(self.dbsnaps):
            dbid = self.dbnames.value(index, 0)
            require(_puts(session, conn, DATABASE_PUTS, dbsnap, snapid, dbid, snap_date))

        messages: list[str] = []
        if self.enable_alert and _exists(session, conn, SQL_HAS_STATSREPO_ALERT):
            session.reporter.elog(Level.DEBUG2, f"run alert(snapid={snapid})")
            alerts = _get(session, conn, SQL_RUN_ALERT, [snapid])
            require(alerts is not None)
            require(_put(session, conn, SQL_INSERT_ALERT, alerts, snapid))
            messages = [alerts.value(row, 0) for row in range(alerts.ntuples)]
            if self.alert_logging:
                for message in messages:
                    fields: list[Optional[str]] = [None] * _LOG_FIELDS
                    fields[0] = instid
                    fields[1] = self.start
                    fields[12] = "ALERT"
                    fields[14] = message
                    status = _command(session, conn, SQL_INSERT_LOG, fields)
                    require(status is ExecStatus.COMMAND_OK)

        end = self.clock()
        status = _command(
            session,
            conn,
            SQL_UPDATE_SNAPSHOT,
            [snapid, end, self.start, repo_size.value(0, 0)],
        )
        require(status is ExecStatus.COMMAND_OK)
        require(_commit(session, conn))
        return messages


@dataclass
class _InstanceProgress:
    conn: Optional[Connection] = None
    activity: Optional[Result] = None
    long_xact: Optional[Result] = None
    cpuinfo: Optional[Result] = None
    cpu: CpuStats = field(default_factory=CpuStats)
    dbnames: Optional[Result] = None
    instance: Optional[list] = None


@dataclass
class _DatabaseProgress:
    name: str
    tables: Optional[list] = None
    column: Optional[Result] = None
    index: Optional[Result] = None


Connector = Callable[[Optional[str]], Optional[Connection]]


class SnapshotCollector:
    """Gathers instance and per-database statistics into Snapshots.

    ``connect`` opens a connection to the named database (None for the
    default one) or returns None; ``queries`` maps every name in
    REQUIRED_QUERIES to the SQL that collects it.
    """

    def __init__(
        self,
        session: Session,
        connect: Connector,
        queries: Mapping[str, str],
        options: Optional[CollectorOptions] = None,
        should_stop: Callable[[], bool] = lambda: False,
        delay: Callable[[], None] = lambda: None,
        clock: Callable[[], str] = _local_timestamp,
        on_alert: Optional[Callable[[str], None]] = None,
    ):
        missing = [name for name in REQUIRED_QUERIES if name not in queries]
        if missing:
            raise ValueError(f"missing collector queries: {', '.join(missing)}")
        self.session = session
        self.connect = connect
        self.queries = dict(queries)
        self.options = options if options is not None else CollectorOptions()
        self.should_stop = should_stop
        self.delay = delay
        self.clock = clock
        self.on_alert = on_alert
        self.prev_cpustats = CpuStats()

    def _retry(self, step, progress) -> bool:
        for _ in range(self.options.db_max_retry):
            if self.should_stop():
                return False
            if step(progress):
                return True
            self.delay()
        return False

    def _instance_step(self, p: _InstanceProgress) -> bool:
        conn = self.connect(None)
        if conn is None:
            return False
        p.conn = conn
        q = self.queries
        # activity, long transactions and CPU each run in their own transaction
        if p.activity is None:
            p.activity = _get(self.session, conn, q["activity"])
            if p.activity is None:
                return False
        if p.long_xact is None:
            p.long_xact = _get(self.session, conn, q["long_transaction"])
            if p.long_xact is None:
                return False
        if p.cpuinfo is None:
            p.cpuinfo = _get(self.session, conn, q["cpu"], [self.prev_cpustats.as_param()])
            if p.cpuinfo is None:
                return False
            p.cpu = CpuStats.from_result(p.cpuinfo)
        if p.dbnames is None:
            p.dbnames = _get(self.session, conn, q["database"], [self.options.excluded_dbnames])
            if p.dbnames is None:
                return False
        p.instance = _gets(self.session, conn, [q[name] for name in INSTANCE_GETS])
        return p.instance is not None

    def _database_step(self, p: _DatabaseProgress) -> bool:
        conn = self.connect(p.name)
        if conn is None:
            return False
        params = [self.options.excluded_schemas]
        if p.tables is None:
            p.tables = _gets(
                self.session, conn, [self.queries[name] for name in DATABASE_GETS], params
            )
            if p.tables is None:
                return False
        if _exists(self.session, conn, SQL_COLLECT_COLUMN_ENABLED) and p.column is None:
            p.column = _get(self.session, conn, self.queries["column"], params)
            if p.column is None:
                return False
        if _exists(self.session, conn, SQL_COLLECT_INDEX_ENABLED) and p.index is None:
            p.index = _get(self.session, conn, self.queries["index"], params)
            if p.index is None:
                return False
        return True

    def _statement_params(self) -> list[str]:
        return [self.options.stat_statements_exclude_users, self.options.stat_statements_max]

    def collect(self, comment: Optional[str] = None) -> Optional[Snapshot]:
        """Take a snapshot; return None when instance statistics are unavailable."""
        session = self.session
        q = self.queries
        session.reporter.elog(Level.DEBUG2, "snapshot (instance)")
        start = self.clock()

        progress = _InstanceProgress()
        self._retry(self._instance_step, progress)
        if progress.instance is None:
            return None
        conn = progress.conn

        instance = [progress.activity, progress.long_xact, progress.cpuinfo, *progress.instance]

        if _exists(session, conn, SQL_HAS_PG_STAT_STATEMENTS):
            instance.append(_get(session, conn, q["statement"], self._statement_params()))
            instance.append(_get(session, conn, q["ht_info"]))
        else:
            instance.append(None)
            instance.append(_get(session, conn, q["ht_info_except_ss"]))

        if _exists(session, conn, SQL_HAS_PG_STORE_PLANS):
            _command(session, conn, SQL_SET_PLAN_FORMAT)
            instance.append(_get(session, conn, q["plan"], self._statement_params()))
        else:
            instance.append(None)

        if _exists(session, conn, SQL_RUSAGE_ENABLED):
            instance.append(_get(session, conn, q["rusage"], self._statement_params()))
        else:
            instance.append(None)

        dbnames = progress.dbnames
        dbsnaps = []
        for row in range(dbnames.ntuples):
            name = dbnames.value(row, 1)
            session.reporter.elog(Level.DEBUG2, f"snapshot (database={name})")
            db_progress = _DatabaseProgress(name)
            self._retry(self._database_step, db_progress)
            tables = db_progress.tables or [None] * len(DATABASE_GETS)
            dbsnaps.append([*tables, db_progress.column, db_progress.index])

        self.prev_cpustats = progress.cpu
        return Snapshot(
            start=start,
            dbnames=dbnames,
            instance=instance,
            dbsnaps=dbsnaps,
            reposize_query=q["reposize"],
            comment=comment,
            enable_alert=self.options.enable_alert,
            alert_logging=self.options.alert_logging,
            clock=self.clock,
            on_alert=self.on_alert,
        )