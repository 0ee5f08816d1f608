"""The writer: keeps the repository connection and drains the writer queue."""

from __future__ import annotations

import platform
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from functools import lru_cache
from typing import Callable, Optional, Sequence

from pgstatsinfo.database import Connection, ExecStatus, QueryError, Result, Session
from pgstatsinfo.elog import ElogError, Level
from pgstatsinfo.parsing import parse_uint32
from pgstatsinfo.queue import QueueItem, QueueType, WriterQueue

WRITER_CONN_KEEP_SECS = 60
WRITER_RECONNECT_DELAY = 10
WRITER_LOOP_INTERVAL = 0.2

SQLSTATE_UNDEFINED_FUNCTION = "42883"

SQL_SELECT_INSTANCE = (
    "SELECT instid, pg_version FROM statsrepo.instance"
    " WHERE name = $1 AND hostname = $2 AND port = $3"
)
SQL_UPDATE_INSTANCE_VERSION = (
    "UPDATE statsrepo.instance SET pg_version = $1 WHERE instid = $2"
)
SQL_INSERT_INSTANCE = (
    "INSERT INTO statsrepo.instance "
    "(name, hostname, port, pg_version, xlog_file_size, page_size,"
    " page_header_size, htup_header_size, item_id_size) "
    "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9) RETURNING instid"
)
SQL_SELECT_ROLSUPER = "SELECT rolsuper FROM pg_roles WHERE rolname = current_user"
SQL_SCHEMA_EXISTS = "SELECT nspname FROM pg_namespace WHERE nspname = 'statsrepo'"
SQL_SCHEMA_VERSION = "SELECT statsrepo.get_version()"
SQL_LOG_SETTINGS = (
    "SELECT current_setting('log_statement'), pg_postmaster_start_time()"
)
SUPERUSER_OPTIONS = "options='-c log_statement=none'"


class RepositoryState(Enum):
    """Outcome of validating the repository server."""

    OK = "ok"
    CONNECT_FAILURE = "connect_failure"
    INVALID_DATABASE = "invalid_database"


class WriterState(IntEnum):
    """Operating mode of the writer."""

    READY = 0
    NORMAL = 1
    FALLBACK = 2


@lru_cache(maxsize=None)
def node_name() -> str:
    """Return the host name of this machine, or "unknown"."""
    return platform.node() or "unknown"


EnsureSchema = Callable[[Session, Connection, str], bool]


@dataclass
class Writer:
    """Writes queued items into the repository database.

    ``ensure_schema`` installs the repository schema when it is missing and
    returns whether the schema is usable; when None the schema is taken as
    installed.
    """

    session: Session
    repository_server: str
    instance_id: str
    port: str
    server_version: str
    schema_version: int
    queue: WriterQueue = field(default_factory=WriterQueue)
    postmaster_start_time: str = ""
    page_size: int = 8192
    xlog_seg_size: int = 16 * 1024 * 1024
    page_header_size: int = 24
    htup_header_size: int = 23
    item_id_size: int = 4
    logstore_enabled: bool = True
    ensure_schema: Optional[EnsureSchema] = None
    shutdown_requested: Callable[[], bool] = lambda: False
    on_logstore_ignored: Optional[Callable[[QueueItem], None]] = None
    db_max_retry: int = 3
    retry_delay: float = 1.0
    reconnect_delay: float = WRITER_RECONNECT_DELAY
    sleep: Callable[[float], None] = time.sleep
    clock: Callable[[], float] = time.time
    state: WriterState = field(default=WriterState.READY, init=False)
    repository_state: Optional[RepositoryState] = field(default=None, init=False)
    conn: Optional[Connection] = field(default=None, init=False)
    conn_last_used: float = field(default=0.0, init=False)
    superuser_connect: bool = field(default=False, init=False)
    ignore_logstore: bool = field(default=False, init=False)
    _conn_info: Optional[str] = field(default=None, init=False, repr=False)
    _reload_pending: bool = field(default=True, init=False, repr=False)

    # ---- reporting -------------------------------------------------------

    def _log(self, level: int, message: str, detail: Optional[str] = None) -> None:
        """Report a message without letting it abort the writer."""
        try:
            self.session.reporter.elog(level, message, detail)
        except ElogError:
            pass

    def _set_state(self, state: WriterState) -> None:
        if state is WriterState.NORMAL:
            level = Level.LOG if self.state > WriterState.NORMAL else Level.DEBUG2
            self._log(level, "pg_statsinfo is starting in normal mode")
        elif state is WriterState.FALLBACK:
            level = Level.LOG if self.state < WriterState.FALLBACK else Level.DEBUG2
            self._log(level, "pg_statsinfo is starting in fallback mode")
        self.state = state

    # ---- query helpers ---------------------------------------------------

    def _execute(
        self, conn: Connection, query: str, params: Sequence[Optional[str]] = ()
    ) -> Optional[Result]:
        try:
            return self.session.execute(conn, query, params)
        except QueryError:
            return None

    def _command(
        self, conn: Connection, query: str, params: Sequence[Optional[str]] = ()
    ) -> ExecStatus:
        result = self._execute(conn, query, params)
        return ExecStatus.FATAL_ERROR if result is None else result.status

    def _commit(self, conn: Connection) -> bool:
        try:
            return self.session.commit(conn)
        except QueryError:
            return False

    def _rollback(self, conn: Connection) -> None:
        try:
            self.session.rollback(conn)
        except QueryError:
            pass

    # ---- connection ------------------------------------------------------

    def reload(self, repository_server: Optional[str] = None) -> None:
        """Take new settings; the repository is validated on the next cycle."""
        if repository_server is not None:
            self.repository_server = repository_server
        self._reload_pending = True

    def _delay_reconnect(self) -> None:
        if not self.shutdown_requested():
            self.sleep(self.reconnect_delay)

    def _open(self, info: str) -> Optional[Connection]:
        if self.conn is not None and not self.conn.closed and self._conn_info == info:
            return self.conn
        self._disconnect()
        try:
            conn = self.session.connect(info)
        except QueryError:
            conn = None
        if conn is not None:
            self.conn = conn
            self._conn_info = info
        return conn

    def _connect(self, superuser: bool) -> Optional[Connection]:
        info = self.repository_server
        if superuser:
            info = f"{info} {SUPERUSER_OPTIONS}"
        retry = 0
        while True:
            conn = self._open(info)
            if conn is not None:
                return conn
            self._delay_reconnect()
            retry += 1
            if self.shutdown_requested() or retry >= self.db_max_retry:
                return None

    def _disconnect(self) -> None:
        if self.conn is not None:
            self.session.disconnect(self.conn)
        self.conn = None
        self._conn_info = None

    def _set_connect_privileges(self) -> None:
        result = self._execute(self.conn, SQL_SELECT_ROLSUPER)
        self.superuser_connect = (
            result is not None
            and result.status is ExecStatus.TUPLES_OK
            and result.ntuples > 0
            and result.value(0, 0) == "t"
        )

    # ---- repository ------------------------------------------------------

    def check_repository(self, conn: Connection) -> bool:
        """Check that an installed statsrepo schema has a compatible version."""
        query = SQL_SCHEMA_EXISTS
        result = conn.execute(query, ())
        if result.status is not ExecStatus.TUPLES_OK:
            return self._query_failed(result, query)
        if result.ntuples == 0:
            return True  # not installed yet

        query = SQL_SCHEMA_VERSION
        result = conn.execute(query, ())
        if result.status is not ExecStatus.TUPLES_OK:
            if result.sqlstate == SQLSTATE_UNDEFINED_FUNCTION:
                self._log(Level.ERROR, "incompatible statsrepo schema: version mismatch")
                return False
            return self._query_failed(result, query)

        try:
            version: Optional[int] = parse_uint32(result.value(0, 0))
        except (ValueError, IndexError):
            version = None
        if version != self.schema_version and (
            version is None or version // 100 != self.schema_version // 100
        ):
            self._log(Level.ERROR, "incompatible statsrepo schema: version mismatch")
            return False
        return True

    def _query_failed(self, result: Result, query: str) -> bool:
        self._log(
            Level.ERROR,
            f"query failed: {result.error_message}",
            f"query was: {query}",
        )
        return False

    def validate_repository(self) -> RepositoryState:
        """Reconnect to the repository and check that it can be written to."""
        self._disconnect()
        if self._connect(False) is None:
            return RepositoryState.CONNECT_FAILURE

        self._set_connect_privileges()
        if self.superuser_connect:
            self._disconnect()
            if self._connect(True) is None:
                return RepositoryState.CONNECT_FAILURE

        if not self.check_repository(self.conn):
            return RepositoryState.INVALID_DATABASE
        if self.ensure_schema is not None and not self.ensure_schema(
            self.session, self.conn, "statsrepo"
        ):
            return RepositoryState.INVALID_DATABASE

        self.conn_last_used = self.clock()
        return RepositoryState.OK

    def validate_logstore(self) -> None:
        """Decide whether server log items must be ignored.

        They are ignored when log storing is enabled, the repository user is
        not a superuser, log_statement is "all" or "mod", and the repository
        is this very instance.
        """
        self.ignore_logstore = False
        if not self.logstore_enabled or self.superuser_connect:
            return
        conn = self._connect(False)
        if conn is None:
            return
        result = self._execute(conn, SQL_LOG_SETTINGS)
        if result is None or result.status is not ExecStatus.TUPLES_OK:
            return
        if result.value(0, 0) not in ("all", "mod"):
            return
        if result.value(0, 1) != self.postmaster_start_time:
            return
        self.ignore_logstore = True
        self._log(Level.LOG, "server log accumulation is disabled")

    def get_instid(self, conn: Connection) -> Optional[str]:
        """Return this instance's id in the repository, registering it if new."""
        if self._command(conn, "BEGIN TRANSACTION READ WRITE") is not ExecStatus.COMMAND_OK:
            self._rollback(conn)
            return None

        identity = [self.instance_id, node_name(), self.port]
        result = self._execute(conn, SQL_SELECT_INSTANCE, identity)
        if result is None or result.status is not ExecStatus.TUPLES_OK:
            self._rollback(conn)
            return None

        if result.ntuples > 0:
            instid = result.value(0, 0)
            if result.value(0, 1) != self.server_version:
                self._command(conn, SQL_UPDATE_INSTANCE_VERSION, [self.server_version, instid])
        else:
            xlog_file_size = (2**32 // self.xlog_seg_size) * self.xlog_seg_size
            params = [
                *identity,
                self.server_version,
                str(xlog_file_size),
                str(self.page_size),
                str(self.page_header_size),
                str(self.htup_header_size),
                str(self.item_id_size),
            ]
            result = self._execute(conn, SQL_INSERT_INSTANCE, params)
            if (
                result is None
                or result.status is not ExecStatus.TUPLES_OK
                or result.ntuples < 1
            ):
                self._rollback(conn)
                return None
            instid = result.value(0, 0)

        if not self._commit(conn):
            self._rollback(conn)
            return None
        return instid

    # ---- queue -----------------------------------------------------------

    def _execute_item(self, item: QueueItem, instid: str) -> bool:
        try:
            return item.execute(self.session, self.conn, instid)
        except QueryError:
            return False

    def process_queue(self) -> int:
        """Write queued items; return how many remain queued for a retry."""
        items = deque(self.queue.take_all())
        if not items:
            return 0

        if self.ignore_logstore:
            kept = deque()
            for item in items:
                if item.item_type is QueueType.LOGSTORE:
                    if self.on_logstore_ignored is not None:
                        self.on_logstore_ignored(item)
                else:
                    kept.append(item)
            items = kept
            if not items:
                return 0

        if self.state is WriterState.FALLBACK or self._connect(self.superuser_connect) is None:
            self._log(Level.WARNING, f"writer discards {len(items)} items")
            return 0

        connection_used = False
        instid = self.get_instid(self.conn)
        if instid is not None:
            connection_used = True
            while items:
                item = items[0]
                if not self._execute_item(item, instid):
                    item.retry += 1
                    if item.retry < self.db_max_retry:
                        break
                    # give up on one bad item rather than loop on it forever
                    self._log(Level.WARNING, "writer discard an item")
                items.popleft()

        if items:
            self.sleep(self.retry_delay)

        remaining = self.queue.requeue(items)
        if connection_used:
            self.conn_last_used = self.clock()
        return remaining

    # ---- main loop -------------------------------------------------------

    def _on_repository_ok(self) -> None:
        self._set_state(WriterState.NORMAL)
        self.validate_logstore()

    def run_once(self) -> int:
        """Run one writer cycle; return the number of items still queued."""
        if self._reload_pending:
            self._reload_pending = False
            self.repository_state = self.validate_repository()
            if self.repository_state is RepositoryState.OK:
                self._on_repository_ok()
            elif not self.shutdown_requested():
                self._set_state(WriterState.FALLBACK)

        if self.repository_state is RepositoryState.CONNECT_FAILURE:
            self.repository_state = self.validate_repository()
            if self.repository_state is RepositoryState.OK:
                self._on_repository_ok()

        remaining = self.process_queue()
        if (
            remaining == 0
            and self.conn is not None
            and self.conn_last_used + WRITER_CONN_KEEP_SECS < self.clock()
        ):
            self._disconnect()
            self._log(Level.DEBUG2, "disconnect unused writer connection")
        return remaining

    def run(self, keep_running: Callable[[], bool]) -> int:
        """Cycle until ``keep_running`` turns false, then shut down."""
        while keep_running():
            self.run_once()
            self.sleep(WRITER_LOOP_INTERVAL)
        return self.shutdown()

    def shutdown(self) -> int:
        """Flush what can be written, disconnect, and return the items left."""
        remaining = self.process_queue()
        if remaining > 0:
            self._log(Level.WARNING, f"writer discards {remaining} items")
        self._disconnect()
        return remaining