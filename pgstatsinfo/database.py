"""Database sessions: connections, query execution and cancellation."""

from __future__ import annotations

import errno
import getpass
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Protocol, Sequence

from pgstatsinfo.elog import ElogError, Level, Reporter

E_PG_CONNECT = -1
E_PG_COMMAND = -2


class ExecStatus(Enum):
    """Outcome of executing a query."""

    EMPTY_QUERY = "empty_query"
    COMMAND_OK = "command_ok"
    TUPLES_OK = "tuples_ok"
    COPY_OUT = "copy_out"
    COPY_IN = "copy_in"
    BAD_RESPONSE = "bad_response"
    NONFATAL_ERROR = "nonfatal_error"
    FATAL_ERROR = "fatal_error"


class TransactionStatus(Enum):
    """Transaction state of a connection."""

    IDLE = "idle"
    ACTIVE = "active"
    INTRANS = "intrans"
    INERROR = "inerror"
    UNKNOWN = "unknown"


class YesNo(Enum):
    """Whether to prompt for a password."""

    DEFAULT = "default"
    NO = "no"
    YES = "yes"


_SUCCESS = frozenset({ExecStatus.TUPLES_OK, ExecStatus.COMMAND_OK, ExecStatus.COPY_IN})


class QueryError(ElogError):
    """A connection or query failure that reached the abort level."""

    def __init__(
        self,
        level: int,
        code: int,
        message: str,
        detail: Optional[str] = None,
        result: Optional["Result"] = None,
    ):
        super().__init__(level, code, message, detail)
        self.result = result


@dataclass
class Result:
    """Rows and status returned by one query; values are text or None."""

    status: ExecStatus
    rows: list = field(default_factory=list)
    columns: tuple = ()
    types: tuple = ()
    error_message: str = ""
    sqlstate: Optional[str] = None

    @property
    def ntuples(self) -> int:
        return len(self.rows)

    @property
    def nfields(self) -> int:
        return len(self.columns)

    def value(self, row: int, column: int) -> str:
        """Return a field as text; a null field reads as an empty string."""
        item = self.rows[row][column]
        return "" if item is None else item

    def is_null(self, row: int, column: int) -> bool:
        return self.rows[row][column] is None


class Backend(Protocol):
    """What a driver connection must provide."""

    @property
    def transaction_status(self) -> TransactionStatus: ...

    def execute(self, query: str, params: Sequence[Optional[str]]) -> Result: ...

    def cancel(self) -> bool: ...

    def close(self) -> None: ...


class Connection:
    """An open connection managed by a Session."""

    def __init__(self, backend: Backend, info: str):
        self.backend = backend
        self.info = info
        self.closed = False
        self.cancel_armed = False

    @property
    def transaction_status(self) -> TransactionStatus:
        if self.closed:
            return TransactionStatus.UNKNOWN
        return self.backend.transaction_status

    def execute(self, query: str, params: Sequence[Optional[str]]) -> Result:
        return self.backend.execute(query, params)

    def cancel(self) -> bool:
        return self.backend.cancel()

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.cancel_armed = False
            self.backend.close()


def _prompt_for_password() -> str:
    return getpass.getpass("Password: ")


Connector = Callable[[str], Backend]


@dataclass
class Session:
    """Keeps the open connections and runs queries with error reporting.

    The connector opens a driver connection for a connection string and
    raises on failure; an exception with a true ``needs_password``
    attribute asks for a password prompt.
    """

    connector: Connector
    reporter: Reporter = field(default_factory=Reporter)
    echo: bool = False
    prompt: YesNo = YesNo.DEFAULT
    error_level: int = Level.ERROR
    connect_level: int = Level.ERROR
    password_reader: Callable[[], str] = _prompt_for_password
    interrupted: bool = field(default=False, init=False)
    in_cleanup: bool = field(default=False, init=False)
    connections: list = field(default_factory=list, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, *exc_info) -> None:
        self.cleanup()

    def _report(self, elevel, code, message, detail=None, result=None) -> None:
        try:
            self.reporter.elog(elevel, message, detail)
        except ElogError as exc:
            raise QueryError(exc.level, code, exc.message, exc.detail, result) from None

    def check_for_interrupts(self) -> None:
        """Raise QueryError if an interrupt was requested."""
        if self.interrupted and not self.in_cleanup:
            self._report(Level.FATAL, errno.EINTR, "interrupted")

    def connect(self, info: str) -> Optional[Connection]:
        """Open a connection, prompting for a password when needed."""
        password = self.password_reader() if self.prompt is YesNo.YES else None
        while True:
            self.check_for_interrupts()
            target = info if password is None else f"{info} password={password} "
            try:
                backend = self.connector(target)
            except Exception as exc:  # driver errors of any kind
                if getattr(exc, "needs_password", False) and self.prompt is not YesNo.NO:
                    password = self.password_reader()
                    continue
                self._report(
                    self.connect_level,
                    E_PG_CONNECT,
                    f"could not connect to database with \"{info}\": {exc}",
                )
                return None
            conn = Connection(backend, info)
            with self._lock:
                self.connections.insert(0, conn)
            return conn

    def disconnect(self, conn: Optional[Connection]) -> None:
        """Close a connection and stop tracking it."""
        if conn is None:
            return
        with self._lock:
            if conn in self.connections:
                self.connections.remove(conn)
        conn.close()

    def disconnect_all(self) -> None:
        with self._lock:
            connections, self.connections = self.connections, []
        for conn in connections:
            conn.close()

    def _echo_query(self, query: str, params: Sequence[Optional[str]]) -> None:
        if "\n" in query:
            self.reporter.elog(Level.LOG, f"(query)\n{query}")
        else:
            self.reporter.elog(Level.LOG, f"(query) {query}")
        for index, param in enumerate(params):
            shown = "(null)" if param is None else param
            self.reporter.elog(Level.LOG, f"\t(param:{index}) = {shown}")

    def execute(
        self,
        conn: Optional[Connection],
        query: str,
        params: Sequence[Optional[str]] = (),
    ) -> Optional[Result]:
        """Run a query; failures are reported at the session's error level."""
        self.check_for_interrupts()
        if self.echo:
            self._echo_query(query, params)
        if conn is None:
            self._report(self.error_level, E_PG_COMMAND, "not connected")
            return None

        with self._lock:
            tracked = conn in self.connections
        if tracked and not self.in_cleanup:
            conn.cancel_armed = True
        try:
            result = conn.execute(query, tuple(params))
        finally:
            if tracked and not self.in_cleanup:
                conn.cancel_armed = False

        if result.status not in _SUCCESS:
            self._report(
                self.error_level,
                E_PG_COMMAND,
                f"query failed: {result.error_message}",
                f"query was: {query}",
                result,
            )
        return result

    def command(
        self,
        conn: Optional[Connection],
        query: str,
        params: Sequence[Optional[str]] = (),
    ) -> ExecStatus:
        """Run a query and return only its status."""
        result = self.execute(conn, query, params)
        return ExecStatus.FATAL_ERROR if result is None else result.status

    def commit(self, conn: Optional[Connection]) -> bool:
        """Commit if a transaction is open."""
        if conn is not None and conn.transaction_status is not TransactionStatus.IDLE:
            return self.command(conn, "COMMIT") is ExecStatus.COMMAND_OK
        return True

    def rollback(self, conn: Optional[Connection]) -> None:
        """Roll back if a transaction is open."""
        if conn is not None and conn.transaction_status is not TransactionStatus.IDLE:
            self.command(conn, "ROLLBACK")

    def interrupt(self) -> None:
        """Flag an interrupt and cancel queries that are running."""
        self.interrupted = True
        if self.in_cleanup:
            return
        with self._lock:
            running = [conn for conn in self.connections if conn.cancel_armed]
        for conn in running:
            if conn.cancel():
                self.reporter.elog(Level.WARNING, "Cancel request sent")

    def cleanup(self) -> None:
        """Close every connection at the end of the session."""
        self.in_cleanup = True
        self.interrupted = False
        self.disconnect_all()