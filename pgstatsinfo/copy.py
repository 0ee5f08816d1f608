"""Sending query results to the repository with COPY FROM STDIN."""

from __future__ import annotations

from typing import Optional, Protocol, Sequence

from pgstatsinfo.database import Connection, ExecStatus, Result, Session
from pgstatsinfo.elog import Level
from pgstatsinfo.sql import COPY_DELIMITER, NULL_STR

FUNC_MAX_ARGS = 100

NAMEOID = 19
TEXTOID = 25

# Column index in the source row before which the snapshot date is written.
PART_KEY_POSITION = 2

_ESCAPES = str.maketrans(
    {
        "\b": "\\b",
        "\f": "\\f",
        "\n": "\\n",
        "\r": "\\r",
        "\t": "\\t",
        "\v": "\\v",
        "\\": "\\\\",
    }
)


class CopyError(Exception):
    """Raised when rows could not be copied into the repository."""


class CopyBackend(Protocol):
    """What a driver connection must provide to accept COPY data."""

    def put_copy_data(self, data: str) -> bool: ...

    def put_copy_end(self, error: Optional[str] = None) -> bool: ...


def escape_copy_text(value: str) -> str:
    """Escape control characters and backslashes for COPY text format."""
    return value.translate(_ESCAPES)


def format_copy_row(
    values: Sequence[Optional[str]],
    types: Sequence[int],
    snapid: str,
    dbid: Optional[str] = None,
    snap_date: Optional[str] = None,
) -> str:
    """Build one line of COPY data, prefixed with the snapshot ids.

    Null values become the null marker; text and name columns are escaped.
    When ``snap_date`` is given it is placed before the third source column.
    """
    fields = [snapid]
    if dbid is not None:
        fields.append(dbid)
    for index, value in enumerate(values):
        if index == PART_KEY_POSITION and snap_date is not None:
            fields.append(snap_date)
        text = NULL_STR if value is None else value
        column_type = types[index] if index < len(types) else None
        if column_type in (TEXTOID, NAMEOID):
            text = escape_copy_text(text)
        fields.append(text)
    return COPY_DELIMITER.join(fields) + "\n"


def _fail(session: Session, message: str) -> CopyError:
    session.reporter.elog(Level.WARNING, message)
    return CopyError(message)


def copy_rows(
    session: Session,
    conn: Connection,
    sql: str,
    result: Result,
    snapid: str,
    dbid: Optional[str] = None,
    snap_date: Optional[str] = None,
) -> None:
    """Copy every row of ``result`` into the table that ``sql`` copies to.

    Raises CopyError when the COPY cannot be started or the data is refused.
    """
    cols = result.nfields
    shift = 1 + (dbid is not None) + (snap_date is not None)
    if shift + cols > FUNC_MAX_ARGS:
        raise _fail(session, f"too many columns: {cols}")

    started = session.execute(conn, sql)
    if started is None or started.status is not ExecStatus.COPY_IN:
        raise CopyError(f"could not start COPY: {sql}")

    backend = conn.backend
    for row in result.rows:
        line = format_copy_row(row, result.types, snapid, dbid, snap_date)
        if not backend.put_copy_data(line):
            raise _fail(session, "PQputCopyData was failed. return code 0")

    if not backend.put_copy_end(None):
        detail = getattr(backend, "error_message", "")
        raise _fail(
            session, f"Failed Copy and/or sent CopyDone Msg:(null):{detail}"
        )