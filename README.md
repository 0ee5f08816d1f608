# pgstatsinfo

A library for collecting statistics snapshots from a PostgreSQL instance
and writing them into a statistics repository database.

It has no dependencies outside the standard library. Database access goes
through a driver object that you supply (see *What the package does not
do* below).

## Modules

- `pgstatsinfo.elog`: severity levels (`Level`), `parse_elevel` (level
  names, case-insensitive; `DEBUG` means `Level.DEBUG2`), `format_elevel`
  (the tag printed for a level), and `log_required`, which compares levels
  in logging order, where `LOG` ranks between `ERROR` and `FATAL`.
  `Reporter` filters messages by `log_level`, writes them as
  `TAG: message` (plus a `DETAIL:` line) to its `stream` or standard error,
  and raises `ElogError` when a message reaches `abort_level`
  (default `Level.ERROR`).
- `pgstatsinfo.parsing`: `parse_bool` accepts `true`, `false`, `yes`, `no`,
  `on`, `off`, `1`, `0` and unique prefixes of them, ignoring case.
  `parse_int32`, `parse_uint32`, `parse_int64` and `parse_uint64` read
  decimal, octal (`0` prefix) or hexadecimal (`0x` prefix) numbers, check
  the range, and map `INFINITE` to the type's maximum. `parse_time` turns
  a `YYYY-MM-DD HH:MI:SS`-like local time (any punctuation, trailing
  fields optional) into seconds since the epoch. `strip_whitespace` trims
  both ends. Invalid input raises `ValueError`.
- `pgstatsinfo.files`: `open_file` opens a file, creating missing parent
  directories when the mode writes or appends; a mode starting with `R`
  reads and returns `None` for a missing file. `make_dirs` works like
  `mkdir -p`.
- `pgstatsinfo.database`: `Session` keeps track of open `Connection`
  objects and runs queries with `execute` (returns a `Result`) and
  `command` (returns an `ExecStatus`), plus `commit` and `rollback` which
  act only when a transaction is open. Failures are reported through the
  session's `Reporter` and raise `QueryError` at its abort level.
  `interrupt` flags an interrupt and cancels running queries; `Session` is
  a context manager that closes every connection on exit.
- `pgstatsinfo.sql`: the repository's `INSERT`, `UPDATE` and `COPY`
  statements, the `INSTANCE_PUTS` and `DATABASE_PUTS` orderings, and
  `is_copy_statement` and `needs_partition_date`.
- `pgstatsinfo.copy`: `escape_copy_text` escapes backslashes and control
  characters for COPY text format, `format_copy_row` builds one
  tab-separated line with the snapshot id, optional database id and
  optional snapshot date, and `copy_rows` streams a whole `Result` into a
  `COPY ... FROM STDIN`, raising `CopyError` on failure.
- `pgstatsinfo.queue`: `WriterQueue`, a thread-safe first-in first-out
  queue of `QueueItem` objects typed by `QueueType` (`SNAPSHOT`,
  `LOGSTORE`).
- `pgstatsinfo.snapshot`: `SnapshotCollector.collect` gathers
  instance-level and per-database statistics, with retries, into a
  `Snapshot`; `Snapshot.execute` writes it into the repository in one
  transaction and runs `statsrepo.alert` when it exists. `CpuStats` carries
  the CPU counters from one snapshot to the next; `CollectorOptions` holds
  exclusions, limits and alert settings.
- `pgstatsinfo.writer`: `Writer` validates the repository
  (`validate_repository`, `check_repository`), registers this instance
  (`get_instid`), decides whether server-log items must be ignored
  (`validate_logstore`), drains the queue (`process_queue`, `run_once`,
  `run`) and flushes it on `shutdown`. `node_name` returns the host name.

## Example

```python
import io

from pgstatsinfo.copy import escape_copy_text, format_copy_row
from pgstatsinfo.elog import Level, Reporter
from pgstatsinfo.parsing import parse_bool, parse_int32

assert escape_copy_text("a\tb") == "a\\tb"
assert format_copy_row(["x", None], [25, 25], "1") == "1\tx\tnull\n"
assert parse_bool("on") is True
assert parse_int32("INFINITE") == 2**31 - 1

out = io.StringIO()
Reporter(stream=out).elog(Level.WARNING, "disk almost full")
assert out.getvalue() == "WARNING: disk almost full\n"
```

## What the package does not do

- It contains no PostgreSQL driver. `Session` is given a `connector`: a
  callable that takes a connection string and returns an object with a
  `transaction_status`, `execute(query, params)` returning a `Result`,
  `cancel()` and `close()`. For `copy_rows` that object must also offer
  `put_copy_data(data)` and `put_copy_end(error)`.
- It ships no collection queries. `SnapshotCollector` must be given SQL
  for every name in `pgstatsinfo.snapshot.REQUIRED_QUERIES`.
- It does not install the repository schema; pass `ensure_schema` to
  `Writer` for that.
- It has no command-line program or background service; you run
  `Writer.run` or `Writer.run_once` and `SnapshotCollector.collect` from
  your own code.

## Installing

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```