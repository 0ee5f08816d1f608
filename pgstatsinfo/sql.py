"""Statements that write collected statistics into the repository."""

from __future__ import annotations


def _placeholders(count: int) -> str:
    return "(" + ", ".join(f"${n}" for n in range(1, count + 1)) + ")"


# Delimiter and null marker used for COPY data.
COPY_DELIMITER = "\t"
NULL_STR = "null"

SQL_NEW_SNAPSHOT = (
    "INSERT INTO statsrepo.snapshot(instid, time, comment) VALUES "
    "($1, $2, $3) RETURNING snapid, CAST(time AS DATE)"
)

SQL_INSERT_DATABASE = "INSERT INTO statsrepo.database VALUES " + _placeholders(24)
SQL_INSERT_TABLESPACE = "INSERT INTO statsrepo.tablespace VALUES " + _placeholders(8)
SQL_INSERT_ACTIVITY = "INSERT INTO statsrepo.activity VALUES " + _placeholders(6)
SQL_INSERT_LONG_TRANSACTION = "INSERT INTO statsrepo.xact VALUES " + _placeholders(6)

SQL_INSERT_STATEMENT = (
    "INSERT INTO statsrepo.statement "
    "  SELECT (" + _placeholders(26) + "::statsrepo.statement).* "
    "    FROM statsrepo.database d "
    "   WHERE d.snapid = $1 AND d.dbid = $2"
)

SQL_INSERT_PLAN = (
    "INSERT INTO statsrepo.plan "
    "  SELECT (" + _placeholders(27) + "::statsrepo.plan).* "
    "    FROM statsrepo.database d "
    "   WHERE d.snapid = $1 AND d.dbid = $2"
)

SQL_INSERT_LOCK = "INSERT INTO statsrepo.lock VALUES " + _placeholders(16)
SQL_INSERT_BGWRITER = "INSERT INTO statsrepo.bgwriter VALUES " + _placeholders(4)
SQL_INSERT_REPLICATION = "INSERT INTO statsrepo.replication VALUES " + _placeholders(21)
SQL_INSERT_REPLICATION_SLOTS = (
    "INSERT INTO statsrepo.replication_slots VALUES " + _placeholders(14)
)
SQL_INSERT_STAT_REPLICATION_SLOTS = (
    "INSERT INTO statsrepo.stat_replication_slots VALUES " + _placeholders(11)
)
SQL_INSERT_STAT_IO = "INSERT INTO statsrepo.stat_io VALUES " + _placeholders(19)
SQL_INSERT_STAT_WAL = "INSERT INTO statsrepo.stat_wal VALUES " + _placeholders(10)
SQL_INSERT_XLOG = "INSERT INTO statsrepo.xlog VALUES " + _placeholders(3)
SQL_INSERT_ARCHIVE = "INSERT INTO statsrepo.archive VALUES " + _placeholders(8)
SQL_INSERT_SETTING = "INSERT INTO statsrepo.setting VALUES " + _placeholders(5)
SQL_INSERT_ROLE = "INSERT INTO statsrepo.role VALUES " + _placeholders(3)
SQL_INSERT_CPU = "INSERT INTO statsrepo.cpu VALUES " + _placeholders(10)
SQL_INSERT_DEVICE = "INSERT INTO statsrepo.device VALUES " + _placeholders(18)
SQL_INSERT_LOADAVG = "INSERT INTO statsrepo.loadavg VALUES " + _placeholders(4)
SQL_INSERT_MEMORY = "INSERT INTO statsrepo.memory VALUES " + _placeholders(6)
SQL_INSERT_PROFILE = "INSERT INTO statsrepo.profile VALUES " + _placeholders(4)

SQL_INSERT_RUSAGE = (
    "INSERT INTO statsrepo.rusage "
    " SELECT (" + _placeholders(20) + "::statsrepo.rusage).* "
    "   FROM statsrepo.database d "
    "  WHERE d.snapid = $1 AND d.dbid = $2"
)

SQL_INSERT_HT_INFO = "INSERT INTO statsrepo.ht_info VALUES " + _placeholders(7)

SQL_COPY_SCHEMA = f"COPY statsrepo.schema FROM STDIN with(NULL '{NULL_STR}')"
SQL_COPY_TABLE = f"COPY statsrepo.table FROM STDIN with(NULL '{NULL_STR}')"
SQL_COPY_COLUMN = f"COPY statsrepo.column FROM STDIN with(NULL '{NULL_STR}')"
SQL_COPY_INDEX = f"COPY statsrepo.index FROM STDIN with(NULL '{NULL_STR}')"
SQL_COPY_INHERITS = f"COPY statsrepo.inherits FROM STDIN with(NULL '{NULL_STR}')"
SQL_COPY_FUNCTION = f"COPY statsrepo.function FROM STDIN with(NULL '{NULL_STR}')"

SQL_INSERT_ALERT = "INSERT INTO statsrepo.alert_message VALUES " + _placeholders(2)
SQL_INSERT_LOG = "INSERT INTO statsrepo.log VALUES " + _placeholders(27)

SQL_UPDATE_SNAPSHOT = (
    "UPDATE statsrepo.snapshot "
    "SET exec_time = pg_catalog.age($2, $3), "
    "snapshot_increase_size = ((SELECT pg_catalog.sum(pg_catalog.pg_relation_size(oid)) "
    "FROM pg_class WHERE relnamespace = "
    "(SELECT oid FROM pg_namespace WHERE nspname = 'statsrepo')) - $4), "
    "xid_current = pg_catalog.pg_snapshot_xmax(pg_catalog.pg_current_snapshot()) "
    "WHERE snapid = $1"
)

SQL_CREATE_SNAPSHOT_PARTITION = "SELECT statsrepo.create_snapshot_partition($1)"
SQL_CREATE_REPOLOG_PARTITION = "SELECT statsrepo.create_repolog_partition($1)"

SQL_INSERT_WAIT_SAMPLING_PROFILE = (
    "INSERT INTO statsrepo.wait_sampling VALUES " + _placeholders(8)
)

# Statements for instance-level results, in the order they are collected.
INSTANCE_PUTS = (
    SQL_INSERT_ACTIVITY,
    SQL_INSERT_LONG_TRANSACTION,
    SQL_INSERT_CPU,
    SQL_INSERT_DEVICE,
    SQL_INSERT_LOADAVG,
    SQL_INSERT_MEMORY,
    SQL_INSERT_TABLESPACE,
    SQL_INSERT_SETTING,
    SQL_INSERT_ROLE,
    SQL_INSERT_PROFILE,
    SQL_INSERT_LOCK,
    SQL_INSERT_BGWRITER,
    SQL_INSERT_REPLICATION,
    SQL_INSERT_STAT_REPLICATION_SLOTS,
    SQL_INSERT_STAT_IO,
    SQL_INSERT_STAT_WAL,
    SQL_INSERT_XLOG,
    SQL_INSERT_ARCHIVE,
    SQL_INSERT_REPLICATION_SLOTS,
    SQL_INSERT_WAIT_SAMPLING_PROFILE,
    SQL_INSERT_STATEMENT,
    SQL_INSERT_HT_INFO,
    SQL_INSERT_PLAN,
    SQL_INSERT_RUSAGE,
)

# Statements for per-database results, in the order they are collected.
DATABASE_PUTS = (
    SQL_COPY_SCHEMA,
    SQL_COPY_TABLE,
    SQL_COPY_INHERITS,
    SQL_COPY_FUNCTION,
    SQL_COPY_COLUMN,
    SQL_COPY_INDEX,
)

_PARTITIONED_COPIES = frozenset({SQL_COPY_TABLE, SQL_COPY_COLUMN, SQL_COPY_INDEX})


def is_copy_statement(sql: str) -> bool:
    """Tell whether a statement is a COPY (checked case-insensitively)."""
    return sql[:5].upper() == "COPY "


def needs_partition_date(sql: str) -> bool:
    """Tell whether a COPY target is partitioned by the snapshot date."""
    return sql in _PARTITIONED_COPIES