"""Keep-newest-N retention for append-only tables.

A table is trimmed in three steps:

1. resolve the cutoff: the smallest id among the newest ``keep_rows`` rows,
   computed once per run so concurrent inserts don't move the boundary;
2. delete rows below the cutoff, oldest first, ``batch_size`` at a time,
   for at most ``max_batches`` batches;
3. apply the table's vacuum mode.

SQL is built by string interpolation, so table and column names are
validated as identifiers before they get anywhere near a statement.
"""

import asyncio
import logging
import re
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Sequence

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")

# Small yield between batches so one run doesn't hog the connection.
BATCH_PAUSE_SECONDS = 0.01


class VacuumMode(str, Enum):
    """Post-delete compaction."""

    NONE = "none"
    ANALYZE_ONLY = "analyze_only"
    # Takes an exclusive lock for the duration of the rewrite.
    FULL_REWRITE = "full_rewrite"


class RetentionPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    keep_rows: int
    batch_size: int
    max_batches: int
    vacuum: VacuumMode = VacuumMode.ANALYZE_ONLY
    enabled: bool = True
    id_column: str = "id"


class TableOverride(BaseModel):
    """Per-table override; unset fields fall back to the defaults."""

    model_config = ConfigDict(frozen=True)

    enabled: Optional[bool] = None
    keep_rows: Optional[int] = None
    batch_size: Optional[int] = None
    max_batches: Optional[int] = None
    vacuum: Optional[VacuumMode] = None
    id_column: Optional[str] = None

    def merge(self, defaults: RetentionPolicy) -> RetentionPolicy:
        """Overlay this override on ``defaults`` field by field."""
        overrides = self.model_dump(exclude_none=True)
        return defaults.model_copy(update=overrides)


class TableTarget(BaseModel):
    model_config = ConfigDict(frozen=True)

    table: str
    policy: RetentionPolicy

    @field_validator("table")
    @classmethod
    def _check_table(cls, value: str) -> str:
        return validate_identifier(value)

    @model_validator(mode="after")
    def _check_id_column(self) -> "TableTarget":
        validate_identifier(self.policy.id_column)
        if "." in self.policy.id_column:
            raise ValueError(f"id_column must be unqualified: {self.policy.id_column!r}")
        return self


class MaintenanceRun(BaseModel):
    """What happened to one table during one run. Never persisted."""

    table: str
    cutoff_id: Optional[int] = None
    batches_executed: int = 0
    total_deleted: int = 0
    vacuumed: bool = False
    skipped: Optional[str] = None


def validate_identifier(name: str) -> str:
    """Return ``name`` if it is a plain or schema-qualified SQL identifier."""
    if not _IDENTIFIER.match(name or ""):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return name


def _as_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, Decimal)):
        return int(value)
    if isinstance(value, float):
        return int(value)
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def _first_cell(rows: Sequence[Sequence[Any]]) -> Any:
    if not rows or len(rows[0]) == 0:
        return None
    return rows[0][0]


class Dialect:
    name = ""

    def cutoff_sql(self, table: str, id_column: str, keep_rows: int) -> str:
        return f"""
            WITH last_rows AS (
                SELECT {id_column} AS id
                FROM {table}
                ORDER BY {id_column} DESC
                LIMIT {keep_rows}
            )
            SELECT MIN(id) AS min_keep_id, COUNT(*) AS seen
            FROM last_rows
        """

    def delete_batch_sql(
        self, table: str, id_column: str, cutoff_id: int, batch_size: int
    ) -> str:
        raise NotImplementedError

    def deleted_count(self, rows: Sequence[Sequence[Any]]) -> int:
        raise NotImplementedError

    def compaction_sql(self, table: str, mode: VacuumMode) -> list[str]:
        raise NotImplementedError


class PostgresDialect(Dialect):
    """SQL for PostgreSQL (ctid row identity, VACUUM [FULL] ANALYZE)."""

    name = "postgres"

    def delete_batch_sql(
        self, table: str, id_column: str, cutoff_id: int, batch_size: int
    ) -> str:
        # DELETE has no LIMIT in Postgres; pick victims by physical row id.
        return f"""
            WITH del AS (
                DELETE FROM {table} t
                WHERE t.{id_column} < {cutoff_id}
                  AND t.ctid IN (
                      SELECT s.ctid
                      FROM {table} s
                      WHERE s.{id_column} < {cutoff_id}
                      ORDER BY s.{id_column} ASC
                      LIMIT {batch_size}
                  )
                RETURNING 1
            )
            SELECT count(*) AS n FROM del
        """

    def deleted_count(self, rows: Sequence[Sequence[Any]]) -> int:
        return _as_int(_first_cell(rows)) or 0

    def compaction_sql(self, table: str, mode: VacuumMode) -> list[str]:
        if mode == VacuumMode.ANALYZE_ONLY:
            return [f"VACUUM ANALYZE {table}"]
        if mode == VacuumMode.FULL_REWRITE:
            return [f"VACUUM FULL ANALYZE {table}"]
        return []


class SqliteDialect(Dialect):
    """SQL for SQLite (rowid row identity, ANALYZE / database-wide VACUUM)."""

    name = "sqlite"

    def delete_batch_sql(
        self, table: str, id_column: str, cutoff_id: int, batch_size: int
    ) -> str:
        return f"""
            DELETE FROM {table}
            WHERE rowid IN (
                SELECT rowid
                FROM {table}
                WHERE {id_column} < {cutoff_id}
                ORDER BY {id_column} ASC
                LIMIT {batch_size}
            )
            RETURNING 1
        """

    def deleted_count(self, rows: Sequence[Sequence[Any]]) -> int:
        return len(rows)

    def compaction_sql(self, table: str, mode: VacuumMode) -> list[str]:
        if mode == VacuumMode.ANALYZE_ONLY:
            return [f"ANALYZE {table}"]
        if mode == VacuumMode.FULL_REWRITE:
            return ["VACUUM", f"ANALYZE {table}"]
        return []


DIALECTS = {
    PostgresDialect.name: PostgresDialect,
    SqliteDialect.name: SqliteDialect,
}


def get_dialect(name: str) -> Dialect:
    """Look up a dialect by name (``postgres`` or ``sqlite``)."""
    try:
        return DIALECTS[name.lower()]()
    except KeyError:
        raise ValueError(
            f"Unknown SQL dialect {name!r}; expected one of {sorted(DIALECTS)}"
        ) from None


async def resolve_cutoff(
    db,
    dialect: Dialect,
    table: str,
    keep_rows: int,
    id_column: str = "id",
) -> Optional[int]:
    """
    Return the smallest id among the newest ``keep_rows`` rows.

    Rows with a smaller id are eligible for deletion. Returns None when the
    table holds fewer than ``keep_rows`` rows (nothing to trim).
    """
    rows = await db.query(dialect.cutoff_sql(table, id_column, keep_rows))
    if not rows:
        return None
    row = rows[0]
    seen = _as_int(row[1]) if len(row) > 1 else None
    if seen is None or seen < keep_rows:
        return None
    return _as_int(row[0])


async def delete_batch(
    db,
    dialect: Dialect,
    table: str,
    cutoff_id: int,
    batch_size: int,
    id_column: str = "id",
) -> int:
    """Delete up to ``batch_size`` of the oldest rows below ``cutoff_id``."""
    rows = await db.query(
        dialect.delete_batch_sql(table, id_column, cutoff_id, batch_size)
    )
    return dialect.deleted_count(rows)


async def apply_compaction(db, dialect: Dialect, table: str, mode: VacuumMode) -> bool:
    """Run the post-delete maintenance for ``mode``. Returns True if anything ran."""
    statements = dialect.compaction_sql(table, mode)
    if not statements:
        return False

    if mode == VacuumMode.FULL_REWRITE:
        logger.warning(
            f"Full rewrite of {table}: the table is exclusively locked until it completes"
        )
    for statement in statements:
        await db.execute(statement)
    return True


async def trim_table(
    db,
    dialect: Dialect,
    table: str,
    policy: RetentionPolicy,
    pause: float = BATCH_PAUSE_SECONDS,
) -> MaintenanceRun:
    """Trim ``table`` down to its newest ``policy.keep_rows`` rows, then compact it."""
    run = MaintenanceRun(table=table)

    for field in ("keep_rows", "batch_size", "max_batches"):
        value = getattr(policy, field)
        if value <= 0:
            logger.info(f"Skip trim for {table} because {field}={value}")
            run.skipped = f"{field}={value}"
            return run

    cutoff_id = await resolve_cutoff(
        db, dialect, table, policy.keep_rows, id_column=policy.id_column
    )
    if cutoff_id is None:
        logger.info(f"Skip trim for {table}: table has < {policy.keep_rows} rows")
        run.skipped = "below keep_rows"
        return run

    run.cutoff_id = cutoff_id
    logger.info(
        f"Trimming {table}: keep_rows={policy.keep_rows} (cutoff_id={cutoff_id}), "
        f"batch_size={policy.batch_size}, max_batches={policy.max_batches}, "
        f"vacuum={policy.vacuum.value}"
    )

    for _ in range(policy.max_batches):
        deleted = await delete_batch(
            db,
            dialect,
            table,
            cutoff_id,
            policy.batch_size,
            id_column=policy.id_column,
        )
        if deleted <= 0:
            break

        run.batches_executed += 1
        run.total_deleted += deleted
        await asyncio.sleep(pause)

    logger.info(
        f"Trimmed {table}: deleted={run.total_deleted} in {run.batches_executed} batch(es)"
    )

    run.vacuumed = await apply_compaction(db, dialect, table, policy.vacuum)
    return run
