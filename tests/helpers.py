"""Shared test doubles and table helpers."""

from datetime import datetime, timezone

# Saturday 2026-10-17 10:00 UTC
FIXED_NOW = datetime(2026, 10, 17, 10, 0, tzinfo=timezone.utc)


class FakeScheduler:
    """In-memory stand-in for JobScheduler.

    ``pending`` maps stable id -> (job name, run at); ``fire`` runs a pending
    job the way APScheduler would (removing it first, then awaiting it).
    """

    def __init__(self):
        self.handlers: dict = {}
        self.pending: dict = {}
        self.scheduled: list = []
        self.cancelled: list = []

    def register_handler(self, job_name, handler):
        self.handlers[job_name] = handler

    def has_handler(self, job_name):
        return job_name in self.handlers

    def schedule_at(self, job_name, run_at, stable_id, payload=None):
        if job_name not in self.handlers:
            raise LookupError(job_name)
        self.pending[stable_id] = (job_name, run_at)
        self.scheduled.append((job_name, run_at, stable_id))

    def cancel(self, stable_id):
        self.cancelled.append(stable_id)
        return self.pending.pop(stable_id, None) is not None

    def next_run_at(self, stable_id):
        entry = self.pending.get(stable_id)
        return entry[1] if entry else None

    def pending_jobs(self):
        return [
            {"id": stable_id, "name": name, "next_run_at": run_at}
            for stable_id, (name, run_at) in sorted(
                self.pending.items(), key=lambda item: item[1][1]
            )
        ]

    async def fire(self, stable_id):
        job_name, _ = self.pending.pop(stable_id)
        return await self.handlers[job_name]()


class BrokenScheduler(FakeScheduler):
    """Accepts handlers but rejects every registration."""

    def schedule_at(self, job_name, run_at, stable_id, payload=None):
        raise RuntimeError("job store unavailable")


class CountingExecutor:
    """Wraps an executor and records every statement it runs."""

    def __init__(self, inner):
        self.inner = inner
        self.dialect = getattr(inner, "dialect", "sqlite")
        self.statements: list[str] = []

    async def execute(self, statement):
        self.statements.append(statement)
        await self.inner.execute(statement)

    async def query(self, statement):
        self.statements.append(statement)
        return await self.inner.query(statement)

    def matching(self, fragment):
        return [s for s in self.statements if fragment in s]


class FakeExecutor:
    """Records statements and answers queries from ``responder``."""

    dialect = "postgres"

    def __init__(self, responder=None):
        self.responder = responder or (lambda statement: [])
        self.executed: list[str] = []
        self.queried: list[str] = []

    async def execute(self, statement):
        self.executed.append(statement)

    async def query(self, statement):
        self.queried.append(statement)
        return self.responder(statement)


async def create_log_table(executor, table: str, rows: int, id_column: str = "id") -> None:
    """Create ``table`` holding ids 1..rows."""
    connection = executor.connection
    await connection.execute(
        f"CREATE TABLE {table} ({id_column} INTEGER NOT NULL, message TEXT)"
    )
    await connection.executemany(
        f"INSERT INTO {table} ({id_column}, message) VALUES (?, ?)",
        [(i, f"entry {i}") for i in range(1, rows + 1)],
    )
    await connection.commit()


async def table_ids(executor, table: str, id_column: str = "id") -> list[int]:
    cursor = await executor.connection.execute(
        f"SELECT {id_column} FROM {table} ORDER BY {id_column}"
    )
    rows = await cursor.fetchall()
    return [row[0] for row in rows]
