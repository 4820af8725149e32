"""SQLite-based run history store."""

import asyncio
from datetime import UTC, datetime, timedelta
from pathlib import Path

import aiosqlite

from .models import RunRecord, RunStatus


class RunStore:
    """Async SQLite store with one row per recipe execution.

    Keeps:
    - History of past executions per supplier
    - The last error of failed runs
    - Counts of newly archived documents
    """

    def __init__(self, db_path: Path | None = None):
        """Initialize RunStore.

        Args:
            db_path: Path to SQLite database. Defaults to ~/.config/receipt-sync/runs.db
        """
        if db_path is None:
            from ..config import settings

            db_path = settings.get_run_history_path()
        self.db_path = db_path
        self._initialized = False
        self._init_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Create schema if not exists."""
        if self._initialized:
            return

        async with self._init_lock:
            if self._initialized:
                return

            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("PRAGMA journal_mode = WAL")
                await db.execute("PRAGMA busy_timeout = 5000")

                await db.execute("""
                    CREATE TABLE IF NOT EXISTS runs (
                        run_id TEXT PRIMARY KEY,
                        supplier TEXT NOT NULL,
                        recipe_version TEXT NOT NULL,
                        credential_id TEXT NOT NULL,
                        status TEXT NOT NULL,
                        started_at TEXT NOT NULL,
                        completed_at TEXT,
                        status_text TEXT,
                        last_step_id TEXT,
                        last_step_description TEXT,
                        last_error_message TEXT,
                        new_files_count INTEGER DEFAULT 0
                    )
                """)

                await db.execute("CREATE INDEX IF NOT EXISTS idx_supplier ON runs(supplier)")
                await db.execute("CREATE INDEX IF NOT EXISTS idx_started_at ON runs(started_at)")
                await db.commit()

            self._initialized = True

    async def create_run(self, run: RunRecord) -> None:
        """Insert a new run record."""
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO runs (
                    run_id, supplier, recipe_version, credential_id, status, started_at,
                    completed_at, status_text, last_step_id, last_step_description,
                    last_error_message, new_files_count
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    run.run_id,
                    run.supplier,
                    run.recipe_version,
                    run.credential_id,
                    run.status.value,
                    run.started_at.isoformat(),
                    run.completed_at.isoformat() if run.completed_at else None,
                    run.status_text,
                    run.last_step_id,
                    run.last_step_description,
                    run.last_error_message,
                    run.new_files_count,
                ),
            )
            await db.commit()

    async def complete_run(
        self,
        run_id: str,
        status: RunStatus,
        *,
        status_text: str | None = None,
        last_step_id: str | None = None,
        last_step_description: str | None = None,
        last_error_message: str | None = None,
        new_files_count: int = 0,
    ) -> None:
        """Record the outcome of a finished run."""
        await self.initialize()

        truncated_error = last_error_message[:2000] if last_error_message else None

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                UPDATE runs
                SET status = ?,
                    completed_at = ?,
                    status_text = ?,
                    last_step_id = ?,
                    last_step_description = ?,
                    last_error_message = ?,
                    new_files_count = ?
                WHERE run_id = ?
            """,
                (
                    status.value,
                    datetime.now(UTC).isoformat(),
                    status_text,
                    last_step_id,
                    last_step_description,
                    truncated_error,
                    new_files_count,
                    run_id,
                ),
            )
            await db.commit()

    async def get_run(self, run_id: str) -> RunRecord | None:
        """Get a single run by ID."""
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute("SELECT * FROM runs WHERE run_id = ?", (run_id,)) as cursor:
                row = await cursor.fetchone()
                if row:
                    return self._row_to_run(row)
        return None

    async def get_history(self, limit: int = 50, supplier: str | None = None) -> list[RunRecord]:
        """Get run history, newest first, optionally for one supplier."""
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row

            query = "SELECT * FROM runs"
            params: list = []
            if supplier:
                query += " WHERE supplier = ?"
                params.append(supplier)
            query += " ORDER BY started_at DESC LIMIT ?"
            params.append(limit)

            async with db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
                return [self._row_to_run(row) for row in rows]

    async def cleanup_old_runs(self, days: int = 90) -> int:
        """Delete finished runs older than N days. Returns count deleted."""
        await self.initialize()

        cutoff = (datetime.now(UTC) - timedelta(days=days)).isoformat()

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM runs WHERE started_at < ? AND status != ?",
                (cutoff, RunStatus.RUNNING.value),
            )
            await db.commit()
            return cursor.rowcount

    @staticmethod
    def _row_to_run(row: aiosqlite.Row) -> RunRecord:
        """Convert DB row to RunRecord."""
        return RunRecord(
            run_id=row["run_id"],
            supplier=row["supplier"],
            recipe_version=row["recipe_version"],
            credential_id=row["credential_id"],
            status=RunStatus(row["status"]),
            started_at=datetime.fromisoformat(row["started_at"]),
            completed_at=datetime.fromisoformat(row["completed_at"]) if row["completed_at"] else None,
            status_text=row["status_text"],
            last_step_id=row["last_step_id"],
            last_step_description=row["last_step_description"],
            last_error_message=row["last_error_message"],
            new_files_count=row["new_files_count"],
        )
