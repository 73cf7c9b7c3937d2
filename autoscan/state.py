"""Pipeline run-state persistence.

The only durable state the engine owns is which step a target's auto scan
is on. It is written before each step begins and read at startup to
resume or report progress.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Protocol

import aiosqlite

from autoscan.backend import ScanBackend
from autoscan.config import get_config
from autoscan.exceptions import BackendError, StateStoreError
from autoscan.logging import get_logger
from autoscan.records import parse_timestamp, utcnow
from autoscan.steps import StepName

log = get_logger(__name__)


@dataclass
class PipelineRunState:
    """Progress marker for one target."""

    target_id: str
    current_step: StepName = StepName.IDLE
    started_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    session_id: str = ""

    @property
    def is_in_progress(self) -> bool:
        return self.current_step not in (StepName.IDLE, StepName.COMPLETED)

    def advanced_to(self, step: StepName) -> "PipelineRunState":
        return replace(self, current_step=step, updated_at=utcnow())


class RunStateStore(Protocol):
    """Load/save port for ``PipelineRunState``."""

    async def load(self, target_id: str) -> PipelineRunState | None: ...

    async def save(self, state: PipelineRunState) -> None: ...

    async def clear(self, target_id: str) -> None: ...

    async def close(self) -> None: ...


class MemoryRunStateStore:
    """In-process store."""

    def __init__(self) -> None:
        self._states: dict[str, PipelineRunState] = {}
        self.history: list[tuple[str, StepName]] = []

    async def load(self, target_id: str) -> PipelineRunState | None:
        return self._states.get(target_id)

    async def save(self, state: PipelineRunState) -> None:
        self._states[state.target_id] = state
        self.history.append((state.target_id, state.current_step))

    async def clear(self, target_id: str) -> None:
        self._states.pop(target_id, None)

    async def close(self) -> None:
        pass


class SqliteRunStateStore:
    """Run-state store backed by SQLite, one row per target."""

    def __init__(self, db_path: Path | str | None = None):
        """Initialize the store.

        Args:
            db_path: Optional database path override
        """
        if db_path is None:
            self.db_path = get_config().resolved_state_path()
        else:
            self.db_path = Path(db_path).expanduser()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._db: aiosqlite.Connection | None = None

    async def _ensure_db(self) -> aiosqlite.Connection:
        """Ensure database is initialized."""
        if self._db is None:
            try:
                self._db = await aiosqlite.connect(str(self.db_path))
                await self._db.execute("""
                    CREATE TABLE IF NOT EXISTS auto_scan_state (
                        target_id TEXT PRIMARY KEY,
                        current_step TEXT NOT NULL,
                        started_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        session_id TEXT NOT NULL DEFAULT ''
                    )
                """)
                await self._db.commit()
            except aiosqlite.Error as e:
                raise StateStoreError(f"Cannot open run-state database {self.db_path}: {e}") from e
        return self._db

    async def load(self, target_id: str) -> PipelineRunState | None:
        db = await self._ensure_db()
        async with db.execute(
            """
            SELECT target_id, current_step, started_at, updated_at, session_id
            FROM auto_scan_state
            WHERE target_id = ?
            """,
            (target_id,),
        ) as cursor:
            row = await cursor.fetchone()

        if not row:
            return None

        try:
            step = StepName(row[1])
        except ValueError:
            log.warning("Discarding unknown persisted step", target_id=target_id, step=row[1])
            return None

        return PipelineRunState(
            target_id=row[0],
            current_step=step,
            started_at=parse_timestamp(row[2]) or utcnow(),
            updated_at=parse_timestamp(row[3]) or utcnow(),
            session_id=row[4] or "",
        )

    async def save(self, state: PipelineRunState) -> None:
        db = await self._ensure_db()
        try:
            await db.execute(
                """
                INSERT INTO auto_scan_state (target_id, current_step, started_at, updated_at, session_id)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(target_id) DO UPDATE SET
                    current_step = excluded.current_step,
                    started_at = excluded.started_at,
                    updated_at = excluded.updated_at,
                    session_id = excluded.session_id
                """,
                (
                    state.target_id,
                    state.current_step.value,
                    state.started_at.isoformat(),
                    state.updated_at.isoformat(),
                    state.session_id,
                ),
            )
            await db.commit()
        except aiosqlite.Error as e:
            raise StateStoreError(f"Cannot save run state for {state.target_id}: {e}") from e

    async def clear(self, target_id: str) -> None:
        db = await self._ensure_db()
        await db.execute("DELETE FROM auto_scan_state WHERE target_id = ?", (target_id,))
        await db.commit()

    async def close(self) -> None:
        """Close database connection."""
        if self._db is not None:
            await self._db.close()
            self._db = None


class HttpRunStateStore:
    """Keeps the marker on the scan backend (``/api/auto-scan-state/{id}``).

    The backend stores only the step name, so ``started_at`` is tracked
    locally for the lifetime of this store.
    """

    def __init__(self, backend: ScanBackend):
        self.backend = backend
        self._started: dict[str, datetime] = {}

    async def load(self, target_id: str) -> PipelineRunState | None:
        try:
            raw = await self.backend.load_step(target_id)
        except BackendError as e:
            raise StateStoreError(f"Cannot load run state for {target_id}: {e}") from e
        if not raw:
            return None
        try:
            step = StepName(raw)
        except ValueError:
            log.warning("Discarding unknown persisted step", target_id=target_id, step=raw)
            return None
        started = self._started.get(target_id, utcnow())
        return PipelineRunState(target_id=target_id, current_step=step, started_at=started)

    async def save(self, state: PipelineRunState) -> None:
        self._started[state.target_id] = state.started_at
        try:
            await self.backend.save_step(state.target_id, state.current_step.value)
        except BackendError as e:
            raise StateStoreError(f"Cannot save run state for {state.target_id}: {e}") from e

    async def clear(self, target_id: str) -> None:
        await self.save(PipelineRunState(target_id=target_id, current_step=StepName.IDLE))
        self._started.pop(target_id, None)

    async def close(self) -> None:
        pass


def create_state_store(kind: str, backend: ScanBackend | None = None) -> RunStateStore:
    """Build the store named by ``pipeline.state_store``."""
    if kind == "memory":
        return MemoryRunStateStore()
    if kind == "http":
        if backend is None:
            raise StateStoreError("HTTP run-state store needs a backend client")
        return HttpRunStateStore(backend)
    if kind == "sqlite":
        return SqliteRunStateStore()
    raise StateStoreError(f"Unknown run-state store: {kind}")
