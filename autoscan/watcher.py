"""Completion watching for externally executed scans.

A watch polls the backend's list-by-tool endpoint until the most recent
scan reaches a terminal status. It always resolves exactly once, with
either the backend's terminal record or a synthetic one whose status names
the reason the watch gave up:

- ``timeout``: soft threshold reached inside the poll loop
- ``hard_timeout``: guard fired and the poll loop was cancelled
- ``absolute_timeout``: the poll loop did not even unwind after cancellation
- ``error`` / ``no_scans`` / ``persistent_error``: too many consecutive
  failed, empty or malformed fetches

All three thresholds hang off one ``WatchDeadline`` measured on one clock.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

from autoscan.backend import SCAN_TOOLS, ScanBackend
from autoscan.clock import Clock, SystemClock
from autoscan.config import WatchBudget, get_config
from autoscan.exceptions import (
    BackendError,
    MalformedPayloadError,
    UnknownToolError,
    WatchConflictError,
)
from autoscan.logging import get_logger
from autoscan.observers import NullObserver, ScanObserver
from autoscan.records import (
    BACKEND_TERMINAL_STATUSES,
    JobRecord,
    JobStatus,
    latest_record,
    parse_job_records,
    synthetic_record,
)

log = get_logger(__name__)

SOFT = "soft"
HARD = "hard"
ABSOLUTE = "absolute"

# Fetch failure kinds counted toward the bounded-retry budget.
_TRANSPORT = "transport"
_EMPTY = "empty"
_MALFORMED = "malformed"


@dataclass
class WatchDeadline:
    """One logical deadline with three named thresholds."""

    budget: WatchBudget
    clock: Clock
    started_at: float

    @classmethod
    def start(cls, budget: WatchBudget, clock: Clock) -> "WatchDeadline":
        return cls(budget=budget, clock=clock, started_at=clock.monotonic())

    def threshold(self, tier: str) -> float:
        if tier == SOFT:
            return self.budget.soft_timeout_s
        if tier == HARD:
            return self.budget.hard_timeout_s
        if tier == ABSOLUTE:
            return self.budget.absolute_timeout_s
        raise ValueError(f"Unknown deadline tier: {tier}")

    def elapsed(self) -> float:
        return self.clock.monotonic() - self.started_at

    def remaining(self, tier: str) -> float:
        return max(0.0, self.threshold(tier) - self.elapsed())

    def reached(self, tier: str) -> bool:
        return self.elapsed() >= self.threshold(tier)


@dataclass
class _WatchState:
    attempts: int = 0
    failures: list[str] = field(default_factory=list)
    last_seen: JobRecord | None = None

    def observe(self, record: JobRecord) -> bool:
        """Remember ``record``; True if its id or status differs from the last one."""
        previous = self.last_seen
        self.last_seen = record
        if previous is None:
            return True
        return (previous.id, previous.status) != (record.id, record.status)

    @property
    def last_scan_id(self) -> str:
        return self.last_seen.id if self.last_seen else ""


def degraded_status(failures: list[str]) -> str:
    """Synthetic status for a streak of failed fetches."""
    kinds = set(failures)
    if kinds == {_TRANSPORT}:
        return JobStatus.ERROR
    if kinds == {_EMPTY}:
        return JobStatus.NO_SCANS
    return JobStatus.PERSISTENT_ERROR


class CompletionWatcher:
    """Polls a scan's status until it is done or the budget runs out."""

    def __init__(
        self,
        backend: ScanBackend,
        budget: WatchBudget | None = None,
        clock: Clock | None = None,
        known_tools: frozenset[str] | set[str] = SCAN_TOOLS,
    ):
        self.backend = backend
        self.budget = budget or get_config().watch
        self.clock = clock or SystemClock()
        self.known_tools = frozenset(known_tools)
        self._active: set[tuple[str, str]] = set()

    @property
    def active_watches(self) -> set[tuple[str, str]]:
        return set(self._active)

    async def wait_until_done(
        self,
        tool_name: str,
        target_id: str,
        observer: ScanObserver | None = None,
    ) -> JobRecord:
        """Wait for the most recent ``tool_name`` scan of ``target_id`` to finish.

        Args:
            tool_name: Scan tool identifier (must be in the catalog)
            target_id: Scope target id
            observer: Receives status and running-flag updates

        Returns:
            The terminal record, or a synthetic record describing why the
            watch stopped waiting.
        """
        if tool_name not in self.known_tools:
            raise UnknownToolError(tool_name)
        if not str(target_id or "").strip():
            raise ValueError("target_id is required")

        key = (tool_name, target_id)
        if key in self._active:
            raise WatchConflictError(tool_name, target_id)

        obs = observer or NullObserver()
        deadline = WatchDeadline.start(self.budget, self.clock)
        state = _WatchState()
        self._active.add(key)
        log.debug("Watch started", tool=tool_name, target_id=target_id)
        try:
            record = await self._race(tool_name, target_id, deadline, state, obs)
        finally:
            self._active.discard(key)

        if record.synthetic:
            log.warning(
                "Watch gave up",
                tool=tool_name,
                target_id=target_id,
                status=record.status,
                attempts=state.attempts,
                elapsed_s=round(deadline.elapsed(), 3),
            )
            obs.on_status_changed(record)
        else:
            log.info(
                "Scan finished",
                tool=tool_name,
                target_id=target_id,
                status=record.status,
                scan_id=record.id,
                attempts=state.attempts,
                elapsed_s=round(deadline.elapsed(), 3),
            )
        obs.on_running_changed(tool_name, False)
        return record

    async def _race(
        self,
        tool_name: str,
        target_id: str,
        deadline: WatchDeadline,
        state: _WatchState,
        obs: ScanObserver,
    ) -> JobRecord:
        poll = asyncio.create_task(self._poll_loop(tool_name, target_id, deadline, state, obs))
        guard = asyncio.create_task(self._guard(poll, tool_name, target_id, deadline, state))
        try:
            done, _ = await asyncio.wait({poll, guard}, return_when=asyncio.FIRST_COMPLETED)
            if poll in done and not poll.cancelled():
                error = poll.exception()
                if error is None:
                    return poll.result()
                log.error("Poll loop crashed", tool=tool_name, target_id=target_id, error=str(error))
                return synthetic_record(
                    tool_name,
                    target_id,
                    JobStatus.PERSISTENT_ERROR,
                    detail=f"poll loop crashed: {error}",
                    scan_id=state.last_scan_id,
                )
            # The guard cancelled the poll loop and is settling the outcome.
            return await guard
        finally:
            guard.cancel()
            if not poll.done():
                poll.cancel()

    async def _guard(
        self,
        poll: asyncio.Task[JobRecord],
        tool_name: str,
        target_id: str,
        deadline: WatchDeadline,
        state: _WatchState,
    ) -> JobRecord:
        await self.clock.sleep(deadline.remaining(HARD))
        log.warning("Hard timeout reached, cancelling poll loop", tool=tool_name, target_id=target_id)
        poll.cancel()

        backstop = asyncio.create_task(self.clock.sleep(deadline.remaining(ABSOLUTE)))
        try:
            done, _ = await asyncio.wait({poll, backstop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            backstop.cancel()

        if poll in done:
            status = JobStatus.HARD_TIMEOUT
            detail = f"no terminal status within {deadline.threshold(HARD):.0f}s"
        else:
            status = JobStatus.ABSOLUTE_TIMEOUT
            detail = f"poll loop unresponsive after {deadline.threshold(ABSOLUTE):.0f}s"
        return synthetic_record(tool_name, target_id, status, detail=detail, scan_id=state.last_scan_id)

    async def _poll_loop(
        self,
        tool_name: str,
        target_id: str,
        deadline: WatchDeadline,
        state: _WatchState,
        obs: ScanObserver,
    ) -> JobRecord:
        interval = self.budget.poll_interval_s
        limit = self.budget.max_empty_or_error_attempts

        while True:
            await self.clock.sleep(min(interval, deadline.remaining(SOFT)))
            if deadline.reached(SOFT):
                return synthetic_record(
                    tool_name,
                    target_id,
                    JobStatus.TIMEOUT,
                    detail=f"no terminal status within {deadline.threshold(SOFT):.0f}s",
                    scan_id=state.last_scan_id,
                )

            state.attempts += 1
            log.debug("Checking scan status", tool=tool_name, target_id=target_id, attempt=state.attempts)

            failure: str | None = None
            records: list[JobRecord] = []
            try:
                payload = await self.backend.list_scans(tool_name, target_id)
                records = parse_job_records(payload, tool_name, target_id)
            except MalformedPayloadError as e:
                failure = _MALFORMED
                log.debug("Malformed scan list", tool=tool_name, error=str(e))
            except BackendError as e:
                failure = _TRANSPORT
                log.debug("Scan status fetch failed", tool=tool_name, error=str(e))
            except Exception as e:
                failure = _MALFORMED
                log.warning("Unexpected error reading scan status", tool=tool_name, error=str(e))
            else:
                if not records:
                    failure = _EMPTY
                    log.debug("No scans found yet", tool=tool_name, target_id=target_id)

            if failure is not None:
                state.failures.append(failure)
                if len(state.failures) > limit:
                    return synthetic_record(
                        tool_name,
                        target_id,
                        degraded_status(state.failures),
                        detail=f"{len(state.failures)} consecutive {'/'.join(sorted(set(state.failures)))} polls",
                        scan_id=state.last_scan_id,
                    )
                continue

            state.failures.clear()
            latest = latest_record(records)
            if latest is None:
                continue
            if state.observe(latest):
                log.info("Scan status", tool=tool_name, scan_id=latest.id, status=latest.status)
                obs.on_status_changed(latest)

            if latest.status in BACKEND_TERMINAL_STATUSES:
                return latest
            if latest.status == JobStatus.PROCESSING:
                log.debug("Scan still processing large results", tool=tool_name, scan_id=latest.id)
