"""Pipeline runner: drives the step catalog for one target, strictly in order.

Each tool step is launch -> watch -> settle -> refresh; each consolidation
step is settle -> merge -> re-fetch aggregates. Whatever happens inside a
step, the runner logs it and moves on to the next one.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from autoscan.backend import ScanBackend
from autoscan.clock import Clock, SystemClock
from autoscan.config import Config, get_config
from autoscan.exceptions import BackendError, PipelineBusyError, StateStoreError
from autoscan.launcher import JobLauncher
from autoscan.logging import get_logger
from autoscan.observers import ObserverGroup, ScanObserver, ScanStateBoard
from autoscan.records import JobRecord, utcnow
from autoscan.refresher import ResultRefresher
from autoscan.state import PipelineRunState, RunStateStore
from autoscan.steps import PipelineDefinition, Step, StepKind, StepName, default_pipeline
from autoscan.targets import ScanTarget
from autoscan.watcher import CompletionWatcher

log = get_logger(__name__)

CONSOLIDATED = "consolidated"
CONSOLIDATION_FLAG = "consolidate"


@dataclass
class StepOutcome:
    """What happened to one step."""

    step: StepName
    kind: StepKind
    status: str = ""
    scan_id: str = ""
    error: str = ""
    started_at: float = 0.0
    finished_at: float = 0.0

    @property
    def ok(self) -> bool:
        return not self.error

    @property
    def duration_s(self) -> float:
        return max(0.0, self.finished_at - self.started_at)

    def to_dict(self) -> dict[str, Any]:
        return {
            "step": self.step.value,
            "kind": self.kind.value,
            "status": self.status,
            "scan_id": self.scan_id,
            "error": self.error,
            "duration_s": round(self.duration_s, 3),
        }


@dataclass
class RunSummary:
    """Result of a pipeline run."""

    target_id: str
    session_id: str = ""
    resumed_from: StepName | None = None
    outcomes: list[StepOutcome] = field(default_factory=list)
    consolidated_subdomains: int = 0
    live_web_servers: int = 0
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None

    @property
    def failed_steps(self) -> list[StepOutcome]:
        return [o for o in self.outcomes if not o.ok]

    def final_stats(self) -> dict[str, int]:
        return {
            "final_consolidated_subdomains": self.consolidated_subdomains,
            "final_live_web_servers": self.live_web_servers,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_id": self.target_id,
            "session_id": self.session_id,
            "resumed_from": self.resumed_from.value if self.resumed_from else None,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "steps": [o.to_dict() for o in self.outcomes],
            **self.final_stats(),
        }


def count_live_web_servers(record: JobRecord | None) -> int:
    """Number of result lines in an httpx scan record."""
    if record is None:
        return 0
    result = record.result_ref
    if isinstance(result, dict):
        result = result.get("String")
    if not isinstance(result, str):
        return 0
    return sum(1 for line in result.splitlines() if line.strip())


class PipelineRunner:
    """Runs a ``PipelineDefinition`` against one target at a time."""

    def __init__(
        self,
        backend: ScanBackend,
        store: RunStateStore,
        definition: PipelineDefinition | None = None,
        *,
        watcher: CompletionWatcher | None = None,
        launcher: JobLauncher | None = None,
        refresher: ResultRefresher | None = None,
        observer: ScanObserver | None = None,
        clock: Clock | None = None,
        config: Config | None = None,
    ):
        cfg = config or get_config()
        self.backend = backend
        self.store = store
        self.definition = definition or default_pipeline()
        self.settings = cfg.pipeline
        self.clock = clock or SystemClock()
        self.watcher = watcher or CompletionWatcher(backend, budget=cfg.watch, clock=self.clock)
        self.launcher = launcher or JobLauncher(backend)
        self.refresher = refresher or ResultRefresher(backend)
        self.board = ScanStateBoard()
        self.observer = ObserverGroup(self.board, observer) if observer else ObserverGroup(self.board)
        self._active_targets: set[str] = set()

    def is_running(self, target_id: str) -> bool:
        return target_id in self._active_targets

    async def run(self, target: ScanTarget, *, session_id: str = "") -> RunSummary:
        """Run every step from the first one."""
        state = PipelineRunState(target_id=target.id, current_step=StepName.IDLE, session_id=session_id)
        return await self._execute(target, state, start_index=0, resumed=False)

    async def resume(self, target: ScanTarget) -> RunSummary | None:
        """Continue an interrupted run from its persisted step; None if nothing to resume."""
        state = await self.store.load(target.id)
        if state is None or not state.is_in_progress:
            log.info("No interrupted auto scan to resume", target_id=target.id)
            return None
        start_index = self.definition.index_of(state.current_step)
        log.info("Resuming auto scan", target_id=target.id, step=state.current_step.value)
        return await self._execute(target, state, start_index=start_index, resumed=True)

    async def check_and_resume(self, target_id: str, targets: list[ScanTarget]) -> RunSummary | None:
        """Startup check: resume an in-progress run if its target still exists, else reset it."""
        state = await self.store.load(target_id)
        if state is None or not state.is_in_progress:
            return None
        target = next((t for t in targets if t.id == target_id), None)
        if target is None:
            log.warning(
                "Interrupted auto scan belongs to a missing target, resetting",
                target_id=target_id,
                step=state.current_step.value,
            )
            await self.reset(target_id)
            return None
        return await self.resume(target)

    async def reset(self, target_id: str) -> None:
        """Put the target's marker back to idle."""
        await self.store.save(PipelineRunState(target_id=target_id, current_step=StepName.IDLE))

    async def _execute(
        self,
        target: ScanTarget,
        state: PipelineRunState,
        *,
        start_index: int,
        resumed: bool,
    ) -> RunSummary:
        if target.id in self._active_targets:
            raise PipelineBusyError(target.id)
        self._active_targets.add(target.id)

        summary = RunSummary(
            target_id=target.id,
            session_id=state.session_id,
            resumed_from=state.current_step if resumed else None,
        )
        delay = self.settings.resume_step_delay_s if resumed else self.settings.step_delay_s
        steps = self.definition.steps[start_index:]
        log.info(
            "Auto scan started",
            target_id=target.id,
            domain=target.domain,
            steps=len(steps),
            resumed=resumed,
        )
        try:
            if not resumed:
                await self._persist(state)
            for position, step in enumerate(steps, start=start_index + 1):
                state = state.advanced_to(step.name)
                await self._persist(state)
                log.info(
                    "Step started",
                    target_id=target.id,
                    step=step.name.value,
                    position=position,
                    total=len(self.definition),
                )
                summary.outcomes.append(await self._run_step(step, target))
                await self.clock.sleep(delay)
        finally:
            self._active_targets.discard(target.id)
            self._clear_running_flags()
        # Skipped on cancellation so an interrupted run stays resumable.
        await self._persist(state.advanced_to(StepName.COMPLETED))

        summary.consolidated_subdomains = len(self.board.subdomains)
        summary.live_web_servers = count_live_web_servers(self.board.latest.get("httpx"))
        summary.finished_at = utcnow()
        if summary.session_id:
            await self._post_final_stats(summary)
        log.info(
            "Auto scan finished",
            target_id=target.id,
            steps=len(summary.outcomes),
            failed=len(summary.failed_steps),
            **summary.final_stats(),
        )
        return summary

    async def _persist(self, state: PipelineRunState) -> None:
        self.observer.on_step_changed(state.current_step.value)
        try:
            await self.store.save(state)
        except StateStoreError as e:
            log.error("Run state not saved", target_id=state.target_id, step=state.current_step.value, error=str(e))

    async def _run_step(self, step: Step, target: ScanTarget) -> StepOutcome:
        outcome = StepOutcome(step=step.name, kind=step.kind, started_at=self.clock.monotonic())
        try:
            if step.is_consolidation:
                await self._run_consolidation(target, outcome)
            else:
                await self._run_tool(step, target, outcome)
        except Exception as e:
            outcome.error = str(e) or type(e).__name__
            log.error("Step failed, continuing", target_id=target.id, step=step.name.value, error=outcome.error)
        outcome.finished_at = self.clock.monotonic()
        log.info(
            "Step finished",
            target_id=target.id,
            step=step.name.value,
            status=outcome.status or None,
            ok=outcome.ok,
        )
        return outcome

    async def _run_tool(self, step: Step, target: ScanTarget, outcome: StepOutcome) -> None:
        tool_name = step.tool_name or step.name.value
        try:
            handle = await self.launcher.start(tool_name, target, step.params or None, observer=self.observer)
            outcome.scan_id = handle.scan_id

            record = await self.watcher.wait_until_done(tool_name, target.id, observer=self.observer)
            outcome.status = record.status
            outcome.scan_id = record.id or outcome.scan_id
            if step.follow_up_tool:
                follow_up = await self.watcher.wait_until_done(
                    step.follow_up_tool, target.id, observer=self.observer
                )
                outcome.status = follow_up.status

            await self.clock.sleep(self.settings.refresh_settle_s)
            await self.refresher.sync(
                tool_name, target.id, observer=self.observer, publish_latest=not record.synthetic
            )
            if step.follow_up_tool:
                await self.refresher.sync(
                    step.follow_up_tool, target.id, observer=self.observer, publish_latest=not follow_up.synthetic
                )

            if step.settle_after_s > 0:
                await self.clock.sleep(step.settle_after_s)
        finally:
            self.observer.on_running_changed(tool_name, False)
            if step.follow_up_tool:
                self.observer.on_running_changed(step.follow_up_tool, False)

    async def _run_consolidation(self, target: ScanTarget, outcome: StepOutcome) -> None:
        await self.clock.sleep(self.settings.consolidation_settle_s)
        self.observer.on_running_changed(CONSOLIDATION_FLAG, True)
        try:
            result = await self.backend.consolidate(target.id)
            outcome.status = CONSOLIDATED
            log.info("Subdomains consolidated", target_id=target.id, count=result.get("count"))
            try:
                subdomains = await self.backend.consolidated_subdomains(target.id)
            except BackendError as e:
                log.error("Consolidated subdomains not refreshed", target_id=target.id, error=str(e))
            else:
                self.observer.on_subdomains_refreshed(subdomains)
        finally:
            self.observer.on_running_changed(CONSOLIDATION_FLAG, False)

    def _clear_running_flags(self) -> None:
        for tool_name, running in list(self.board.running.items()):
            if running:
                self.observer.on_running_changed(tool_name, False)

    async def _post_final_stats(self, summary: RunSummary) -> None:
        try:
            await self.backend.post_final_stats(summary.session_id, summary.final_stats())
        except BackendError as e:
            log.warning("Final stats not posted", session_id=summary.session_id, error=str(e))
