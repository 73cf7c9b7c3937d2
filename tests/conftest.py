import asyncio
import heapq
import itertools
from typing import Any

import pytest

from autoscan.config import Config, PipelineConfig, WatchBudget
from autoscan.exceptions import BackendError, BackendHTTPError


class VirtualClock:
    """Discrete-event clock: time only moves when every task is waiting on it."""

    def __init__(self, start: float = 0.0):
        self._now = start
        self._sleepers: list[tuple[float, int, asyncio.Future]] = []
        self._seq = itertools.count()

    def monotonic(self) -> float:
        return self._now

    async def sleep(self, seconds: float) -> None:
        future = asyncio.get_running_loop().create_future()
        heapq.heappush(self._sleepers, (self._now + max(0.0, seconds), next(self._seq), future))
        await future

    @staticmethod
    async def settle(rounds: int = 50) -> None:
        for _ in range(rounds):
            await asyncio.sleep(0)

    async def run(self, awaitable: Any) -> Any:
        """Drive ``awaitable`` to completion, jumping time to the next sleeper each round."""
        task = asyncio.ensure_future(awaitable)
        while True:
            await self.settle()
            if task.done():
                return task.result()
            while self._sleepers and self._sleepers[0][2].done():
                heapq.heappop(self._sleepers)
            if not self._sleepers:
                raise RuntimeError("task is blocked on something other than the clock")
            wake_at, _, future = heapq.heappop(self._sleepers)
            self._now = max(self._now, wake_at)
            future.set_result(None)


def scan(status: str, scan_id: str = "scan-1", created_at: str = "2024-05-01T10:00:00Z", **extra: Any) -> dict:
    return {"id": scan_id, "status": status, "created_at": created_at, **extra}


class FakeBackend:
    """Scripted ``ScanBackend``; records every call with the virtual time it happened at."""

    def __init__(self, clock: VirtualClock):
        self.clock = clock
        self.scripts: dict[str, list[Any]] = {}
        self.start_failures: dict[str, BaseException] = {}
        self.details: dict[str, dict] = {}
        self.subdomains: list[str] = ["a.example.com", "b.example.com"]
        self.consolidate_error: BaseException | None = None
        self.targets: list[dict] = [{"id": "t-1", "scope_target": "*.example.com", "type": "Wildcard"}]
        self.steps: dict[str, str] = {}
        self.final_stats: list[tuple[str, dict]] = []
        self.events: list[tuple[str, str, float]] = []
        self.start_payloads: list[tuple[str, Any]] = []
        self.on_start = None

    def script(self, tool_name: str, *responses: Any) -> None:
        """Responses are served in order; the last one repeats forever."""
        self.scripts[tool_name] = list(responses)

    def calls(self, kind: str, tool_name: str | None = None) -> list[tuple[str, str, float]]:
        return [e for e in self.events if e[0] == kind and (tool_name is None or e[1] == tool_name)]

    async def start_scan(self, tool_name: str, target_id: str, payload: Any) -> dict:
        self.events.append(("start", tool_name, self.clock.monotonic()))
        self.start_payloads.append((tool_name, payload))
        if self.on_start is not None:
            self.on_start(tool_name)
        if tool_name in self.start_failures:
            raise self.start_failures[tool_name]
        return {"scan_id": f"{tool_name}-scan"}

    async def list_scans(self, tool_name: str, target_id: str) -> Any:
        self.events.append(("list", tool_name, self.clock.monotonic()))
        queue = self.scripts.get(tool_name)
        if not queue:
            return [scan("completed", scan_id=f"{tool_name}-scan")]
        response = queue[0] if len(queue) == 1 else queue.pop(0)
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            return await response()
        return response

    async def get_scan(self, tool_name: str, scan_id: str) -> dict:
        self.events.append(("detail", tool_name, self.clock.monotonic()))
        if scan_id not in self.details:
            raise BackendHTTPError(f"GET /{tool_name}/{scan_id} returned 404", status_code=404)
        return self.details[scan_id]

    async def consolidate(self, target_id: str) -> dict:
        self.events.append(("consolidate", "", self.clock.monotonic()))
        if self.consolidate_error is not None:
            raise self.consolidate_error
        return {"count": len(self.subdomains), "subdomains": self.subdomains}

    async def consolidated_subdomains(self, target_id: str) -> list[str]:
        return list(self.subdomains)

    async def list_targets(self) -> list[dict]:
        return list(self.targets)

    async def save_step(self, target_id: str, step: str) -> None:
        self.steps[target_id] = step

    async def load_step(self, target_id: str) -> str | None:
        return self.steps.get(target_id)

    async def post_final_stats(self, session_id: str, stats: dict) -> None:
        self.final_stats.append((session_id, stats))

    async def aclose(self) -> None:
        pass


def http_error(status_code: int = 502) -> BackendHTTPError:
    return BackendHTTPError(f"GET returned {status_code}", status_code=status_code)


@pytest.fixture
def clock() -> VirtualClock:
    return VirtualClock()


@pytest.fixture
def backend(clock: VirtualClock) -> FakeBackend:
    return FakeBackend(clock)


@pytest.fixture
def make_scan():
    return scan


@pytest.fixture
def make_http_error():
    return http_error


@pytest.fixture
def transport_error():
    return lambda: BackendError("connection refused")


@pytest.fixture
def budget() -> WatchBudget:
    return WatchBudget()


@pytest.fixture
def config(budget: WatchBudget) -> Config:
    return Config(watch=budget, pipeline=PipelineConfig(state_store="memory"))
