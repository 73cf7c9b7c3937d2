"""Observer interface through which scan progress becomes visible."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from autoscan.logging import get_logger
from autoscan.records import JobRecord

log = get_logger(__name__)


class ScanObserver(Protocol):
    """Receives progress updates from the watcher, launcher, refresher and runner."""

    def on_status_changed(self, record: JobRecord) -> None: ...

    def on_running_changed(self, tool_name: str, running: bool) -> None: ...

    def on_records_refreshed(self, tool_name: str, records: list[JobRecord]) -> None: ...

    def on_step_changed(self, step_name: str) -> None: ...

    def on_subdomains_refreshed(self, subdomains: list[str]) -> None: ...


class NullObserver:
    """Observer that ignores everything."""

    def on_status_changed(self, record: JobRecord) -> None:
        pass

    def on_running_changed(self, tool_name: str, running: bool) -> None:
        pass

    def on_records_refreshed(self, tool_name: str, records: list[JobRecord]) -> None:
        pass

    def on_step_changed(self, step_name: str) -> None:
        pass

    def on_subdomains_refreshed(self, subdomains: list[str]) -> None:
        pass


class ObserverGroup:
    """Fan out to several observers; a failing observer never breaks the engine."""

    def __init__(self, *observers: ScanObserver):
        self._observers = [obs for obs in observers if obs is not None]

    def add(self, observer: ScanObserver) -> None:
        self._observers.append(observer)

    def _dispatch(self, method: str, *args: object) -> None:
        for observer in self._observers:
            callback = getattr(observer, method, None)
            if callback is None:
                continue
            try:
                callback(*args)
            except Exception as e:
                log.warning("Observer callback failed", callback=method, error=str(e))

    def on_status_changed(self, record: JobRecord) -> None:
        self._dispatch("on_status_changed", record)

    def on_running_changed(self, tool_name: str, running: bool) -> None:
        self._dispatch("on_running_changed", tool_name, running)

    def on_records_refreshed(self, tool_name: str, records: list[JobRecord]) -> None:
        self._dispatch("on_records_refreshed", tool_name, records)

    def on_step_changed(self, step_name: str) -> None:
        self._dispatch("on_step_changed", step_name)

    def on_subdomains_refreshed(self, subdomains: list[str]) -> None:
        self._dispatch("on_subdomains_refreshed", subdomains)


@dataclass
class ScanStateBoard:
    """Externally visible scan state, kept current by observer callbacks."""

    running: dict[str, bool] = field(default_factory=dict)
    latest: dict[str, JobRecord] = field(default_factory=dict)
    records: dict[str, list[JobRecord]] = field(default_factory=dict)
    status_history: list[tuple[str, str]] = field(default_factory=list)
    subdomains: list[str] = field(default_factory=list)
    current_step: str = ""

    def on_status_changed(self, record: JobRecord) -> None:
        self.latest[record.tool_name] = record
        self.status_history.append((record.tool_name, record.status))

    def on_running_changed(self, tool_name: str, running: bool) -> None:
        self.running[tool_name] = running

    def on_records_refreshed(self, tool_name: str, records: list[JobRecord]) -> None:
        self.records[tool_name] = list(records)

    def on_step_changed(self, step_name: str) -> None:
        self.current_step = step_name

    def on_subdomains_refreshed(self, subdomains: list[str]) -> None:
        self.subdomains = list(subdomains)

    def is_running(self, tool_name: str) -> bool:
        return self.running.get(tool_name, False)

    def latest_status(self, tool_name: str) -> str | None:
        record = self.latest.get(tool_name)
        return record.status if record else None

    @property
    def any_running(self) -> bool:
        return any(self.running.values())
