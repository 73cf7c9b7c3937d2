"""Starting scans on the backend."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from autoscan.backend import SCAN_TOOLS, ScanBackend
from autoscan.exceptions import BackendError, LaunchError, UnknownToolError
from autoscan.logging import get_logger
from autoscan.observers import NullObserver, ScanObserver
from autoscan.records import JobRecord, JobStatus, utcnow
from autoscan.targets import ScanTarget

log = get_logger(__name__)

PayloadBuilder = Callable[[ScanTarget], dict[str, Any] | None]


def _fqdn_payload(target: ScanTarget) -> dict[str, Any]:
    return {"fqdn": target.domain}


def _scope_target_payload(target: ScanTarget) -> dict[str, Any]:
    return {"scope_target_id": target.id}


def _no_payload(target: ScanTarget) -> None:
    return None


# Tools started with something other than {"fqdn": <domain>}.
PAYLOAD_BUILDERS: dict[str, PayloadBuilder] = {
    "metadata": _scope_target_payload,
    "nuclei-screenshot": _no_payload,
}


def build_start_payload(
    tool_name: str, target: ScanTarget, params: dict[str, Any] | None = None
) -> dict[str, Any] | None:
    """Request body for starting ``tool_name`` against ``target``."""
    builder = PAYLOAD_BUILDERS.get(tool_name, _fqdn_payload)
    payload = builder(target)
    if params:
        payload = {**(payload or {}), **params}
    return payload


@dataclass
class JobHandle:
    """What the launcher knows about a scan it just started."""

    tool_name: str
    target_id: str
    scan_id: str = ""
    started_at: datetime = field(default_factory=utcnow)
    response: dict[str, Any] = field(default_factory=dict)


class JobLauncher:
    """Sends the start request for one scan and returns immediately."""

    def __init__(self, backend: ScanBackend, known_tools: frozenset[str] | set[str] = SCAN_TOOLS):
        self.backend = backend
        self.known_tools = frozenset(known_tools)

    async def start(
        self,
        tool_name: str,
        target: ScanTarget,
        params: dict[str, Any] | None = None,
        observer: ScanObserver | None = None,
    ) -> JobHandle:
        """Start ``tool_name`` against ``target``.

        Raises:
            UnknownToolError: tool is not in the catalog
            LaunchError: the backend refused or could not be reached
        """
        if tool_name not in self.known_tools:
            raise UnknownToolError(tool_name)

        obs = observer or NullObserver()
        payload = build_start_payload(tool_name, target, params)
        log.info("Starting scan", tool=tool_name, target_id=target.id, domain=target.domain)
        try:
            response = await self.backend.start_scan(tool_name, target.id, payload)
        except BackendError as e:
            log.error("Scan start rejected", tool=tool_name, target_id=target.id, error=str(e))
            raise LaunchError(tool_name, str(e)) from e

        handle = JobHandle(
            tool_name=tool_name,
            target_id=target.id,
            scan_id=str(response.get("scan_id") or ""),
            response=response,
        )
        obs.on_status_changed(
            JobRecord(
                id=handle.scan_id,
                target_id=target.id,
                tool_name=tool_name,
                status=JobStatus.PENDING,
                created_at=handle.started_at,
            )
        )
        obs.on_running_changed(tool_name, True)
        log.debug("Scan started", tool=tool_name, scan_id=handle.scan_id)
        return handle
