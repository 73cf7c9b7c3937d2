"""Re-reading authoritative scan results after a watch resolves."""

from __future__ import annotations

from autoscan.backend import ScanBackend
from autoscan.exceptions import BackendError
from autoscan.logging import get_logger
from autoscan.observers import NullObserver, ScanObserver
from autoscan.records import JobRecord, latest_record, parse_job_records

log = get_logger(__name__)

# Tools whose /{tool}/{scan_id} endpoint returns richer fields than the list.
DETAIL_TOOLS = frozenset({"httpx"})


class ResultRefresher:
    """Republishes the backend's view of a tool's scans.

    The backend may commit final result metadata shortly after flipping the
    status to terminal, so this second read runs after the watch resolves.
    Safe to call any number of times.
    """

    def __init__(self, backend: ScanBackend, detail_tools: frozenset[str] | set[str] = DETAIL_TOOLS):
        self.backend = backend
        self.detail_tools = frozenset(detail_tools)

    async def sync(
        self,
        tool_name: str,
        target_id: str,
        observer: ScanObserver | None = None,
        *,
        publish_latest: bool = True,
    ) -> JobRecord | None:
        """Re-read the scan list and publish it.

        With ``publish_latest=False`` the latest record is returned but not
        pushed as a status change, so a give-up status set by the watcher
        stays visible.
        """
        obs = observer or NullObserver()
        payload = await self.backend.list_scans(tool_name, target_id)
        records = parse_job_records(payload, tool_name, target_id)
        obs.on_records_refreshed(tool_name, records)

        latest = latest_record(records)
        if latest is None:
            log.debug("Nothing to refresh", tool=tool_name, target_id=target_id)
            return None

        if tool_name in self.detail_tools:
            latest = await self._with_detail(latest)

        if publish_latest:
            obs.on_status_changed(latest)
        log.debug("Results refreshed", tool=tool_name, scan_id=latest.id, status=latest.status)
        return latest

    async def _with_detail(self, record: JobRecord) -> JobRecord:
        scan_id = str(record.raw.get("scan_id") or record.id)
        if not scan_id:
            return record
        try:
            data = await self.backend.get_scan(record.tool_name, scan_id)
        except BackendError as e:
            log.warning("Scan detail fetch failed", tool=record.tool_name, scan_id=scan_id, error=str(e))
            return record
        detailed = JobRecord.from_payload(data, record.tool_name, record.target_id)
        if not detailed.id:
            detailed.id = record.id
        if not detailed.status:
            detailed.status = record.status
        if detailed.created_at is None:
            detailed.created_at = record.created_at
        return detailed
