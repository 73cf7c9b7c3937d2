"""Job records as reported by the scan backend."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from autoscan.exceptions import MalformedPayloadError


class JobStatus:
    """Status vocabulary for job records."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    SUCCESS = "success"
    FAILED = "failed"
    ERROR = "error"

    # Produced by the watcher, never by the backend.
    TIMEOUT = "timeout"
    HARD_TIMEOUT = "hard_timeout"
    ABSOLUTE_TIMEOUT = "absolute_timeout"
    NO_SCANS = "no_scans"
    PERSISTENT_ERROR = "persistent_error"


BACKEND_TERMINAL_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.SUCCESS, JobStatus.FAILED, JobStatus.ERROR}
)
SYNTHETIC_STATUSES = frozenset(
    {
        JobStatus.TIMEOUT,
        JobStatus.HARD_TIMEOUT,
        JobStatus.ABSOLUTE_TIMEOUT,
        JobStatus.NO_SCANS,
        JobStatus.PERSISTENT_ERROR,
    }
)
SUCCESS_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.SUCCESS})


def is_terminal(status: str) -> bool:
    """True when no further change is expected for a record with this status."""
    return status in BACKEND_TERMINAL_STATUSES or status in SYNTHETIC_STATUSES


def utcnow() -> datetime:
    return datetime.now(UTC)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp into an aware UTC datetime; None if unusable."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


@dataclass
class JobRecord:
    """One scan of one tool against one target."""

    id: str
    target_id: str
    tool_name: str
    status: str
    created_at: datetime | None = None
    result_ref: Any = None
    synthetic: bool = False
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)

    @property
    def succeeded(self) -> bool:
        return self.status in SUCCESS_STATUSES

    @classmethod
    def from_payload(cls, data: dict[str, Any], tool_name: str, target_id: str) -> "JobRecord":
        """Build a record from the backend's snake_case JSON object."""
        scan_id = data.get("id") or data.get("scan_id") or ""
        return cls(
            id=str(scan_id),
            target_id=str(data.get("scope_target_id") or target_id),
            tool_name=tool_name,
            status=str(data.get("status") or "").strip().lower(),
            created_at=parse_timestamp(data.get("created_at")),
            result_ref=data.get("result"),
            raw=dict(data),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "target_id": self.target_id,
            "tool_name": self.tool_name,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "result_ref": self.result_ref,
            "synthetic": self.synthetic,
        }


def parse_job_records(payload: Any, tool_name: str, target_id: str) -> list[JobRecord]:
    """Turn a list-by-tool response into records.

    Accepts a bare JSON array or an object with a ``scans`` array. An empty
    list is returned as-is; anything uninterpretable raises
    ``MalformedPayloadError``.
    """
    if isinstance(payload, dict) and "scans" in payload:
        payload = payload["scans"]
    if payload is None:
        return []
    if not isinstance(payload, list):
        raise MalformedPayloadError(
            f"Expected a list of {tool_name} scans, got {type(payload).__name__}"
        )
    records = [
        JobRecord.from_payload(item, tool_name, target_id)
        for item in payload
        if isinstance(item, dict)
    ]
    if payload and not records:
        raise MalformedPayloadError(f"No usable {tool_name} scan objects in response")
    return records


def _recency_key(record: JobRecord) -> tuple[bool, datetime, str]:
    created = record.created_at or datetime.min.replace(tzinfo=UTC)
    return (record.created_at is not None, created, record.id)


def latest_record(records: list[JobRecord]) -> JobRecord | None:
    """Most recent scan: greatest ``created_at``, ties broken by greatest id."""
    if not records:
        return None
    return max(records, key=_recency_key)


def synthetic_record(
    tool_name: str,
    target_id: str,
    status: str,
    detail: str = "",
    scan_id: str = "",
) -> JobRecord:
    """Record produced by the watcher when the backend never gave a terminal one."""
    return JobRecord(
        id=scan_id,
        target_id=target_id,
        tool_name=tool_name,
        status=status,
        created_at=utcnow(),
        synthetic=True,
        raw={"detail": detail},
    )
