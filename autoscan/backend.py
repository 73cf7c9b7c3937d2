"""Client for the scan backend's job-control endpoints."""

from __future__ import annotations

from typing import Any, Protocol

import httpx

from autoscan import __version__
from autoscan.config import BackendConfig, get_config
from autoscan.exceptions import BackendError, BackendHTTPError, MalformedPayloadError
from autoscan.logging import get_logger

log = get_logger(__name__)

# Tools the backend knows how to run or list.
SCAN_TOOLS = frozenset(
    {
        "amass",
        "sublist3r",
        "assetfinder",
        "gau",
        "ctl",
        "subfinder",
        "httpx",
        "shuffledns",
        "cewl",
        "shuffledns_custom",
        "gospider",
        "subdomainizer",
        "nuclei-screenshot",
        "metadata",
    }
)

# Endpoints that do not follow the /{tool}/run and /scopetarget/{id}/scans/{tool} shape.
_START_PATHS = {
    "nuclei-screenshot": "/scopetarget/{target_id}/nuclei-screenshot/run",
}
_LIST_PATHS = {
    "shuffledns_custom": "/api/scope-targets/{target_id}/shufflednscustom-scans",
}


def start_path(tool_name: str, target_id: str) -> str:
    template = _START_PATHS.get(tool_name, "/{tool}/run")
    return template.format(tool=tool_name, target_id=target_id)


def list_path(tool_name: str, target_id: str) -> str:
    template = _LIST_PATHS.get(tool_name, "/scopetarget/{target_id}/scans/{tool}")
    return template.format(tool=tool_name, target_id=target_id)


class ScanBackend(Protocol):
    """Job-control boundary consumed by the engine."""

    async def start_scan(
        self, tool_name: str, target_id: str, payload: dict[str, Any] | None
    ) -> dict[str, Any]: ...

    async def list_scans(self, tool_name: str, target_id: str) -> Any: ...

    async def get_scan(self, tool_name: str, scan_id: str) -> dict[str, Any]: ...

    async def consolidate(self, target_id: str) -> dict[str, Any]: ...

    async def consolidated_subdomains(self, target_id: str) -> list[str]: ...

    async def list_targets(self) -> list[dict[str, Any]]: ...

    async def save_step(self, target_id: str, step: str) -> None: ...

    async def load_step(self, target_id: str) -> str | None: ...

    async def post_final_stats(self, session_id: str, stats: dict[str, Any]) -> None: ...


class BackendClient:
    """``ScanBackend`` over HTTP."""

    def __init__(
        self,
        config: BackendConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        cfg = config or get_config().backend
        self.base_url = cfg.base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=cfg.timeout,
            headers={"User-Agent": cfg.user_agent or f"autoscan/{__version__}"},
        )

    async def __aenter__(self) -> "BackendClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Any = None,
        allow_empty: bool = False,
    ) -> Any:
        try:
            if json_body is None:
                response = await self.client.request(method, path)
            else:
                response = await self.client.request(method, path, json=json_body)
        except httpx.HTTPError as e:
            log.debug("Backend request failed", method=method, path=path, error=str(e))
            raise BackendError(f"{method} {path} failed: {e}") from e

        if response.status_code < 200 or response.status_code >= 300:
            reason = response.reason_phrase or response.text[:200]
            raise BackendHTTPError(
                f"{method} {path} returned {response.status_code} {reason}".strip(),
                status_code=response.status_code,
            )

        if not response.content:
            if allow_empty:
                return None
            raise MalformedPayloadError(f"{method} {path} returned an empty body")
        try:
            return response.json()
        except ValueError as e:
            if allow_empty:
                return None
            raise MalformedPayloadError(f"{method} {path} returned non-JSON body") from e

    async def start_scan(
        self, tool_name: str, target_id: str, payload: dict[str, Any] | None
    ) -> dict[str, Any]:
        data = await self._request(
            "POST", start_path(tool_name, target_id), json_body=payload, allow_empty=True
        )
        return data if isinstance(data, dict) else {}

    async def list_scans(self, tool_name: str, target_id: str) -> Any:
        return await self._request("GET", list_path(tool_name, target_id))

    async def get_scan(self, tool_name: str, scan_id: str) -> dict[str, Any]:
        data = await self._request("GET", f"/{tool_name}/{scan_id}")
        if not isinstance(data, dict):
            raise MalformedPayloadError(f"Expected {tool_name} scan object for {scan_id}")
        return data

    async def consolidate(self, target_id: str) -> dict[str, Any]:
        data = await self._request("GET", f"/consolidate-subdomains/{target_id}")
        return data if isinstance(data, dict) else {}

    async def consolidated_subdomains(self, target_id: str) -> list[str]:
        data = await self._request("GET", f"/consolidated-subdomains/{target_id}")
        if isinstance(data, dict):
            data = data.get("subdomains")
        if data is None:
            return []
        if not isinstance(data, list):
            raise MalformedPayloadError("Expected a list of consolidated subdomains")
        return [str(item) for item in data]

    async def list_targets(self) -> list[dict[str, Any]]:
        data = await self._request("GET", "/scopetarget/read")
        if not isinstance(data, list):
            raise MalformedPayloadError("Expected a list of scope targets")
        return [item for item in data if isinstance(item, dict)]

    async def save_step(self, target_id: str, step: str) -> None:
        await self._request(
            "POST",
            f"/api/auto-scan-state/{target_id}",
            json_body={"current_step": step},
            allow_empty=True,
        )

    async def load_step(self, target_id: str) -> str | None:
        try:
            data = await self._request("GET", f"/api/auto-scan-state/{target_id}", allow_empty=True)
        except BackendHTTPError as e:
            if e.status_code == 404:
                return None
            raise
        if not isinstance(data, dict):
            return None
        step = data.get("current_step")
        return str(step) if step else None

    async def post_final_stats(self, session_id: str, stats: dict[str, Any]) -> None:
        await self._request(
            "POST",
            f"/api/auto-scan/session/{session_id}/final-stats",
            json_body=stats,
            allow_empty=True,
        )
