"""Scope targets under reconnaissance."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class ScanTarget:
    """A scope target as stored by the backend."""

    id: str
    scope_target: str
    type: str = "Wildcard"

    @property
    def domain(self) -> str:
        """Bare domain handed to the tools (``*.example.com`` -> ``example.com``)."""
        value = self.scope_target.strip()
        if value.startswith("*."):
            value = value[2:]
        return value

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "ScanTarget":
        return cls(
            id=str(data.get("id") or ""),
            scope_target=str(data.get("scope_target") or ""),
            type=str(data.get("type") or "Wildcard"),
        )
