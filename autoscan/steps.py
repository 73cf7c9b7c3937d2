"""Auto scan step catalog."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator

from autoscan.exceptions import UnknownStepError


class StepName(str, Enum):
    """Closed step vocabulary; values double as the persisted progress marker."""

    IDLE = "idle"
    AMASS = "amass"
    SUBLIST3R = "sublist3r"
    ASSETFINDER = "assetfinder"
    GAU = "gau"
    CTL = "ctl"
    SUBFINDER = "subfinder"
    CONSOLIDATE = "consolidate"
    HTTPX = "httpx"
    SHUFFLEDNS = "shuffledns"
    SHUFFLEDNS_CEWL = "shuffledns_cewl"
    CONSOLIDATE_ROUND2 = "consolidate_round2"
    HTTPX_ROUND2 = "httpx_round2"
    GOSPIDER = "gospider"
    SUBDOMAINIZER = "subdomainizer"
    NUCLEI_SCREENSHOT = "nuclei-screenshot"
    METADATA = "metadata"
    CONSOLIDATE_ROUND3 = "consolidate_round3"
    HTTPX_ROUND3 = "httpx_round3"
    NUCLEI_SCREENSHOT_ROUND3 = "nuclei-screenshot_round3"
    COMPLETED = "completed"

    @classmethod
    def parse(cls, value: "str | StepName") -> "StepName":
        try:
            return cls(value)
        except ValueError as e:
            raise UnknownStepError(str(value)) from e


class StepKind(str, Enum):
    TOOL = "tool"
    CONSOLIDATION = "consolidation"


@dataclass(frozen=True)
class Step:
    """One entry of the pipeline."""

    name: StepName
    kind: StepKind
    tool_name: str | None = None
    # Second scan list to wait on once tool_name finishes (started server-side).
    follow_up_tool: str | None = None
    settle_after_s: float = 0.0
    params: dict[str, Any] = field(default_factory=dict, hash=False)

    def __post_init__(self) -> None:
        if self.kind is StepKind.TOOL and not self.tool_name:
            raise ValueError(f"Tool step {self.name.value} needs a tool_name")
        if self.kind is StepKind.CONSOLIDATION and self.tool_name:
            raise ValueError(f"Consolidation step {self.name.value} cannot run a tool")

    @property
    def is_consolidation(self) -> bool:
        return self.kind is StepKind.CONSOLIDATION


def tool_step(name: StepName, tool_name: str | None = None, **kwargs: Any) -> Step:
    return Step(name=name, kind=StepKind.TOOL, tool_name=tool_name or name.value, **kwargs)


def consolidation_step(name: StepName) -> Step:
    return Step(name=name, kind=StepKind.CONSOLIDATION)


class PipelineDefinition:
    """Ordered, immutable sequence of steps."""

    def __init__(self, steps: list[Step] | tuple[Step, ...]):
        names = [step.name for step in steps]
        if len(set(names)) != len(names):
            raise ValueError("Pipeline step names must be unique")
        if StepName.IDLE in names or StepName.COMPLETED in names:
            raise ValueError("idle/completed are markers, not steps")
        self._steps: tuple[Step, ...] = tuple(steps)
        self._index = {step.name: i for i, step in enumerate(self._steps)}

    def __iter__(self) -> Iterator[Step]:
        return iter(self._steps)

    def __len__(self) -> int:
        return len(self._steps)

    def __getitem__(self, index: int) -> Step:
        return self._steps[index]

    @property
    def steps(self) -> tuple[Step, ...]:
        return self._steps

    def index_of(self, name: "StepName | str") -> int:
        step_name = StepName.parse(name)
        if step_name not in self._index:
            raise UnknownStepError(step_name.value)
        return self._index[step_name]

    def consolidation_positions(self) -> list[int]:
        return [i for i, step in enumerate(self._steps) if step.is_consolidation]

    def tool_steps(self) -> list[Step]:
        return [step for step in self._steps if not step.is_consolidation]


def default_pipeline() -> PipelineDefinition:
    """The auto scan: enumerate, consolidate, then probe in three rounds."""
    return PipelineDefinition(
        [
            tool_step(StepName.AMASS),
            tool_step(StepName.SUBLIST3R),
            tool_step(StepName.ASSETFINDER),
            tool_step(StepName.GAU),
            tool_step(StepName.CTL),
            tool_step(StepName.SUBFINDER),
            consolidation_step(StepName.CONSOLIDATE),
            tool_step(StepName.HTTPX),
            tool_step(StepName.SHUFFLEDNS),
            tool_step(
                StepName.SHUFFLEDNS_CEWL,
                "cewl",
                follow_up_tool="shuffledns_custom",
                settle_after_s=5.0,
            ),
            consolidation_step(StepName.CONSOLIDATE_ROUND2),
            tool_step(StepName.HTTPX_ROUND2, "httpx"),
            tool_step(StepName.GOSPIDER),
            tool_step(StepName.SUBDOMAINIZER),
            tool_step(StepName.NUCLEI_SCREENSHOT),
            tool_step(StepName.METADATA),
            consolidation_step(StepName.CONSOLIDATE_ROUND3),
            tool_step(StepName.HTTPX_ROUND3, "httpx"),
            tool_step(StepName.NUCLEI_SCREENSHOT_ROUND3, "nuclei-screenshot"),
        ]
    )
