import pytest

from autoscan.exceptions import UnknownStepError
from autoscan.steps import (
    PipelineDefinition,
    Step,
    StepKind,
    StepName,
    consolidation_step,
    default_pipeline,
    tool_step,
)


def test_default_pipeline_order():
    names = [step.name.value for step in default_pipeline()]

    assert names == [
        "amass",
        "sublist3r",
        "assetfinder",
        "gau",
        "ctl",
        "subfinder",
        "consolidate",
        "httpx",
        "shuffledns",
        "shuffledns_cewl",
        "consolidate_round2",
        "httpx_round2",
        "gospider",
        "subdomainizer",
        "nuclei-screenshot",
        "metadata",
        "consolidate_round3",
        "httpx_round3",
        "nuclei-screenshot_round3",
    ]


def test_consolidation_separates_enumeration_from_probing():
    pipeline = default_pipeline()

    assert pipeline.consolidation_positions() == [6, 10, 16]
    for position in pipeline.consolidation_positions():
        assert pipeline[position + 1].tool_name == "httpx"


def test_httpx_rounds_reuse_the_httpx_tool():
    tools = {step.name: step.tool_name for step in default_pipeline().tool_steps()}

    assert tools[StepName.HTTPX_ROUND2] == "httpx"
    assert tools[StepName.HTTPX_ROUND3] == "httpx"
    assert tools[StepName.NUCLEI_SCREENSHOT_ROUND3] == "nuclei-screenshot"
    assert tools[StepName.SHUFFLEDNS_CEWL] == "cewl"


def test_cewl_step_waits_on_custom_shuffledns():
    step = default_pipeline()[default_pipeline().index_of("shuffledns_cewl")]

    assert step.follow_up_tool == "shuffledns_custom"
    assert step.settle_after_s == 5.0


def test_index_of_rejects_markers_and_garbage():
    pipeline = default_pipeline()

    assert pipeline.index_of(StepName.HTTPX_ROUND2) == 11
    with pytest.raises(UnknownStepError):
        pipeline.index_of("idle")
    with pytest.raises(UnknownStepError):
        pipeline.index_of("nmap")


def test_definition_validation():
    with pytest.raises(ValueError):
        PipelineDefinition([tool_step(StepName.AMASS), tool_step(StepName.AMASS)])
    with pytest.raises(ValueError):
        PipelineDefinition([consolidation_step(StepName.IDLE)])
    with pytest.raises(ValueError):
        Step(name=StepName.CONSOLIDATE, kind=StepKind.TOOL)
    with pytest.raises(ValueError):
        Step(name=StepName.CONSOLIDATE, kind=StepKind.CONSOLIDATION, tool_name="amass")


def test_step_name_parse():
    assert StepName.parse("gospider") is StepName.GOSPIDER
    with pytest.raises(UnknownStepError):
        StepName.parse("unknown")


def test_steps_are_hashable():
    pipeline = default_pipeline()

    assert len(set(pipeline.steps)) == len(pipeline)
    assert hash(tool_step(StepName.AMASS, params={"mode": "passive"})) == hash(tool_step(StepName.AMASS))
