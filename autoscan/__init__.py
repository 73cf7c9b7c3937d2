"""autoscan - reconnaissance pipeline orchestration and completion watching."""

__version__ = "0.1.0"

from autoscan.config import Config
from autoscan.runner import PipelineRunner, RunSummary
from autoscan.steps import PipelineDefinition, StepName, default_pipeline
from autoscan.watcher import CompletionWatcher

__all__ = [
    "CompletionWatcher",
    "Config",
    "PipelineDefinition",
    "PipelineRunner",
    "RunSummary",
    "StepName",
    "default_pipeline",
    "__version__",
]
