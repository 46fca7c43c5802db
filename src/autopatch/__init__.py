"""Patch execution engine for an autonomous code-change agent."""

from .adaptive import decide_batch_size, termination_reached, update_confidence
from .config import AgentSettings, ConfigError, load_settings
from .orchestrator import IterationOrchestrator, IterationReport, IterationStatus
from .refinement import RefinementResult, refine_patch

__version__ = "0.1.0"

__all__ = [
    "AgentSettings",
    "ConfigError",
    "IterationOrchestrator",
    "IterationReport",
    "IterationStatus",
    "RefinementResult",
    "__version__",
    "decide_batch_size",
    "load_settings",
    "refine_patch",
    "termination_reached",
    "update_confidence",
]
