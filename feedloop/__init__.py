"""
feedloop - Save, see results.

Watches a source tree and reruns an ordered pipeline of external commands
(reset state, run tests, gather diagnostics) whenever relevant files change.
"""

__version__ = "0.1.0"
__author__ = "Local Pipeline Team"


__all__ = [
    "LoopConfig",
    "load_config",
    "Step",
    "Pipeline",
    "RunResult",
    "Orchestrator",
    "RunState",
]

from .config import LoopConfig, load_config
from .orchestrator import Orchestrator, RunState
from .pipeline import Pipeline, RunResult
from .step import Step
