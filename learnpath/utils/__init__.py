"""
Utility modules for LearnPath.

- step_graph: topological sort and next-step resolution
- validation: JSON Schema validation of persisted records
- progress: performance analytics
- persistence: catalog stores
- log: logging setup

Only the dependency-free helpers are re-exported here; import the
model-aware modules (validation, progress, persistence) directly.
"""

from .step_graph import (
    check_acyclic_and_toposort,
    check_step_graph,
    eligible_steps,
    find_cycle_members,
    next_step,
)
from .log import get_logger, setup_logging

__all__ = [
    "check_acyclic_and_toposort",
    "check_step_graph",
    "eligible_steps",
    "find_cycle_members",
    "next_step",
    "get_logger",
    "setup_logging",
]
