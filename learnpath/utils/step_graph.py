"""
Step graph utilities: acyclicity checking and next-step resolution.

Prerequisites are held as adjacency sets keyed by id (never object
back-references), so every function here is a pure computation over its
inputs and can be tested in isolation.
"""

from __future__ import annotations

import bisect
import logging
from typing import TYPE_CHECKING, AbstractSet, Hashable, Iterable, Mapping, Optional, Sequence, TypeVar

from ..errors import GraphDeadlock

if TYPE_CHECKING:
    from ..models.path import Step

logger = logging.getLogger(__name__)

NodeId = TypeVar("NodeId", bound=Hashable)


def check_acyclic_and_toposort(
    graph: Mapping[NodeId, Iterable[NodeId]],
    sort_key=None,
) -> tuple[bool, list[NodeId]]:
    """
    Check if a prerequisite graph is acyclic and return a topological order.

    Uses Kahn's algorithm with deterministic ordering: when several nodes
    have in-degree 0 they are released in ``sort_key`` order.

    Args:
        graph: Mapping of node id -> ids it depends on (its prerequisites).
            Prerequisites that are not themselves keys are ignored here;
            reference checking is the validator's job.
        sort_key: Optional key function for tie-breaking (default: node id)

    Returns:
        Tuple of (is_acyclic, ordered_ids). ``ordered_ids`` is partial when
        a cycle exists and contains only the nodes that could be released.
    """
    if not graph:
        return True, []

    key = sort_key or (lambda node: node)
    indeg = {node: 0 for node in graph}
    dependents: dict = {node: set() for node in graph}

    for node, prereqs in graph.items():
        for prereq in set(prereqs or ()):
            if prereq in dependents:
                indeg[node] += 1
                dependents[prereq].add(node)

    queue = sorted((n for n, d in indeg.items() if d == 0), key=key)
    queue_keys = [key(n) for n in queue]
    order = []

    while queue:
        node = queue.pop(0)
        queue_keys.pop(0)
        order.append(node)
        for dep in sorted(dependents[node], key=key):
            indeg[dep] -= 1
            if indeg[dep] == 0:
                pos = bisect.bisect(queue_keys, key(dep))
                queue_keys.insert(pos, key(dep))
                queue.insert(pos, dep)

    return len(order) == len(graph), order


def find_cycle_members(graph: Mapping[NodeId, Iterable[NodeId]]) -> set:
    """Return the ids that cannot be released by Kahn's algorithm."""
    _, order = check_acyclic_and_toposort(graph, sort_key=str)
    return set(graph) - set(order)


def eligible_steps(
    steps: Sequence["Step"],
    completed_step_ids: AbstractSet[str],
) -> list["Step"]:
    """All incomplete steps whose prerequisites are satisfied, in ascending order."""
    return [
        step
        for step in sorted(steps, key=lambda s: s.order)
        if step.id not in completed_step_ids
        and step.prerequisite_ids <= completed_step_ids
    ]


def next_step(
    steps: Sequence["Step"],
    completed_step_ids: AbstractSet[str],
    path_id: Optional[str] = None,
) -> Optional["Step"]:
    """
    Resolve the next eligible step of a path.

    Scans steps in ascending ``order`` and returns the first one that is not
    completed and whose prerequisites are all completed.

    Args:
        steps: All steps of one path
        completed_step_ids: Ids of steps the user has completed
        path_id: Used only for error reporting

    Returns:
        The next step, or None when every step is completed

    Raises:
        GraphDeadlock: Steps remain incomplete but none is eligible
    """
    remaining = []
    for step in sorted(steps, key=lambda s: s.order):
        if step.id in completed_step_ids:
            continue
        if step.prerequisite_ids <= completed_step_ids:
            logger.debug("Next step for path %s: %s (order %d)", path_id, step.id, step.order)
            return step
        remaining.append(step.id)

    if remaining:
        raise GraphDeadlock(path_id, remaining)
    return None


def check_step_graph(path_id: str, steps: Sequence["Step"]) -> list[str]:
    """
    Structural checks for the steps of one path.

    - step ids unique, ``order`` values unique
    - every step belongs to ``path_id``
    - prerequisites reference steps of the same path (no self or cross-path edges)
    - the prerequisite relation is acyclic

    Returns:
        List of error messages (empty if valid)
    """
    errors = []
    ids = [s.id for s in steps]
    seen_ids, seen_orders = set(), {}

    for step in steps:
        if step.id in seen_ids:
            errors.append(f"Duplicate step id '{step.id}'")
        seen_ids.add(step.id)
        if step.order in seen_orders:
            errors.append(
                f"Steps '{seen_orders[step.order]}' and '{step.id}' share order {step.order}"
            )
        else:
            seen_orders[step.order] = step.id
        if step.path_id != path_id:
            errors.append(
                f"Step '{step.id}' belongs to path '{step.path_id}', not '{path_id}'"
            )

    id_set = set(ids)
    for step in steps:
        for prereq in sorted(step.prerequisite_ids):
            if prereq == step.id:
                errors.append(f"Step '{step.id}' lists itself as a prerequisite")
            elif prereq not in id_set:
                errors.append(
                    f"Step '{step.id}' references prerequisite '{prereq}' "
                    f"outside path '{path_id}'"
                )

    if errors:
        return errors

    graph = {s.id: s.prerequisite_ids for s in steps}
    order_of = {s.id: s.order for s in steps}
    acyclic, _ = check_acyclic_and_toposort(graph, sort_key=lambda sid: order_of[sid])
    if not acyclic:
        members = ", ".join(sorted(find_cycle_members(graph)))
        errors.append(f"Step prerequisite graph has a cycle involving: {members}")
    return errors
