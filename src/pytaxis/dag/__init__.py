"""Workflow graph loading, validation and static analysis."""

from pytaxis.dag.loader import load_executor_spec, load_workflow, load_workflow_json
from pytaxis.dag.validator import (
    DagSummary,
    ancestors,
    find_cycle,
    level_graph,
    ready_sets,
    referenced_tasks,
    summary,
    topological_order,
    validate,
)

__all__ = [
    "load_workflow",
    "load_workflow_json",
    "load_executor_spec",
    "validate",
    "find_cycle",
    "ancestors",
    "referenced_tasks",
    "topological_order",
    "ready_sets",
    "summary",
    "level_graph",
    "DagSummary",
]
