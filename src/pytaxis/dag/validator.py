"""
Structural validation and static analysis of workflow definitions.

**Design Decision Hidden** (Parnas's Information Hiding):
- **"How a definition is proven runnable"**

Validation runs once when a definition is loaded. Runs never re-check the
graph; they rely on these guarantees:

1. Task names are unique and well formed
2. Every dependency names an existing task
3. The dependency graph is acyclic
4. Every ``{{ reference }}`` in `when` and `inputs` resolves to a global
   parameter or to an output declared by an upstream (ancestor) task

All problems are collected and reported together in one ValidationError.

**Levels**:
Static analysis groups tasks by dependency depth. Tasks on the same level
have no dependencies on each other and may run concurrently:

```
Level 0: [checkout]
         ↓
Level 1: [lint] [unit-tests] (2 parallel tasks)
         ↓
Level 2: [package]
```
"""

from __future__ import annotations

import re
from collections import Counter, deque
from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from pytaxis.errors import EvalError, ValidationError
from pytaxis.expression.parser import parse, references
from pytaxis.expression.scope import OutputRef, parse_path
from pytaxis.models.definition import WorkflowDefinition

TASK_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_\-]*$")


def check_unique_names(names: Iterable[str]) -> None:
    """Reject repeated task names.

    Must run on the raw list of names: once templates are keyed by name
    in a mapping, duplicates are no longer visible.

    Raises:
        ValidationError: If any name occurs more than once
    """
    duplicates = sorted(name for name, count in Counter(names).items() if count > 1)
    if duplicates:
        raise ValidationError([f"duplicate task name '{name}'" for name in duplicates])


def validate(definition: WorkflowDefinition) -> None:
    """
    Validate a definition without running it.

    **Raises**:
        ValidationError: Listing every problem found
    """
    problems: list[str] = []

    if not definition.tasks:
        problems.append(f"workflow '{definition.name}' has no tasks")

    for key, task in definition.tasks.items():
        if key != task.name:
            problems.append(f"task registered as '{key}' is named '{task.name}'")
        if not TASK_NAME_PATTERN.match(task.name):
            problems.append(
                f"invalid task name '{task.name}' (letters, digits, '_' and '-' only)"
            )
        if task.timeout is not None and task.timeout <= 0:
            problems.append(f"task '{task.name}' timeout must be positive")
        if len(set(task.outputs)) != len(task.outputs):
            problems.append(f"task '{task.name}' declares an output more than once")

    # Check for invalid dependencies
    for task in definition.tasks.values():
        for dep in task.dependencies:
            if dep == task.name:
                problems.append(f"task '{task.name}' depends on itself")
            elif dep not in definition.tasks:
                problems.append(f"task '{task.name}' depends on non-existent task '{dep}'")

    if problems:
        raise ValidationError(problems)

    cycle = find_cycle(definition)
    if cycle:
        raise ValidationError(f"cycle detected in dependency graph: {' -> '.join(cycle)}")

    problems.extend(_check_references(definition))
    if problems:
        raise ValidationError(problems)


def find_cycle(definition: WorkflowDefinition) -> list[str] | None:
    """
    Find a dependency cycle using DFS with a recursion stack.

    **Returns**:
        The cycle as a list of task names (first name repeated at the end),
        or None when the graph is acyclic
    """
    visited: set[str] = set()
    rec_stack: list[str] = []
    on_stack: set[str] = set()

    def visit(name: str) -> list[str] | None:
        visited.add(name)
        rec_stack.append(name)
        on_stack.add(name)

        for dep in definition.tasks[name].dependencies:
            if dep not in definition.tasks:
                continue
            if dep in on_stack:
                return rec_stack[rec_stack.index(dep):] + [dep]
            if dep not in visited:
                found = visit(dep)
                if found:
                    return found

        rec_stack.pop()
        on_stack.discard(name)
        return None

    for name in definition.tasks:
        if name not in visited:
            found = visit(name)
            if found:
                # Dependencies point backwards; report in execution order
                return list(reversed(found))
    return None


def ancestors(definition: WorkflowDefinition, task_name: str) -> set[str]:
    """All tasks `task_name` transitively depends on."""
    seen: set[str] = set()
    stack = list(definition.tasks[task_name].dependencies)
    while stack:
        name = stack.pop()
        if name in seen:
            continue
        seen.add(name)
        stack.extend(definition.tasks[name].dependencies)
    return seen


def task_references(definition: WorkflowDefinition, task_name: str) -> set[str]:
    """Reference paths used by a task's `when` gate and input templates.

    Raises:
        ExpressionSyntaxError: If a gate or template is malformed
    """
    task = definition.tasks[task_name]
    refs: set[str] = set()
    if task.when is not None:
        refs |= references(parse(task.when))
    for binding in task.inputs.values():
        if binding.is_template:
            refs |= references(binding.value)
    return refs


def referenced_tasks(definition: WorkflowDefinition, task_name: str) -> set[str]:
    """Upstream tasks whose outputs `task_name` reads."""
    tasks = set()
    for path in task_references(definition, task_name):
        ref = parse_path(path)
        if isinstance(ref, OutputRef):
            tasks.add(ref.task_name)
    return tasks


def _check_references(definition: WorkflowDefinition) -> list[str]:
    problems = []
    for task in definition.tasks.values():
        try:
            refs = task_references(definition, task.name)
        except EvalError as e:
            problems.append(f"task '{task.name}': {e}")
            continue

        upstream = ancestors(definition, task.name)
        for path in sorted(refs):
            try:
                ref = parse_path(path)
            except EvalError as e:
                problems.append(f"task '{task.name}': {e}")
                continue

            if isinstance(ref, OutputRef):
                if ref.task_name not in upstream:
                    problems.append(
                        f"task '{task.name}' references '{path}' but "
                        f"'{ref.task_name}' is not an upstream task"
                    )
                elif ref.param_name not in definition.tasks[ref.task_name].outputs:
                    problems.append(
                        f"task '{task.name}' references '{path}' but "
                        f"'{ref.task_name}' declares no output '{ref.param_name}'"
                    )
            elif ref.name not in definition.parameters:
                problems.append(
                    f"task '{task.name}' references unknown global parameter '{ref.name}'"
                )
    return problems


# =============================================================================
# Static analysis
# =============================================================================


def topological_order(definition: WorkflowDefinition) -> list[str]:
    """Topological sort using Kahn's algorithm.

    Ties are broken by declaration order, so the result is deterministic.

    Raises:
        ValidationError: If the graph has cycles
    """
    in_degree = {name: len(task.dependencies) for name, task in definition.tasks.items()}
    queue = deque(name for name, degree in in_degree.items() if degree == 0)
    result = []

    while queue:
        name = queue.popleft()
        result.append(name)
        for dependent in definition.dependents_of(name):
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)

    if len(result) != len(definition.tasks):
        remaining = [name for name in definition.tasks if name not in result]
        raise ValidationError(f"dependency graph has cycles. Remaining tasks: {remaining}")

    return result


def ready_sets(definition: WorkflowDefinition) -> Iterator[frozenset[str]]:
    """Lazily yield sets of tasks that can run concurrently.

    Each yielded set contains the tasks whose dependencies all appeared
    in earlier sets. The generator is single-use: once consumed it cannot
    be restarted. It describes the static shape only; runs recompute
    readiness because `when` gates may prune branches.
    """
    in_degree = {name: len(task.dependencies) for name, task in definition.tasks.items()}
    current = [name for name, degree in in_degree.items() if degree == 0]

    while current:
        yield frozenset(current)
        following = []
        for name in current:
            for dependent in definition.dependents_of(name):
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    following.append(dependent)
        current = following


def calculate_depths(definition: WorkflowDefinition) -> dict[str, int]:
    """
    Depth of each task (distance from a root).

    Root tasks have depth 0, their dependents depth 1, etc.
    """
    depths: dict[str, int] = {}
    for name in topological_order(definition):
        deps = definition.tasks[name].dependencies
        depths[name] = 1 + max(depths[d] for d in deps) if deps else 0
    return depths


@dataclass
class DagSummary:
    """
    Summary information about a workflow graph.

    **Attributes**:
        total_tasks: Total number of tasks
        root_count: Number of tasks with no dependencies
        leaf_count: Number of tasks nothing depends on
        max_depth: Maximum depth of the graph
        roots: Root task names
        leaves: Leaf task names
    """

    total_tasks: int
    root_count: int
    leaf_count: int
    max_depth: int
    roots: list[str]
    leaves: list[str]


def summary(definition: WorkflowDefinition) -> DagSummary:
    roots = [t.name for t in definition.tasks.values() if not t.dependencies]

    all_deps: set[str] = set()
    for task in definition.tasks.values():
        all_deps.update(task.dependencies)
    leaves = [name for name in definition.tasks if name not in all_deps]

    depths = calculate_depths(definition)
    return DagSummary(
        total_tasks=len(definition.tasks),
        root_count=len(roots),
        leaf_count=len(leaves),
        max_depth=max(depths.values()) if depths else 0,
        roots=roots,
        leaves=leaves,
    )


def level_graph(definition: WorkflowDefinition) -> str:
    """
    Level-based view showing which tasks may run in parallel.

    **Returns**:
        Multi-line string representation
    """
    output = f"Workflow '{definition.name}' levels ({len(definition.tasks)} tasks):\n\n"

    depths = calculate_depths(definition)
    max_level = max(depths.values()) if depths else 0
    levels: list[list[str]] = [[] for _ in range(max_level + 1)]
    for name in definition.tasks:
        levels[depths[name]].append(name)

    for level, names in enumerate(levels):
        if not names:
            continue
        parallel_note = f" ({len(names)} parallel tasks)" if len(names) > 1 else ""
        output += f"Level {level}: [{'] ['.join(names)}]{parallel_note}\n"
        if level < max_level:
            output += "         ↓\n"

    return output
