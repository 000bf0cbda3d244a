"""
Tests for loading and validating workflow definitions.

Covers:
- Loading the dict/JSON form (aliases, parameter lists, executor specs)
- Structural validation (names, dependencies, cycles)
- Reference validation against upstream outputs and global parameters
- Definition hashing
- Static analysis (topological order, ready sets, summary, levels)
"""

import pytest

from pytaxis.dag import (
    ancestors,
    find_cycle,
    level_graph,
    load_workflow,
    load_workflow_json,
    ready_sets,
    referenced_tasks,
    summary,
    topological_order,
)
from pytaxis.errors import ValidationError
from pytaxis.models import (
    ApiCallSpec,
    CallableSpec,
    ContainerSpec,
    OpaqueSpec,
    RetryPolicy,
    ShellSpec,
    TaskTemplate,
    WorkflowDefinition,
)


def _release_data():
    return {
        "name": "release",
        "parameters": {"env": "staging", "version": None},
        "tasks": [
            {
                "name": "build",
                "outputs": ["image"],
                "executor": {"type": "container", "image": "builder:1", "command": ["make"]},
                "retry": {"limit": 3, "backoff": {"base": 1, "factor": 2, "max": 30}},
                "timeout": 600,
            },
            {
                "name": "test",
                "depends_on": ["build"],
                "inputs": {"image": "{{tasks.build.outputs.image}}"},
            },
            {
                "name": "deploy",
                "needs": "test",
                "when": "{{env}} == 'production'",
                "inputs": {"image": "{{ tasks.build.outputs.image }}", "tag": "v{{version}}"},
            },
        ],
    }


# ==============================================================================
# Loading
# ==============================================================================


def test_load_release_workflow():
    """All supported keys are loaded into templates."""
    definition = load_workflow(_release_data())

    assert definition.name == "release"
    assert list(definition.tasks) == ["build", "test", "deploy"]
    assert definition.required_parameters() == ["version"]

    build = definition["build"]
    assert build.outputs == ("image",)
    assert build.timeout == 600.0
    assert build.retry_policy.limit == 3
    assert build.retry_policy.max_delay == 30.0
    assert build.executor_spec == ContainerSpec(image="builder:1", command=("make",))

    # Dependency aliases
    assert definition["test"].dependencies == ("build",)
    assert definition["deploy"].dependencies == ("test",)
    assert definition["deploy"].when == "{{env}} == 'production'"
    assert definition["deploy"].inputs["tag"].is_template


def test_load_parameter_list_form():
    """Parameters may be declared as a list of name/default entries."""
    definition = load_workflow(
        {
            "name": "wf",
            "parameters": [{"name": "env", "default": "dev"}, {"name": "region"}],
            "tasks": [{"name": "a"}],
        }
    )

    assert definition.parameters == {"env": "dev", "region": None}
    assert definition.required_parameters() == ["region"]


def test_load_executor_spec_variants():
    """Known executor types map to their spec classes, others stay opaque."""
    definition = load_workflow(
        {
            "name": "wf",
            "tasks": [
                {"name": "sh", "executor": {"type": "shell", "script": "echo hi"}},
                {"name": "api", "executor": {"type": "api", "url": "https://example.org/hook"}},
                {"name": "fn", "executor": {"type": "callable", "handler": "do_it"}},
                {"name": "k8s", "executor": {"type": "kubernetes", "namespace": "ci"}},
            ],
        }
    )

    assert definition["sh"].executor_spec == ShellSpec(script="echo hi")
    assert definition["api"].executor_spec == ApiCallSpec(
        method="POST", url="https://example.org/hook"
    )
    assert definition["fn"].executor_spec == CallableSpec(handler="do_it")
    opaque = definition["k8s"].executor_spec
    assert isinstance(opaque, OpaqueSpec)
    assert opaque.to_dict() == {"type": "kubernetes", "namespace": "ci"}


def test_load_executor_spec_missing_field():
    """A known executor type without its required field is rejected."""
    with pytest.raises(ValidationError, match="container executor requires 'image'"):
        load_workflow({"name": "wf", "tasks": [{"name": "a", "executor": {"type": "container"}}]})


def test_load_json():
    definition = load_workflow_json('{"name": "wf", "tasks": [{"name": "a"}]}')
    assert list(definition.tasks) == ["a"]


def test_load_invalid_json():
    with pytest.raises(ValidationError, match="invalid workflow JSON"):
        load_workflow_json("{not json")


def test_load_collects_task_problems():
    """Malformed tasks are reported together."""
    with pytest.raises(ValidationError) as exc:
        load_workflow(
            {
                "name": "wf",
                "tasks": [
                    {"name": "a", "when": 42},
                    {"name": "b", "timeout": "soon"},
                    {"name": ""},
                ],
            }
        )

    problems = exc.value.problems
    assert len(problems) == 3
    assert "'when' must be a string expression" in problems[0]
    assert "'timeout' must be a number" in problems[1]
    assert "requires a non-empty 'name'" in problems[2]


def test_load_rejects_invalid_retry_policy():
    with pytest.raises(ValidationError, match="task 'a': retry limit must be >= 0"):
        load_workflow({"name": "wf", "tasks": [{"name": "a", "retry": {"limit": -1}}]})


@pytest.mark.parametrize(
    "data, message",
    [
        ([], "must be a mapping"),
        ({"tasks": []}, "non-empty 'name'"),
        ({"name": "wf"}, "requires a 'tasks' list"),
        ({"name": "wf", "tasks": []}, "has no tasks"),
        ({"name": "wf", "parameters": 3, "tasks": [{"name": "a"}]}, "mapping or a list"),
    ],
)
def test_load_rejects_malformed_documents(data, message):
    with pytest.raises(ValidationError, match=message):
        load_workflow(data)


# ==============================================================================
# Structural validation
# ==============================================================================


def test_duplicate_task_names():
    with pytest.raises(ValidationError, match="duplicate task name 'a'"):
        load_workflow({"name": "wf", "tasks": [{"name": "a"}, {"name": "a"}]})


def test_invalid_task_name():
    with pytest.raises(ValidationError, match="invalid task name 'a b'"):
        load_workflow({"name": "wf", "tasks": [{"name": "a b"}]})


def test_missing_dependency():
    with pytest.raises(ValidationError, match="depends on non-existent task 'ghost'"):
        load_workflow({"name": "wf", "tasks": [{"name": "a", "dependencies": ["ghost"]}]})


def test_self_dependency():
    with pytest.raises(ValidationError, match="task 'a' depends on itself"):
        load_workflow({"name": "wf", "tasks": [{"name": "a", "dependencies": ["a"]}]})


def test_cycle_is_rejected():
    """A cycle is reported with its path and no definition is produced."""
    with pytest.raises(ValidationError) as exc:
        load_workflow(
            {
                "name": "wf",
                "tasks": [
                    {"name": "a", "dependencies": ["c"]},
                    {"name": "b", "dependencies": ["a"]},
                    {"name": "c", "dependencies": ["b"]},
                ],
            }
        )

    message = str(exc.value)
    assert "cycle detected" in message
    for name in ("a", "b", "c"):
        assert name in message


def test_find_cycle_on_acyclic_graph():
    definition = load_workflow(_release_data())
    assert find_cycle(definition) is None


def test_non_positive_timeout():
    with pytest.raises(ValidationError, match="timeout must be positive"):
        load_workflow({"name": "wf", "tasks": [{"name": "a", "timeout": 0}]})


def test_validated_constructor():
    """WorkflowDefinition.validated() runs the same checks as the loader."""
    definition = WorkflowDefinition.validated(
        "wf",
        [TaskTemplate(name="a"), TaskTemplate(name="b", dependencies=("a",))],
    )
    assert len(definition) == 2

    with pytest.raises(ValidationError, match="duplicate task name"):
        WorkflowDefinition.validated("wf", [TaskTemplate(name="a"), TaskTemplate(name="a")])


# ==============================================================================
# Reference validation
# ==============================================================================


def test_reference_to_non_upstream_task():
    """Outputs may only be read from ancestors."""
    with pytest.raises(ValidationError, match="'b' is not an upstream task"):
        load_workflow(
            {
                "name": "wf",
                "tasks": [
                    {"name": "a", "inputs": {"x": "{{tasks.b.outputs.y}}"}},
                    {"name": "b", "outputs": ["y"]},
                ],
            }
        )


def test_reference_to_transitive_ancestor():
    """Ancestors further up the graph are valid reference targets."""
    definition = load_workflow(
        {
            "name": "wf",
            "tasks": [
                {"name": "a", "outputs": ["y"]},
                {"name": "b", "dependencies": ["a"]},
                {"name": "c", "dependencies": ["b"], "when": "{{tasks.a.outputs.y}} > 1"},
            ],
        }
    )

    assert ancestors(definition, "c") == {"a", "b"}
    assert referenced_tasks(definition, "c") == {"a"}


def test_reference_to_undeclared_output():
    with pytest.raises(ValidationError, match="declares no output 'missing'"):
        load_workflow(
            {
                "name": "wf",
                "tasks": [
                    {"name": "a", "outputs": ["y"]},
                    {
                        "name": "b",
                        "dependencies": ["a"],
                        "inputs": {"x": "{{tasks.a.outputs.missing}}"},
                    },
                ],
            }
        )


def test_reference_to_unknown_parameter():
    with pytest.raises(ValidationError, match="unknown global parameter 'region'"):
        load_workflow({"name": "wf", "tasks": [{"name": "a", "when": "{{region}} == 'eu'"}]})


def test_reference_path_forms():
    """Alternate parameter and output path spellings are accepted."""
    definition = load_workflow(
        {
            "name": "wf",
            "parameters": {"env": "dev"},
            "tasks": [
                {"name": "a", "outputs": ["y"]},
                {
                    "name": "b",
                    "dependencies": ["a"],
                    "when": "{{workflow.parameters.env}} == {{params.env}}",
                    "inputs": {"x": "{{tasks.a.outputs.parameters.y}}"},
                },
            ],
        }
    )
    assert referenced_tasks(definition, "b") == {"a"}


def test_malformed_when_expression():
    with pytest.raises(ValidationError, match="task 'a'"):
        load_workflow(
            {
                "name": "wf",
                "parameters": {"env": "x"},
                "tasks": [{"name": "a", "when": "{{env}} =="}],
            }
        )


def test_all_reference_problems_reported_together():
    with pytest.raises(ValidationError) as exc:
        load_workflow(
            {
                "name": "wf",
                "tasks": [
                    {"name": "a", "inputs": {"x": "{{nope}}"}},
                    {"name": "b", "when": "{{also_nope}} == 1"},
                ],
            }
        )
    assert len(exc.value.problems) == 2


# ==============================================================================
# Hashing
# ==============================================================================


def test_definition_hash_is_stable():
    """Loading the same document twice yields the same hash."""
    first = load_workflow(_release_data())
    second = load_workflow(_release_data())

    assert first.definition_hash == second.definition_hash
    assert len(first.definition_hash) == 16


def test_definition_hash_changes_with_content():
    data = _release_data()
    original = load_workflow(data).definition_hash

    data["tasks"][0]["timeout"] = 300
    assert load_workflow(data).definition_hash != original


def test_to_dict_roundtrip_preserves_hash():
    definition = load_workflow(_release_data())
    reloaded = load_workflow(definition.to_dict())
    assert reloaded.definition_hash == definition.definition_hash


# ==============================================================================
# Static analysis
# ==============================================================================


def _diamond():
    return load_workflow(
        {
            "name": "diamond",
            "tasks": [
                {"name": "a"},
                {"name": "b", "dependencies": ["a"]},
                {"name": "c", "dependencies": ["a"]},
                {"name": "d", "dependencies": ["b", "c"]},
            ],
        }
    )


def test_topological_order_follows_declaration_order():
    assert topological_order(_diamond()) == ["a", "b", "c", "d"]


def test_ready_sets():
    assert list(ready_sets(_diamond())) == [
        frozenset({"a"}),
        frozenset({"b", "c"}),
        frozenset({"d"}),
    ]


def test_ready_sets_is_single_use():
    sets = ready_sets(_diamond())
    assert len(list(sets)) == 3
    assert list(sets) == []


def test_summary():
    result = summary(_diamond())

    assert result.total_tasks == 4
    assert result.roots == ["a"]
    assert result.leaves == ["d"]
    assert result.max_depth == 2


def test_level_graph():
    output = level_graph(_diamond())

    assert "Level 0: [a]" in output
    assert "Level 1: [b] [c] (2 parallel tasks)" in output
    assert "Level 2: [d]" in output


def test_retry_policy_from_definition_defaults_to_none():
    definition = _diamond()
    assert definition["a"].retry_policy == RetryPolicy.NONE
