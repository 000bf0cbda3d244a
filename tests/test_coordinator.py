"""
Tests for the RunCoordinator public surface.

Covers:
- Submit-time validation (definition, missing and unknown parameters)
- Status snapshots (coherent, repeatable, isolated from live state)
- Cancellation of running and backing-off work
- wait() timeouts and shutdown
- Reading runs back from storage after a restart
"""

import asyncio
import logging

import pytest

from pytaxis.clock import SystemClock
from pytaxis.config import EngineConfig
from pytaxis.coordinator import RunCoordinator, resolve_parameters
from pytaxis.errors import RunNotFoundError, ValidationError
from pytaxis.events import CollectingSink
from pytaxis.models import ArtifactRef, RunStatus, TaskState
from pytaxis.storage import StorageError
from pytaxis.storage.memory import InMemoryRunLog
from pytaxis.store import InMemoryArtifactTransfer


async def _wait_for_state(handle, task_name, state):
    for _ in range(200):
        snapshot = await handle.status()
        if snapshot.task(task_name).state == state:
            return snapshot
        await asyncio.sleep(0.01)
    raise AssertionError(f"task '{task_name}' never reached {state}")


def _blocking(started):
    async def handler(ctx):
        started.set()
        await asyncio.Event().wait()

    return handler


async def _noop(ctx):
    return {}


# ==============================================================================
# Submission
# ==============================================================================


@pytest.mark.asyncio
async def test_submit_rejects_cyclic_definition(coordinator):
    with pytest.raises(ValidationError, match="cycle detected"):
        await coordinator.submit(
            {
                "name": "wf",
                "tasks": [
                    {"name": "a", "dependencies": ["b"]},
                    {"name": "b", "dependencies": ["a"]},
                ],
            }
        )

    # No run was created
    assert await coordinator.list_runs() == []


@pytest.mark.asyncio
async def test_submit_rejects_bad_parameters(coordinator, make_workflow):
    definition = make_workflow({"name": "a"}, parameters={"env": "dev", "version": None})

    with pytest.raises(ValidationError, match="missing required parameter\\(s\\): version"):
        await coordinator.submit(definition)

    with pytest.raises(ValidationError) as exc:
        await coordinator.submit(definition, {"version": "1.0", "colour": "blue"})
    assert exc.value.problems == ["unknown parameter(s): colour"]

    assert await coordinator.list_runs() == []


def test_resolve_parameters_merges_defaults(make_workflow):
    definition = make_workflow({"name": "a"}, parameters={"env": "dev", "version": None})

    assert resolve_parameters(definition, {"version": "1.0"}) == {"env": "dev", "version": "1.0"}
    assert resolve_parameters(definition, {"version": "1.0", "env": "prod"})["env"] == "prod"


@pytest.mark.asyncio
async def test_submit_accepts_mapping(coordinator, executor):
    executor.register("a", _noop)

    handle = await coordinator.submit({"name": "wf", "tasks": [{"name": "a"}]})
    snapshot = await handle.wait(timeout=5)

    assert snapshot.status == RunStatus.SUCCEEDED
    assert snapshot.run.workflow_name == "wf"


@pytest.mark.asyncio
async def test_run_ids_are_unique_uuid7(coordinator, executor, make_workflow):
    executor.register("a", _noop)
    definition = make_workflow({"name": "a"})

    handles = [await coordinator.submit(definition) for _ in range(5)]
    run_ids = [h.run_id for h in handles]

    assert len(set(run_ids)) == 5
    assert all(len(r) == 36 and r[14] == "7" for r in run_ids)
    for handle in handles:
        await handle.wait(timeout=5)


@pytest.mark.asyncio
async def test_run_records_definition_and_parameters(coordinator, executor, make_workflow):
    executor.register("a", _noop)
    definition = make_workflow({"name": "a"}, parameters={"env": "dev"})

    snapshot = await (await coordinator.submit(definition)).wait(timeout=5)

    assert snapshot.run.definition_hash == definition.definition_hash
    assert snapshot.run.parameters == {"env": "dev"}


# ==============================================================================
# Status
# ==============================================================================


@pytest.mark.asyncio
async def test_status_of_unknown_run(coordinator):
    with pytest.raises(RunNotFoundError, match="run not found: nope"):
        await coordinator.status("nope")


@pytest.mark.asyncio
async def test_status_is_repeatable(coordinator, executor, make_workflow):
    """Without progress in between, status() returns equal snapshots."""
    started = asyncio.Event()
    executor.register("first", _noop)
    executor.register("second", _blocking(started))

    definition = make_workflow({"name": "first"}, {"name": "second", "dependencies": ["first"]})
    handle = await coordinator.submit(definition)
    await started.wait()

    first = await handle.status()
    second = await handle.status()

    assert first == second
    assert first.status == RunStatus.RUNNING
    assert not first.is_terminal
    assert first.states() == {"first": TaskState.SUCCEEDED, "second": TaskState.RUNNING}

    await handle.cancel()


@pytest.mark.asyncio
async def test_status_snapshot_is_isolated(coordinator, executor, make_workflow):
    """Mutating a snapshot does not change the run."""

    @executor.handler("a")
    async def a(ctx):
        return {"x": 1}

    handle = await coordinator.submit(make_workflow({"name": "a", "outputs": ["x"]}))
    snapshot = await handle.wait(timeout=5)

    snapshot.task("a").outputs["x"] = 99
    snapshot.run.status = RunStatus.FAILED

    fresh = await handle.status()
    assert fresh.task("a").outputs == {"x": 1}
    assert fresh.status == RunStatus.SUCCEEDED
    assert fresh == await handle.status()


@pytest.mark.asyncio
async def test_status_never_raises_for_failed_run(coordinator, executor, make_workflow):
    @executor.handler("a")
    async def a(ctx):
        raise RuntimeError("disk full")

    handle = await coordinator.submit(make_workflow({"name": "a"}))
    await handle.wait(timeout=5)

    snapshot = await coordinator.status(handle.run_id)
    assert snapshot.status == RunStatus.FAILED
    assert snapshot.task("a").error.message == "RuntimeError: disk full"


# ==============================================================================
# Cancellation, wait and shutdown
# ==============================================================================


@pytest.mark.asyncio
async def test_cancel_running_run(coordinator, executor, make_workflow):
    started = asyncio.Event()
    executor.register("long", _blocking(started))
    executor.register("after", _noop)

    handle = await coordinator.submit(
        make_workflow({"name": "long"}, {"name": "after", "dependencies": ["long"]})
    )
    await started.wait()

    snapshot = await handle.cancel()

    assert snapshot.status == RunStatus.CANCELLED
    assert snapshot.run.cancel_requested is True
    assert snapshot.task("long").state == TaskState.CANCELLED
    assert snapshot.task("long").error.message == "cancelled while running"
    assert snapshot.task("after").state == TaskState.CANCELLED
    assert snapshot.task("after").error.message == "cancelled by user"
    # Executor was asked to stop the remote work
    assert executor.cancelled == [(handle.run_id, "long")]
    assert not handle.is_running()


@pytest.mark.asyncio
async def test_cancel_finished_run_is_noop(coordinator, executor, make_workflow):
    executor.register("a", _noop)
    handle = await coordinator.submit(make_workflow({"name": "a"}))
    finished = await handle.wait(timeout=5)

    assert await handle.cancel() == finished
    assert finished.status == RunStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_cancel_before_first_dispatch(coordinator, executor, make_workflow):
    """Cancelling right after submit settles the run without calling the executor."""
    calls = []

    async def record(ctx):
        calls.append(ctx.task_name)
        return {}

    for name in ("a", "b", "c"):
        executor.register(name, record)

    handle = await coordinator.submit(
        make_workflow({"name": "a"}, {"name": "b"}, {"name": "c", "dependencies": ["a"]})
    )
    snapshot = await handle.cancel()

    assert calls == []
    assert snapshot.status == RunStatus.CANCELLED
    assert set(snapshot.states().values()) == {TaskState.CANCELLED}
    assert all(t.attempt == 0 for t in snapshot.tasks.values())
    assert snapshot.task("a").error.message == "cancelled by user"
    assert executor.cancelled == []


@pytest.mark.asyncio
async def test_cancel_during_backoff(executor, in_memory_storage, make_workflow):
    """A task waiting out its backoff is cancelled without another attempt."""

    @executor.handler("push")
    async def push(ctx):
        raise ConnectionError("registry unavailable")

    coordinator = RunCoordinator(executor, storage=in_memory_storage, clock=SystemClock())
    try:
        handle = await coordinator.submit(
            make_workflow(
                {"name": "push", "retry": {"limit": 5, "backoff": {"base": 100, "max": 100}}}
            )
        )
        await _wait_for_state(handle, "push", TaskState.RETRYING)

        snapshot = await handle.cancel()

        push_instance = snapshot.task("push")
        assert snapshot.status == RunStatus.CANCELLED
        assert push_instance.state == TaskState.CANCELLED
        assert push_instance.attempt == 1
        assert push_instance.backoff_history == [100.0]
    finally:
        await coordinator.shutdown()


@pytest.mark.asyncio
async def test_wait_timeout_leaves_run_going(coordinator, executor, make_workflow):
    started = asyncio.Event()
    executor.register("long", _blocking(started))

    handle = await coordinator.submit(make_workflow({"name": "long"}))
    await started.wait()

    with pytest.raises(TimeoutError):
        await handle.wait(timeout=0.01)

    assert handle.is_running()
    assert (await handle.cancel()).status == RunStatus.CANCELLED


@pytest.mark.asyncio
async def test_shutdown_cancels_active_runs(executor, make_workflow):
    started = asyncio.Event()
    executor.register("long", _blocking(started))

    coordinator = RunCoordinator(executor)
    handle = await coordinator.submit(make_workflow({"name": "long"}))
    await started.wait()

    await coordinator.shutdown()

    snapshot = await handle.status()
    assert snapshot.status == RunStatus.CANCELLED
    assert not handle.is_running()


# ==============================================================================
# Listing and storage
# ==============================================================================


@pytest.mark.asyncio
async def test_list_runs(coordinator, executor, make_workflow):
    executor.register("a", _noop)

    @executor.handler("bad")
    async def bad(ctx):
        raise RuntimeError("no")

    good = make_workflow({"name": "a"}, name="good")
    broken = make_workflow({"name": "bad"}, name="broken")

    first = await coordinator.submit(good)
    second = await coordinator.submit(broken)
    await first.wait(timeout=5)
    await second.wait(timeout=5)

    runs = await coordinator.list_runs()
    assert [r.run_id for r in runs] == [first.run_id, second.run_id]
    assert [r.run_id for r in await coordinator.list_runs(workflow_name="broken")] == [
        second.run_id
    ]
    assert [r.run_id for r in await coordinator.list_runs(status=RunStatus.SUCCEEDED)] == [
        first.run_id
    ]


@pytest.mark.asyncio
@pytest.mark.durability
async def test_status_survives_restart(executor, sqlite_file_storage, make_workflow):
    """A new coordinator reads finished runs back from storage."""

    @executor.handler("build")
    async def build(ctx):
        if ctx.attempt == 1:
            raise ConnectionError("flaky")
        return {"image": "registry/app:1.4"}

    definition = make_workflow(
        {"name": "build", "outputs": ["image"], "retry": {"limit": 1, "backoff": {"base": 0.01}}}
    )
    first = RunCoordinator(executor, storage=sqlite_file_storage)
    handle = await first.submit(definition)
    await handle.wait(timeout=5)
    await first.shutdown()

    restarted = RunCoordinator(executor, storage=sqlite_file_storage)
    snapshot = await restarted.status(handle.run_id)

    assert snapshot.status == RunStatus.SUCCEEDED
    build = snapshot.task("build")
    assert build.state == TaskState.SUCCEEDED
    assert build.attempt == 2
    assert build.outputs == {"image": "registry/app:1.4"}
    assert build.backoff_history == [0.01]
    assert [r.run_id for r in await restarted.list_runs()] == [handle.run_id]

    with pytest.raises(RunNotFoundError):
        await restarted.status("unknown")


@pytest.mark.asyncio
async def test_storage_errors_do_not_fail_the_run(executor, make_workflow, caplog):
    class BrokenRunLog(InMemoryRunLog):
        async def save_task_instance(self, instance):
            raise StorageError("disk full")

    executor.register("a", _noop)
    coordinator = RunCoordinator(executor, storage=BrokenRunLog())

    with caplog.at_level(logging.ERROR):
        handle = await coordinator.submit(make_workflow({"name": "a"}))
        snapshot = await handle.wait(timeout=5)

    assert snapshot.status == RunStatus.SUCCEEDED
    assert "disk full" in caplog.text
    await coordinator.shutdown()


# ==============================================================================
# Collaborators and configuration
# ==============================================================================


@pytest.mark.asyncio
async def test_artifacts_are_passed_by_reference(executor, make_workflow):
    """Tasks exchange ArtifactRefs; the bytes go through the artifact transfer."""
    artifacts = InMemoryArtifactTransfer()
    received = []

    @executor.handler("build")
    async def build(ctx):
        ref = await ctx.artifacts.store(f"mem://{ctx.run_id}/bundle", b"tarball")
        return {"bundle": ref}

    @executor.handler("deploy")
    async def deploy(ctx):
        received.append(await ctx.artifacts.fetch(ctx.inputs["bundle"]))
        return {}

    coordinator = RunCoordinator(executor, artifacts=artifacts)
    definition = make_workflow(
        {"name": "build", "outputs": ["bundle"]},
        {
            "name": "deploy",
            "dependencies": ["build"],
            "inputs": {"bundle": "{{tasks.build.outputs.bundle}}"},
        },
    )
    snapshot = await (await coordinator.submit(definition)).wait(timeout=5)

    assert snapshot.status == RunStatus.SUCCEEDED
    assert received == [b"tarball"]
    assert isinstance(snapshot.task("deploy").inputs["bundle"], ArtifactRef)
    await coordinator.shutdown()


@pytest.mark.asyncio
async def test_with_config_applies_to_later_submissions(executor, make_workflow):
    running = 0
    peak = 0

    async def work(ctx):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.01)
        running -= 1

    for name in ("a", "b", "c"):
        executor.register(name, work)

    coordinator = RunCoordinator(executor).with_config(EngineConfig(max_parallelism=1))
    assert coordinator.config.max_parallelism == 1

    handle = await coordinator.submit(make_workflow({"name": "a"}, {"name": "b"}, {"name": "c"}))
    await handle.wait(timeout=5)

    assert peak == 1
    await coordinator.shutdown()


# ==============================================================================
# Notifications and finished runs
# ==============================================================================


@pytest.mark.asyncio
async def test_default_event_bus_uses_configured_queue_size(executor, make_workflow):
    """Without an explicit bus the coordinator builds one bounded by event_queue_size."""
    executor.register("a", _noop)
    collector = CollectingSink()

    coordinator = RunCoordinator(executor, config=EngineConfig(event_queue_size=1))
    coordinator.events.add_sink(collector)

    handle = await coordinator.submit(make_workflow({"name": "a"}))
    snapshot = await handle.wait(timeout=5)
    await coordinator.shutdown()

    assert snapshot.status == RunStatus.SUCCEEDED
    # Transitions are published in bursts; a one-slot queue cannot hold them all
    assert coordinator.events.dropped > 0
    assert 0 < len(collector.events) < 5


@pytest.mark.asyncio
async def test_explicit_event_bus_is_used(executor, event_bus):
    coordinator = RunCoordinator(executor, events=event_bus)
    assert coordinator.events is event_bus


@pytest.mark.asyncio
async def test_finished_run_releases_its_scheduler(coordinator, executor, make_workflow):
    """Finished runs keep their records but not the machinery that drove them."""
    executor.register("a", _noop)
    handle = await coordinator.submit(make_workflow({"name": "a"}))
    finished = await handle.wait(timeout=5)

    assert coordinator._runs[handle.run_id].scheduler is None
    assert await handle.status() == finished
    assert await handle.cancel() == finished
