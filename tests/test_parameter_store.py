"""
Tests for the per-run ParameterStore and the artifact transfer
collaborators.
"""

import pytest

from pytaxis.errors import DuplicateOutputError, UnresolvedReferenceError
from pytaxis.expression import OutputRef
from pytaxis.models import ArtifactRef
from pytaxis.store import (
    ArtifactError,
    ArtifactTransfer,
    InMemoryArtifactTransfer,
    LocalFileArtifactTransfer,
    ParameterStore,
)

# ==============================================================================
# ParameterStore
# ==============================================================================


def test_bind_and_resolve():
    store = ParameterStore("run-1")
    store.begin_attempt("build", 1)
    store.bind("build", "image", "registry/app:1.4")

    assert store.resolve(OutputRef("build", "image")) == "registry/app:1.4"
    assert store.outputs_of("build") == {"image": "registry/app:1.4"}
    assert len(store) == 1


def test_bind_twice_in_same_attempt_raises():
    store = ParameterStore("run-1")
    store.begin_attempt("build", 1)
    store.bind("build", "image", "a")

    with pytest.raises(DuplicateOutputError) as exc:
        store.bind("build", "image", "b")

    assert exc.value.attempt == 1
    assert "already bound in attempt 1" in str(exc.value)
    # First value wins
    assert store.resolve(OutputRef("build", "image")) == "a"


def test_bind_all_pairs_detects_repeated_names():
    store = ParameterStore("run-1")
    store.begin_attempt("build", 1)

    with pytest.raises(DuplicateOutputError):
        store.bind_all("build", [("image", "a"), ("image", "b")])


def test_new_attempt_clears_previous_outputs():
    """A retry starts with a clean slate; values from the failed attempt are gone."""
    store = ParameterStore("run-1")
    store.begin_attempt("build", 1)
    store.bind_all("build", {"image": "a", "digest": "sha256:1"})
    store.bind("test", "report", "ok")

    store.begin_attempt("build", 2)

    assert store.outputs_of("build") == {}
    assert store.attempt_of("build") == 2
    # Other tasks keep theirs
    assert store.outputs_of("test") == {"report": "ok"}
    store.bind("build", "image", "b")
    assert store.resolve(OutputRef("build", "image")) == "b"


def test_resolve_unbound():
    store = ParameterStore("run-1")
    with pytest.raises(UnresolvedReferenceError, match="output not bound"):
        store.resolve(OutputRef("build", "image"))


def test_context_is_a_snapshot():
    """Later bindings do not leak into a scope built earlier."""
    store = ParameterStore("run-1")
    store.bind("build", "image", "a")
    scope = store.context({"env": "dev"}, {"lint": "was skipped"})
    store.bind("test", "report", "ok")

    assert scope.lookup("tasks.build.outputs.image") == "a"
    assert scope.lookup("env") == "dev"
    with pytest.raises(UnresolvedReferenceError):
        scope.lookup("tasks.test.outputs.report")


def test_artifact_refs_are_stored_as_values():
    store = ParameterStore("run-1")
    ref = ArtifactRef(uri="s3://bucket/build.tar", media_type="application/x-tar", size=10)
    store.bind("build", "bundle", ref)

    assert store.resolve(OutputRef("build", "bundle")) is ref
    assert ref.scheme == "s3"
    assert str(ref) == "s3://bucket/build.tar"


# ==============================================================================
# Artifact transfer
# ==============================================================================


@pytest.mark.asyncio
async def test_in_memory_artifacts():
    transfer = InMemoryArtifactTransfer()
    assert isinstance(transfer, ArtifactTransfer)

    ref = await transfer.store("mem://run-1/build/bundle", b"payload", "application/octet-stream")

    assert ref.size == 7
    assert ref.scheme == "mem"
    assert await transfer.fetch(ref) == b"payload"

    with pytest.raises(ArtifactError, match="artifact not found"):
        await transfer.fetch(ArtifactRef("mem://missing"))


@pytest.mark.asyncio
async def test_local_file_artifacts(tmp_path):
    transfer = LocalFileArtifactTransfer(tmp_path)
    uri = transfer.uri_for("run-1/build/bundle.bin")

    ref = await transfer.store(uri, b"\x00\x01\x02")

    assert (tmp_path / "run-1" / "build" / "bundle.bin").read_bytes() == b"\x00\x01\x02"
    assert await transfer.fetch(ref) == b"\x00\x01\x02"


@pytest.mark.asyncio
async def test_local_file_artifacts_reject_outside_root(tmp_path):
    transfer = LocalFileArtifactTransfer(tmp_path / "artifacts")

    with pytest.raises(ArtifactError, match="outside"):
        await transfer.fetch(ArtifactRef((tmp_path / "secret.txt").as_uri()))


@pytest.mark.asyncio
async def test_local_file_artifacts_reject_other_schemes(tmp_path):
    transfer = LocalFileArtifactTransfer(tmp_path)

    with pytest.raises(ArtifactError, match="unsupported artifact scheme"):
        await transfer.fetch(ArtifactRef("s3://bucket/key"))


@pytest.mark.asyncio
async def test_local_file_artifacts_missing_file(tmp_path):
    transfer = LocalFileArtifactTransfer(tmp_path)

    with pytest.raises(ArtifactError, match="cannot read artifact"):
        await transfer.fetch(ArtifactRef(transfer.uri_for("nope.bin")))
