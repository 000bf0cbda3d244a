"""Artifact transfer collaborators.

The engine only moves ArtifactRef values between tasks. Reading or writing
the bytes behind a reference is delegated to an ArtifactTransfer, which
executors receive through their TaskContext.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Protocol, runtime_checkable
from urllib.parse import unquote, urlparse

from pytaxis.errors import PytaxisError
from pytaxis.models.artifact import ArtifactRef


class ArtifactError(PytaxisError):
    """Artifact could not be read or written."""


@runtime_checkable
class ArtifactTransfer(Protocol):
    """Resolves ArtifactRefs into bytes and stores new artifacts."""

    async def fetch(self, ref: ArtifactRef) -> bytes:
        """Read the payload behind a reference.

        Raises:
            ArtifactError: If the artifact does not exist or cannot be read
        """
        ...

    async def store(self, uri: str, data: bytes, media_type: str | None = None) -> ArtifactRef:
        """Write a payload and return a reference to it."""
        ...


class InMemoryArtifactTransfer:
    """Artifact transfer backed by a dict, for tests and single-process use.

    Accepts any URI; ``mem://`` is conventional.
    """

    def __init__(self):
        self._blobs: dict[str, bytes] = {}

    def __repr__(self) -> str:
        return f"InMemoryArtifactTransfer(artifacts={len(self._blobs)})"

    async def fetch(self, ref: ArtifactRef) -> bytes:
        try:
            return self._blobs[ref.uri]
        except KeyError:
            raise ArtifactError(f"artifact not found: {ref.uri}") from None

    async def store(self, uri: str, data: bytes, media_type: str | None = None) -> ArtifactRef:
        self._blobs[uri] = bytes(data)
        return ArtifactRef(uri=uri, media_type=media_type, size=len(data))


class LocalFileArtifactTransfer:
    """Artifact transfer for ``file://`` URIs under a root directory.

    File I/O is blocking, so it runs in a worker thread via
    asyncio.to_thread() and never stalls the event loop.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()

    def __repr__(self) -> str:
        return f"LocalFileArtifactTransfer({self.root})"

    def _path_for(self, uri: str) -> Path:
        parsed = urlparse(uri)
        if parsed.scheme != "file":
            raise ArtifactError(f"unsupported artifact scheme in {uri!r}, expected file://")
        path = Path(unquote(parsed.netloc + parsed.path)).resolve()
        if not path.is_relative_to(self.root):
            raise ArtifactError(f"artifact {uri!r} is outside {self.root}")
        return path

    def uri_for(self, relative: str) -> str:
        """Build a file:// URI for a path relative to the root."""
        return (self.root / relative).as_uri()

    async def fetch(self, ref: ArtifactRef) -> bytes:
        path = self._path_for(ref.uri)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            raise ArtifactError(f"cannot read artifact {ref.uri}: {e}") from e

    async def store(self, uri: str, data: bytes, media_type: str | None = None) -> ArtifactRef:
        path = self._path_for(uri)

        def write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        try:
            await asyncio.to_thread(write)
        except OSError as e:
            raise ArtifactError(f"cannot write artifact {uri}: {e}") from e
        return ArtifactRef(uri=uri, media_type=media_type, size=len(data))
