"""Symbolic reference to a large payload stored outside the engine."""

from dataclasses import dataclass


@dataclass(frozen=True)
class ArtifactRef:
    """Location of an artifact produced by a task.

    The engine passes references between tasks without reading the bytes
    behind them. An ArtifactTransfer collaborator resolves the reference on
    demand.

    Attributes:
        uri: Location of the payload (e.g. ``file:///tmp/build.tar``,
            ``s3://bucket/key``, ``mem://run/build/image``)
        media_type: Optional MIME type
        size: Optional size in bytes
    """

    uri: str
    media_type: str | None = None
    size: int | None = None

    @property
    def scheme(self) -> str:
        """URI scheme, empty string when the uri has none."""
        scheme, sep, _ = self.uri.partition("://")
        return scheme if sep else ""

    def __str__(self) -> str:
        return self.uri
