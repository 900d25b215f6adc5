"""Progress status records and conversion between solver and wire forms."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol


@dataclass
class Vertex:
    """One step of the build graph."""

    digest: str = ""
    inputs: list[str] = field(default_factory=list)
    name: str = ""
    started: datetime | None = None
    completed: datetime | None = None
    error: str = ""
    cached: bool = False
    progress_group: Any = None


@dataclass
class VertexStatus:
    """Progress of one task within a vertex."""

    id: str = ""
    vertex: str = ""
    name: str = ""
    total: int = 0
    current: int = 0
    timestamp: datetime | None = None
    started: datetime | None = None
    completed: datetime | None = None


@dataclass
class VertexLog:
    """A chunk of output written by a vertex."""

    vertex: str = ""
    stream: int = 0
    data: bytes = b""
    timestamp: datetime | None = None


@dataclass
class VertexWarning:
    """A warning raised by a vertex."""

    vertex: str = ""
    level: int = 0
    short: bytes = b""
    detail: list[bytes] = field(default_factory=list)
    url: str = ""
    source_info: Any = None
    range: list[Any] = field(default_factory=list)


@dataclass
class SolveStatus:
    """A batch of progress updates as produced by the solver."""

    vertexes: list[Vertex] = field(default_factory=list)
    statuses: list[VertexStatus] = field(default_factory=list)
    logs: list[VertexLog] = field(default_factory=list)
    warnings: list[VertexWarning] = field(default_factory=list)


@dataclass
class StatusResponse:
    """A batch of progress updates as sent over the controller connection."""

    vertexes: list[Vertex] = field(default_factory=list)
    statuses: list[VertexStatus] = field(default_factory=list)
    logs: list[VertexLog] = field(default_factory=list)
    warnings: list[VertexWarning] = field(default_factory=list)


class _Sink(Protocol):
    def put(self, item: StatusResponse) -> None: ...


def _copy_vertex(v: Vertex) -> Vertex:
    return dataclasses.replace(v, inputs=list(v.inputs))


def _copy_warning(w: VertexWarning) -> VertexWarning:
    return dataclasses.replace(w, detail=list(w.detail), range=list(w.range))


def _copy_batch(src: SolveStatus | StatusResponse) -> dict[str, list[Any]]:
    return {
        "vertexes": [_copy_vertex(v) for v in src.vertexes],
        "statuses": [dataclasses.replace(s) for s in src.statuses],
        "logs": [dataclasses.replace(entry) for entry in src.logs],
        "warnings": [_copy_warning(w) for w in src.warnings],
    }


def to_control_status(status: SolveStatus) -> StatusResponse:
    """Convert a solver status batch into its wire form."""
    return StatusResponse(**_copy_batch(status))


def from_control_status(resp: StatusResponse) -> SolveStatus:
    """Convert a wire status batch back into the solver form."""
    return SolveStatus(**_copy_batch(resp))


class ProgressWriter:
    """A progress writer that forwards every status batch into a queue.

    Build references and log sources are only recorded; every log source
    is accepted.
    """

    def __init__(self, channel: _Sink) -> None:
        self._channel = channel
        self.build_refs: dict[str, str] = {}
        self._log_sources: dict[str, Any] = {}

    def write(self, status: SolveStatus) -> None:
        self._channel.put(to_control_status(status))

    def write_build_ref(self, target: str, ref: str) -> None:
        self.build_refs[target] = ref

    def validate_log_source(self, digest: str, source: Any) -> bool:
        self._log_sources[digest] = source
        return True

    def clear_log_source(self, source: Any) -> None:
        self._log_sources = {
            digest: known for digest, known in self._log_sources.items() if known is not source
        }