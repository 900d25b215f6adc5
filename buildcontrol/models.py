"""Build options, invocation settings and the controller interface."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import IO, Any


@dataclass
class ControlOptions:
    """How a controller is started: in-process or through a detached server."""

    server_config: str = ""
    root: str = ""
    detach: bool = False


@dataclass
class CacheOptionsEntry:
    """A cache import or export source."""

    type: str = ""
    attrs: dict[str, str] = field(default_factory=dict)


@dataclass
class ExportEntry:
    """A requested build output."""

    type: str = ""
    attrs: dict[str, str] = field(default_factory=dict)
    destination: str = ""


@dataclass
class Secret:
    """A secret exposed to the build, read from a file or an environment variable."""

    id: str = ""
    file_path: str = ""
    env: str = ""


@dataclass
class SSH:
    """An SSH agent socket or key set forwarded to the build."""

    id: str = ""
    paths: list[str] = field(default_factory=list)


@dataclass
class Attest:
    """An attestation request; a disabled one switches the type off."""

    type: str = ""
    disabled: bool = False
    attrs: str = ""


@dataclass
class InvokeConfig:
    """How to start a process inside a build result container."""

    entrypoint: list[str] = field(default_factory=list)
    cmd: list[str] = field(default_factory=list)
    env: list[str] = field(default_factory=list)
    user: str = ""
    cwd: str = ""
    tty: bool = False
    rollback: bool = False


@dataclass
class ProcessInfo:
    """A running process and the configuration it was started with."""

    process_id: str = ""
    invoke_config: InvokeConfig | None = None


@dataclass
class BuildOptions:
    """The options of one build request."""

    context_path: str = ""
    dockerfile_name: str = ""
    named_contexts: dict[str, str] = field(default_factory=dict)
    cache_from: list[CacheOptionsEntry] = field(default_factory=list)
    cache_to: list[CacheOptionsEntry] = field(default_factory=list)
    exports: list[ExportEntry] = field(default_factory=list)
    secrets: list[Secret] = field(default_factory=list)
    ssh: list[SSH] = field(default_factory=list)
    attests: list[Attest] = field(default_factory=list)


@dataclass
class InspectResponse:
    """The options of the last build registered under a ref."""

    options: BuildOptions | None = None


class BuildxController(abc.ABC):
    """Runs builds and starts processes in their results."""

    @abc.abstractmethod
    def build(self, options: BuildOptions, stdin: IO[bytes] | None, progress: Any) -> tuple[str, Any]:
        """Run a build and return its ref and the solve response."""

    @abc.abstractmethod
    def invoke(
        self,
        ref: str,
        pid: str,
        config: InvokeConfig,
        stdin: IO[bytes] | None,
        stdout: IO[bytes] | None,
        stderr: IO[bytes] | None,
    ) -> None:
        """Attach to process ``pid`` of ``ref``, starting it if it is not running."""

    @abc.abstractmethod
    def kill(self) -> None:
        """Stop the controller."""

    @abc.abstractmethod
    def close(self) -> None:
        """Release the controller's resources."""

    @abc.abstractmethod
    def list(self) -> list[str]:
        """Return the refs of known builds."""

    @abc.abstractmethod
    def disconnect(self, ref: str) -> None:
        """Forget the build registered under ``ref``."""

    @abc.abstractmethod
    def list_processes(self, ref: str) -> list[ProcessInfo]:
        """Return the processes running for ``ref``."""

    @abc.abstractmethod
    def disconnect_process(self, ref: str, pid: str) -> None:
        """Stop process ``pid`` of ``ref``."""

    @abc.abstractmethod
    def inspect(self, ref: str) -> InspectResponse:
        """Return the options of the build registered under ``ref``."""

    def __enter__(self) -> BuildxController:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()