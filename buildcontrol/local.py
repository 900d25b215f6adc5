"""A controller that runs builds and their processes in this process."""

from __future__ import annotations

import threading
from typing import IO, Any, Callable

from buildcontrol.errors import BuildError
from buildcontrol.models import (
    BuildOptions,
    BuildxController,
    InspectResponse,
    InvokeConfig,
    ProcessInfo,
)
from buildcontrol.processes import Manager, ResultHandle, StdIO

_POLL = 0.05

RunBuild = Callable[[BuildOptions, "IO[bytes] | None", Any], "tuple[Any, ResultHandle | None]"]


class LocalController(BuildxController):
    """Keeps a single build result under one ref and runs processes in it.

    ``run_build(options, stdin, progress)`` returns ``(response, result)``.
    When it fails, the exception may carry a ``result`` attribute; such a
    result is still registered and the failure is raised as a BuildError.
    """

    def __init__(self, run_build: RunBuild, ref: str = "local") -> None:
        self._run_build = run_build
        self._ref = ref
        self._result: ResultHandle | None = None
        self._build_options: BuildOptions | None = None
        self._processes = Manager()
        self._building = threading.Lock()

    def _register(self, result: ResultHandle, options: BuildOptions) -> None:
        self._result = result
        self._build_options = options

    def _check_ref(self, ref: str) -> None:
        if ref != self._ref:
            raise LookupError(f'unknown ref "{ref}"')

    def build(
        self, options: BuildOptions, stdin: IO[bytes] | None, progress: Any
    ) -> tuple[str, Any]:
        if not self._building.acquire(blocking=False):
            raise RuntimeError("build ongoing")
        try:
            try:
                response, result = self._run_build(options, stdin, progress)
            except Exception as exc:
                result = getattr(exc, "result", None)
                if result is None:
                    raise
                self._register(result, options)
                raise BuildError(self._ref, exc) from exc
            if result is not None:
                self._register(result, options)
            return self._ref, response
        finally:
            self._building.release()

    def list_processes(self, ref: str) -> list[ProcessInfo]:
        self._check_ref(ref)
        return self._processes.list_processes()

    def disconnect_process(self, ref: str, pid: str) -> None:
        self._check_ref(ref)
        self._processes.delete_process(pid)

    def invoke(
        self,
        ref: str,
        pid: str,
        config: InvokeConfig,
        stdin: IO[bytes] | None,
        stdout: IO[bytes] | None,
        stderr: IO[bytes] | None,
    ) -> None:
        self._check_ref(ref)
        proc = self._processes.get(pid)
        if proc is None:
            if self._result is None:
                raise RuntimeError("no build result is registered")
            proc = self._processes.start_process(pid, self._result, config)

        io_cancelled = threading.Event()
        proc.forward_io(StdIO(stdin=stdin, stdout=stdout, stderr=stderr), io_cancelled.set)
        while not proc.done:
            if io_cancelled.wait(_POLL):
                raise RuntimeError("io cancelled")
        proc.wait(0)

    def kill(self) -> None:
        self.close()

    def close(self) -> None:
        self._processes.cancel_running_processes()
        if self._result is not None:
            self._result.done()

    def list(self) -> list[str]:
        return [self._ref]

    def disconnect(self, ref: str) -> None:
        self.close()

    def inspect(self, ref: str) -> InspectResponse:
        self._check_ref(ref)
        return InspectResponse(options=self._build_options)