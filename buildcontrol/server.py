"""A build server that keeps sessions by ref and serves their progress, input and processes."""

from __future__ import annotations

import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Iterator, Mapping, Union

from buildcontrol.errors import BuildError
from buildcontrol.models import BuildOptions, InspectResponse, ProcessInfo
from buildcontrol.processes import Manager, Process, ResultHandle, StdIO
from buildcontrol.status import ProgressWriter, StatusResponse
from buildcontrol.stream import (
    InitMessage,
    IOServerConfig,
    MessageStream,
    StreamCancelled,
    serve_io,
)

_WAIT = 0.001
_POLL = 0.02
_DRAIN_TIMEOUT = 1.0

BuildFunc = Callable[
    [BuildOptions, Any, ProgressWriter],
    "tuple[Mapping[str, str] | None, ResultHandle | None]",
]


@dataclass
class BuildxVersion:
    """The name, version and revision a server reports about itself."""

    package: str = "buildcontrol"
    version: str = "v0.0.0"
    revision: str = ""


@dataclass
class InputInitMessage:
    """Opens an input stream for the build registered under ``ref``."""

    ref: str = ""


@dataclass
class DataMessage:
    """A chunk of build input, or its end when ``eof`` is set."""

    data: bytes = b""
    eof: bool = False


InputMessage = Union[InputInitMessage, DataMessage]


class _Pipe:
    """An in-memory pipe that can be closed from either end, optionally with an error."""

    def __init__(self) -> None:
        self._buffer = bytearray()
        self._cond = threading.Condition()
        self._write_closed = False
        self._read_closed = False
        self._error: BaseException | None = None
        self.drained = threading.Event()

    def write(self, data: bytes) -> int:
        with self._cond:
            if self._read_closed or self._write_closed:
                raise BrokenPipeError("io: read/write on closed pipe")
            self._buffer += data
            self._cond.notify_all()
        return len(data)

    def close_write(self, error: BaseException | None = None) -> None:
        with self._cond:
            if not self._write_closed:
                self._write_closed = True
                self._error = error
            self._cond.notify_all()

    def read(self, size: int | None = -1) -> bytes:
        with self._cond:
            if size is None or size < 0:
                self._cond.wait_for(lambda: self._write_closed or self._read_closed)
                size = len(self._buffer)
            else:
                self._cond.wait_for(
                    lambda: self._buffer or self._write_closed or self._read_closed
                )
            if self._read_closed:
                raise ValueError("read from closed pipe")
            if self._buffer:
                data = bytes(self._buffer[:size])
                del self._buffer[:size]
                return data
            self.drained.set()
            if self._error is not None:
                raise self._error
            return b""

    def close_read(self) -> None:
        with self._cond:
            self._read_closed = True
            self._cond.notify_all()

    def close(self) -> None:
        self.close_write()
        self.close_read()


class _PipeReader:
    """The reading end of a pipe, as a binary file-like object."""

    def __init__(self, pipe: _Pipe) -> None:
        self._pipe = pipe

    def readable(self) -> bool:
        return True

    def read(self, size: int | None = -1) -> bytes:
        return self._pipe.read(size)

    def read1(self, size: int | None = -1) -> bytes:
        return self._pipe.read(size)

    def close(self) -> None:
        self._pipe.close_read()


class _PipeWriter:
    """The writing end of a pipe, as a binary file-like object."""

    def __init__(self, pipe: _Pipe) -> None:
        self._pipe = pipe

    def writable(self) -> bool:
        return True

    def write(self, data: bytes) -> int:
        return self._pipe.write(data)

    def flush(self) -> None:
        return None

    def close(self) -> None:
        self._pipe.close_write()


_CLOSED = object()


@dataclass
class _Session:
    processes: Manager = field(default_factory=Manager)
    building: bool = False
    status_queue: "queue.Queue[Any] | None" = None
    build_options: BuildOptions | None = None
    input_pipe: _Pipe | None = None
    result: ResultHandle | None = None


class Server:
    """Runs builds under client-chosen refs and serves their status, input and processes.

    ``build_func(options, stdin, progress)`` returns ``(exporter_response, result)``.
    When it fails, the exception may carry a ``result`` attribute; such a
    result is still registered and the failure is raised as a BuildError.
    """

    def __init__(self, build_func: BuildFunc, version: BuildxVersion | None = None) -> None:
        self._build_func = build_func
        self._version = version if version is not None else BuildxVersion()
        self._sessions: dict[str, _Session] = {}
        self._lock = threading.Lock()

    def _session(self, ref: str) -> _Session:
        with self._lock:
            session = self._sessions.get(ref)
        if session is None:
            raise LookupError(f'unknown ref "{ref}"')
        return session

    def list_processes(self, ref: str) -> list[ProcessInfo]:
        """Return the processes running for ``ref``."""
        return list(self._session(ref).processes.list_processes())

    def disconnect_process(self, ref: str, pid: str) -> None:
        """Stop process ``pid`` of ``ref``."""
        self._session(ref).processes.delete_process(pid)

    def info(self) -> BuildxVersion:
        """Return the version this server reports."""
        return self._version

    def list(self) -> list[str]:
        """Return the refs of all sessions."""
        with self._lock:
            return list(self._sessions)

    def disconnect(self, ref: str) -> None:
        """Stop everything belonging to ``ref`` and forget it."""
        if not ref:
            raise ValueError("disconnect: empty key")
        with self._lock:
            session = self._sessions.pop(ref, None)
        if session is not None:
            session.processes.cancel_running_processes()
            if session.result is not None:
                session.result.done()

    def close(self) -> None:
        """Cancel the running processes of every session."""
        with self._lock:
            sessions = list(self._sessions.values())
        for session in sessions:
            session.processes.cancel_running_processes()

    def inspect(self, ref: str) -> InspectResponse:
        """Return the options of the last build registered under ``ref``."""
        if not ref:
            raise ValueError("inspect: empty key")
        with self._lock:
            session = self._sessions.get(ref)
            if session is None:
                raise LookupError(f"inspect: unknown key {ref}")
            return InspectResponse(options=session.build_options)

    def build(self, ref: str, options: BuildOptions) -> dict[str, str]:
        """Run a build under ``ref`` and return its exporter response."""
        if not ref:
            raise ValueError("build: empty key")

        with self._lock:
            session = self._sessions.get(ref)
            if session is not None:
                if session.building:
                    raise RuntimeError("build ongoing")
                session.building = True
                session.processes.cancel_running_processes()
                session.result = None
            else:
                session = _Session(building=True)
            session.processes = Manager()
            status_queue: queue.Queue[Any] = queue.Queue()
            session.status_queue = status_queue
            pipe = _Pipe()
            session.input_pipe = pipe
            self._sessions[ref] = session

        try:
            progress = ProgressWriter(status_queue)
            error: Exception | None = None
            response: Mapping[str, str] | None = None
            result: ResultHandle | None = None
            try:
                response, result = self._build_func(options, _PipeReader(pipe), progress)
            except Exception as exc:
                error = exc
                result = getattr(exc, "result", None)

            with self._lock:
                current = self._sessions.get(ref)
                if current is None:
                    raise LookupError(f"build: unknown key {ref}")
                if result is not None:
                    current.result = result
                    current.build_options = options

            if error is not None:
                if result is not None:
                    raise BuildError(ref, error) from error
                raise error
            return dict(response or {})
        finally:
            pipe.close_read()
            status_queue.put(_CLOSED)
            with self._lock:
                current = self._sessions.get(ref)
                if current is not None:
                    current.status_queue = None
                    current.building = False

    def status(self, ref: str) -> Iterator[StatusResponse]:
        """Yield the progress of the build under ``ref``, waiting for it to start."""
        if not ref:
            raise ValueError("status: empty key")
        return self._status(ref)

    def _status(self, ref: str) -> Iterator[StatusResponse]:
        while True:
            with self._lock:
                session = self._sessions.get(ref)
                status_queue = session.status_queue if session is not None else None
            if status_queue is not None:
                break
            time.sleep(_WAIT)
        while True:
            item = status_queue.get()
            if item is _CLOSED or item is None:
                return
            yield item

    def input(self, messages: Iterable[InputMessage]) -> None:
        """Feed build input: an init message naming the ref, then data messages."""
        it = iter(messages)
        try:
            first = next(it)
        except StopIteration:
            return
        if not isinstance(first, InputInitMessage):
            raise ValueError(f"unexpected message: {type(first).__name__}; wanted init")
        ref = first.ref
        if not ref:
            raise ValueError("input: no ref is provided")

        while True:
            with self._lock:
                session = self._sessions.get(ref)
                pipe = session.input_pipe if session is not None else None
            if pipe is not None:
                break
            time.sleep(_WAIT)

        try:
            for msg in it:
                if not isinstance(msg, DataMessage):
                    continue
                if msg.data:
                    pipe.write(msg.data)
                if msg.eof:
                    break
        except Exception as exc:
            pipe.close_write(exc)
            raise
        pipe.close_write()

    def invoke(self, stream: MessageStream) -> None:
        """Serve an IO session that attaches to, or starts, a process of a build."""
        stdin_pipe, stdout_pipe, stderr_pipe = _Pipe(), _Pipe(), _Pipe()
        process_side = StdIO(
            stdin=_PipeReader(stdin_pipe),  # type: ignore[arg-type]
            stdout=_PipeWriter(stdout_pipe),  # type: ignore[arg-type]
            stderr=_PipeWriter(stderr_pipe),  # type: ignore[arg-type]
        )
        cancel = threading.Event()
        attached: list[Process] = []
        errors: list[BaseException] = []

        def init(message: InitMessage) -> None:
            ref = message.ref
            config = message.invoke_config
            with self._lock:
                session = self._sessions.get(ref)
            if session is None:
                raise LookupError(f"invoke: unknown key {ref}")
            pid = message.process_id
            if not pid:
                raise ValueError("invoke: specify process ID")
            proc = session.processes.get(pid)
            if proc is None:
                if config is None:
                    raise ValueError("no container config is provided")
                proc = session.processes.start_process(pid, session.result, config)  # type: ignore[arg-type]
            proc.forward_io(process_side, cancel.set)
            attached.append(proc)

        def serve() -> None:
            try:
                serve_io(
                    stream,
                    init,
                    IOServerConfig(
                        stdin=_PipeWriter(stdin_pipe),  # type: ignore[arg-type]
                        stdout=_PipeReader(stdout_pipe),  # type: ignore[arg-type]
                        stderr=_PipeReader(stderr_pipe),  # type: ignore[arg-type]
                        cancel=cancel,
                    ),
                )
            except BaseException as exc:
                errors.append(exc)
            finally:
                cancel.set()

        thread = threading.Thread(target=serve, daemon=True)
        thread.start()
        try:
            while True:
                proc = attached[0] if attached else None
                if proc is not None and proc.done:
                    break
                if cancel.wait(_POLL):
                    break

            proc = attached[0] if attached else None
            if proc is not None and proc.done:
                stdout_pipe.close_write()
                stderr_pipe.close_write()
                stdout_pipe.drained.wait(_DRAIN_TIMEOUT)
                stderr_pipe.drained.wait(_DRAIN_TIMEOUT)
                cancel.set()
                thread.join()
                proc.wait(0)
                return

            cancel.set()
            thread.join()
            if errors and not isinstance(errors[0], StreamCancelled):
                raise errors[0]
            raise StreamCancelled("context canceled")
        finally:
            for pipe in (stdin_pipe, stdout_pipe, stderr_pipe):
                pipe.close()