"""Processes started inside build result containers, with switchable IO."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import IO, Callable, Protocol

from buildcontrol.models import InvokeConfig, ProcessInfo

log = logging.getLogger(__name__)

_CHUNK = 32 * 1024


class Container(Protocol):
    """A container created from a build result that can run processes."""

    def run(
        self,
        config: InvokeConfig,
        stdin: _ProcessStdin,
        stdout: _ProcessOutput,
        stderr: _ProcessOutput,
        cancelled: threading.Event,
    ) -> None: ...

    def cancel(self) -> None: ...

    def is_unavailable(self) -> bool: ...


class ResultHandle(Protocol):
    """A build result from which containers can be created."""

    def new_container(self, config: InvokeConfig) -> Container: ...

    def done(self) -> None: ...


@dataclass
class StdIO:
    """The client side of a process's standard streams."""

    stdin: IO[bytes] | None = None
    stdout: IO[bytes] | None = None
    stderr: IO[bytes] | None = None


class _ProcessStdin:
    """The reading end a process sees as its standard input."""

    def __init__(self) -> None:
        self._buffer = bytearray()
        self._closed = False
        self._cond = threading.Condition()

    def feed(self, data: bytes) -> None:
        with self._cond:
            if self._closed:
                return
            self._buffer += data
            self._cond.notify_all()

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def readable(self) -> bool:
        return True

    def read(self, size: int | None = -1) -> bytes:
        """Block until data is available; ``b""`` means the stream is closed."""
        with self._cond:
            if size is None or size < 0:
                self._cond.wait_for(lambda: self._closed)
                size = len(self._buffer)
            else:
                self._cond.wait_for(lambda: self._buffer or self._closed)
            data = bytes(self._buffer[:size])
            del self._buffer[:size]
            return data


class _ProcessOutput:
    """A writing end a process sees as stdout or stderr."""

    def __init__(self, forwarder: _Forwarder, name: str) -> None:
        self._forwarder = forwarder
        self._name = name

    def writable(self) -> bool:
        return True

    def write(self, data: bytes) -> int:
        return self._forwarder._write(self._name, data)

    def flush(self) -> None:
        return None


class _Forwarder:
    """Connects a process to whichever client is currently attached."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._current: StdIO | None = None
        self._generation = 0
        self._closed = False
        self.stdin = _ProcessStdin()
        self.stdout = _ProcessOutput(self, "stdout")
        self.stderr = _ProcessOutput(self, "stderr")

    def set_in(self, stdio: StdIO) -> None:
        with self._lock:
            if self._closed:
                return
            self._generation += 1
            generation = self._generation
            self._current = stdio
        if stdio.stdin is not None:
            threading.Thread(
                target=self._pump, args=(stdio.stdin, generation), daemon=True
            ).start()

    def _pump(self, source: IO[bytes], generation: int) -> None:
        read = getattr(source, "read1", source.read)
        while True:
            try:
                data = read(_CHUNK)
            except (OSError, ValueError):
                return
            if not data:
                # Client EOF is not propagated to the process.
                return
            with self._lock:
                if self._closed or generation != self._generation:
                    return
                self.stdin.feed(data)

    def _write(self, name: str, data: bytes) -> int:
        with self._lock:
            if self._closed:
                raise BrokenPipeError("process output is closed")
            target = getattr(self._current, name) if self._current is not None else None
        if target is not None:
            target.write(data)
            flush = getattr(target, "flush", None)
            if flush is not None:
                flush()
        return len(data)

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._current = None
        self.stdin.close()


class Process:
    """A process running in a container, to which clients can attach."""

    def __init__(
        self, forwarder: _Forwarder, invoke_config: InvokeConfig, cancel: Callable[[], None]
    ) -> None:
        self._forwarder = forwarder
        self.invoke_config = invoke_config
        self._cancel = cancel
        self._on_cancel: Callable[[], None] | None = None
        self._lock = threading.Lock()
        self._finished = threading.Event()
        self._error: BaseException | None = None

    def forward_io(self, stdio: StdIO, on_cancel: Callable[[], None] | None = None) -> None:
        """Attach ``stdio`` to the process; the previous attachment's callback is called."""
        self._forwarder.set_in(stdio)
        with self._lock:
            previous, self._on_cancel = self._on_cancel, on_cancel
        if previous is not None:
            previous()

    @property
    def done(self) -> bool:
        """Whether the process has exited."""
        return self._finished.is_set()

    def wait(self, timeout: float | None = None) -> None:
        """Wait for the process to exit, raising the error it failed with."""
        if not self._finished.wait(timeout):
            raise TimeoutError("process is still running")
        if self._error is not None:
            raise self._error

    def _finish(self, error: BaseException | None) -> None:
        self._error = error
        self._finished.set()


class Manager:
    """Keeps the processes of one build result and the container they run in."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._container: Container | None = None
        self._processes: dict[str, Process] = {}

    def get(self, pid: str) -> Process | None:
        """Return process ``pid``, or ``None`` if it is not running."""
        with self._lock:
            return self._processes.get(pid)

    def cancel_running_processes(self) -> None:
        """Cancel and forget every running process."""
        with self._lock:
            processes = list(self._processes.values())
            self._processes.clear()
        for process in processes:
            process._cancel()

    def list_processes(self) -> list[ProcessInfo]:
        """Return the running processes."""
        with self._lock:
            return [
                ProcessInfo(process_id=pid, invoke_config=process.invoke_config)
                for pid, process in self._processes.items()
            ]

    def delete_process(self, pid: str) -> None:
        """Cancel and forget process ``pid``."""
        with self._lock:
            process = self._processes.pop(pid, None)
        if process is None:
            raise LookupError(f'unknown process "{pid}"')
        process._cancel()

    def start_process(self, pid: str, result: ResultHandle, config: InvokeConfig) -> Process:
        """Start a process, creating a fresh container on rollback or when none is usable."""
        with self._lock:
            container = self._container
        if config.rollback or container is None or container.is_unavailable():
            self.cancel_running_processes()
            if container is not None:
                threading.Thread(target=container.cancel, daemon=True).start()
            try:
                container = result.new_container(config)
            except Exception as exc:
                raise RuntimeError(f"failed to create container {exc}") from exc
            with self._lock:
                self._container = container

        forwarder = _Forwarder()
        cancelled = threading.Event()
        cancel_lock = threading.Lock()

        def cancel() -> None:
            with cancel_lock:
                if cancelled.is_set():
                    return
                cancelled.set()
            forwarder.close()

        process = Process(forwarder, config, cancel)
        with self._lock:
            self._processes[pid] = process
        threading.Thread(
            target=self._run,
            args=(pid, process, container, config, cancelled),
            daemon=True,
        ).start()
        return process

    def _run(
        self,
        pid: str,
        process: Process,
        container: Container,
        config: InvokeConfig,
        cancelled: threading.Event,
    ) -> None:
        error: BaseException | None = None
        forwarder = process._forwarder
        try:
            container.run(config, forwarder.stdin, forwarder.stdout, forwarder.stderr, cancelled)
        except Exception as exc:
            error = exc
            log.debug("process error: %s", exc)
        log.debug("finished process %s %s", pid, config.entrypoint)
        with self._lock:
            if self._processes.get(pid) is process:
                del self._processes[pid]
        process._cancel()
        process._finish(error)