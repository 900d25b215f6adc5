"""Carrying a process's standard streams, signals and resizes over a message stream."""

from __future__ import annotations

import logging
import queue
import signal as _sig
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import IO, Any, Callable, Protocol, Union

from buildcontrol.models import InvokeConfig

log = logging.getLogger(__name__)

_CHUNK = 32 * 1024
_POLL = 0.02


@dataclass
class InitMessage:
    """Opens an IO session for process ``process_id`` of build ``ref``."""

    ref: str = ""
    process_id: str = ""
    invoke_config: InvokeConfig | None = None


@dataclass
class FdMessage:
    """Data for one file descriptor, or its end when ``eof`` is set."""

    fd: int = 0
    data: bytes = b""
    eof: bool = False


@dataclass
class ResizeMessage:
    """A terminal size change."""

    rows: int = 0
    cols: int = 0


@dataclass
class SignalMessage:
    """A signal to deliver, named without the ``SIG`` prefix."""

    name: str = ""


Message = Union[InitMessage, FdMessage, ResizeMessage, SignalMessage]


class MessageStream(Protocol):
    """A bidirectional stream of messages; ``recv`` raises EOFError at its end."""

    def send(self, msg: Message) -> None: ...

    def recv(self) -> Message: ...


class StreamCancelled(Exception):
    """The IO session was cancelled from outside."""


@dataclass
class WinSize:
    """A terminal size."""

    rows: int = 0
    cols: int = 0


@dataclass
class IOServerConfig:
    """Where a served session's data goes and comes from."""

    stdin: IO[bytes] | None = None
    stdout: IO[bytes] | None = None
    stderr: IO[bytes] | None = None
    signal_fn: Callable[[_sig.Signals], object] | None = None
    resize_fn: Callable[[WinSize], object] | None = None
    cancel: threading.Event | None = None


@dataclass
class IOAttachConfig:
    """The client side of a session: streams plus queues of signals and resizes."""

    stdin: IO[bytes] | None = None
    stdout: IO[bytes] | None = None
    stderr: IO[bytes] | None = None
    signal: "queue.Queue[Any] | None" = None
    resize: "queue.Queue[WinSize] | None" = None
    cancel: threading.Event | None = None


_SIGNALS: dict[str, _sig.Signals] = {
    name[3:]: value
    for name, value in _sig.Signals.__members__.items()
    if name.startswith("SIG") and not name.startswith("SIG_")
}
_SIGNAL_NAMES: dict[_sig.Signals, str] = {
    value: value.name[3:] for value in _sig.Signals if value.name.startswith("SIG")
}


def _signal_name(sig: Any) -> str:
    try:
        return _SIGNAL_NAMES.get(_sig.Signals(sig), "")
    except ValueError:
        return ""


class DebugStream:
    """A stream wrapper that logs every message passing through it."""

    def __init__(self, stream: MessageStream, prefix: str) -> None:
        self.stream = stream
        self.prefix = prefix

    def _log(self, arrow: str, role: str, msg: Message) -> None:
        if isinstance(msg, FdMessage):
            detail = "EOF" if msg.eof else f"{len(msg.data)} bytes"
            log.debug("%s File Message (%s:%s) fd=%d, %s", arrow, role, self.prefix, msg.fd, detail)
        elif isinstance(msg, ResizeMessage):
            log.debug("%s Resize Message (%s:%s): %s", arrow, role, self.prefix, msg)
        elif isinstance(msg, SignalMessage):
            log.debug("%s Signal Message (%s:%s): %s", arrow, role, self.prefix, msg.name)

    def send(self, msg: Message) -> None:
        self._log("|--->", "sender", msg)
        self.stream.send(msg)

    def recv(self) -> Message:
        msg = self.stream.recv()
        self._log("|<---", "receiver", msg)
        return msg


class _Pipe:
    """An in-memory pipe whose reader sees EOF once it is closed and drained."""

    def __init__(self) -> None:
        self._buffer = bytearray()
        self._closed = False
        self._cond = threading.Condition()

    def write(self, data: bytes) -> int:
        with self._cond:
            if self._closed:
                raise BrokenPipeError("write on closed pipe")
            self._buffer += data
            self._cond.notify_all()
        return len(data)

    def read(self, size: int = _CHUNK) -> bytes:
        with self._cond:
            self._cond.wait_for(lambda: self._buffer or self._closed)
            data = bytes(self._buffer[:size])
            del self._buffer[:size]
            return data

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()


def _pump(source: IO[bytes], pipe: _Pipe) -> None:
    read = getattr(source, "read1", None) or source.read
    try:
        while True:
            data = read(_CHUNK)
            if not data:
                break
            pipe.write(data)
    except (OSError, ValueError):
        pass
    finally:
        pipe.close()


class _Stopped(Exception):
    pass


class _Group:
    """Threads that share a cancellation flag; the first failure wins."""

    def __init__(self, parent: threading.Event | None) -> None:
        self.parent = parent
        self.cancelled = threading.Event()
        self._lock = threading.Lock()
        self._error: BaseException | None = None
        self._threads: list[threading.Thread] = []

    def externally_cancelled(self) -> bool:
        return self.parent is not None and self.parent.is_set()

    def stopped(self) -> bool:
        return self.cancelled.is_set() or self.externally_cancelled()

    def go(self, fn: Callable[[], None]) -> None:
        def run() -> None:
            try:
                fn()
            except BaseException as exc:
                with self._lock:
                    if self._error is None:
                        self._error = exc
                self.cancelled.set()

        thread = threading.Thread(target=run, daemon=True)
        self._threads.append(thread)
        thread.start()

    def wait(self) -> None:
        for thread in self._threads:
            thread.join()
        if self._error is not None:
            raise self._error


_END = object()


class _Receiver:
    """Reads the stream in the background so that waiting for it can be cancelled."""

    def __init__(self, stream: MessageStream, done: threading.Event) -> None:
        self._stream = stream
        self._done = done
        self._queue: queue.Queue[Any] = queue.Queue()
        threading.Thread(target=self._run, daemon=True).start()

    def _run(self) -> None:
        while True:
            try:
                msg = self._stream.recv()
            except EOFError:
                self._queue.put(_END)
                return
            except Exception as exc:
                self._queue.put(exc)
                return
            self._queue.put(msg)
            if self._done.is_set():
                return

    def get(self, stopped: Callable[[], bool]) -> Message | None:
        """Return the next message, ``None`` at the end of the stream."""
        while True:
            try:
                item = self._queue.get(timeout=_POLL)
            except queue.Empty:
                if stopped():
                    raise _Stopped from None
                continue
            if item is _END:
                self._queue.put(_END)
                return None
            if isinstance(item, BaseException):
                raise item
            return item


def copy_to_stream(fd: int, stream: MessageStream, reader: IO[bytes] | _Pipe) -> None:
    """Send everything ``reader`` yields as data for ``fd``, then an EOF message."""
    while True:
        data = reader.read(_CHUNK)
        if not data:
            break
        stream.send(FdMessage(fd=fd, data=bytes(data)))
    stream.send(FdMessage(fd=fd, eof=True))


def _forward(group: _Group, fd: int, stream: MessageStream, source: IO[bytes]) -> Callable[[], None]:
    pipe = _Pipe()
    threading.Thread(target=_pump, args=(source, pipe), daemon=True).start()

    def copy() -> None:
        try:
            copy_to_stream(fd, stream, pipe)
        finally:
            pipe.close()

    group.go(copy)
    return pipe.close


def _call_quietly(fn: Callable[[Any], object], arg: Any) -> None:
    try:
        fn(arg)
    except Exception as exc:
        log.debug("callback failed: %s", exc)


def _stop_or_raise(group: _Group) -> None:
    if group.externally_cancelled():
        raise StreamCancelled("context canceled")


def serve_io(
    stream: MessageStream,
    init_fn: Callable[[InitMessage], None],
    config: IOServerConfig,
) -> None:
    """Serve one IO session: wait for its init message, then relay data both ways."""
    stream = DebugStream(stream, f"server={datetime.now()}")
    group = _Group(config.cancel)
    done = threading.Event()
    closers: list[Callable[[], None]] = []
    receiver = _Receiver(stream, done)
    try:
        try:
            init = receiver.get(group.stopped)
        except _Stopped:
            raise StreamCancelled("context canceled") from None
        if init is None:
            raise EOFError("stream closed before init message")
        if not isinstance(init, InitMessage):
            raise ValueError(f"unexpected message: {type(init).__name__}; wanted init")
        if not init.ref:
            raise ValueError("no ref is provided")
        try:
            init_fn(init)
        except Exception as exc:
            raise RuntimeError(f"failed to initialize IO server: {exc}") from exc

        for fd, source in ((1, config.stdout), (2, config.stderr)):
            if source is not None:
                closers.append(_forward(group, fd, stream, source))

        def handle() -> None:
            try:
                while True:
                    try:
                        msg = receiver.get(group.stopped)
                    except _Stopped:
                        _stop_or_raise(group)
                        return
                    if msg is None:
                        return
                    if isinstance(msg, FdMessage):
                        if msg.fd != 0:
                            raise ValueError(f"unexpected fd: {msg.fd}")
                        if config.stdin is None:
                            continue
                        if msg.data:
                            config.stdin.write(msg.data)
                        if msg.eof:
                            config.stdin.close()
                    elif isinstance(msg, ResizeMessage):
                        if config.resize_fn is not None:
                            _call_quietly(config.resize_fn, WinSize(rows=msg.rows, cols=msg.cols))
                    elif isinstance(msg, SignalMessage):
                        if config.signal_fn is not None:
                            sig = _SIGNALS.get(msg.name)
                            if sig is None:
                                continue
                            _call_quietly(config.signal_fn, sig)
                    else:
                        raise ValueError(f"unexpected message: {type(msg).__name__}")
            finally:
                done.set()
                for close in closers:
                    close()

        group.go(handle)
        group.wait()
    finally:
        done.set()
        for close in closers:
            close()


def _relay(
    events: "queue.Queue[Any]",
    done: threading.Event,
    group: _Group,
    stream: MessageStream,
    convert: Callable[[Any], Message | None],
    what: str,
) -> None:
    while not done.is_set() and not group.stopped():
        try:
            item = events.get(timeout=_POLL)
        except queue.Empty:
            continue
        msg = convert(item)
        if msg is None:
            continue
        try:
            stream.send(msg)
        except Exception as exc:
            raise ConnectionError(f"failed to send {what}: {exc}") from exc


def _signal_message(sig: Any) -> SignalMessage | None:
    name = _signal_name(sig)
    return SignalMessage(name=name) if name else None


def _resize_message(win: WinSize) -> ResizeMessage:
    return ResizeMessage(rows=win.rows, cols=win.cols)


def attach_io(stream: MessageStream, init_message: InitMessage, config: IOAttachConfig) -> None:
    """Attach to a served session: send stdin, signals and resizes; receive stdout and stderr."""
    group = _Group(config.cancel)
    done = threading.Event()
    closers: list[Callable[[], None]] = []
    try:
        stream.send(init_message)
    except Exception as exc:
        raise ConnectionError(f"failed to init: {exc}") from exc

    try:
        if config.stdin is not None:
            closers.append(_forward(group, 0, stream, config.stdin))
        if config.signal is not None:
            events = config.signal
            group.go(lambda: _relay(events, done, group, stream, _signal_message, "signal"))
        if config.resize is not None:
            resizes = config.resize
            group.go(lambda: _relay(resizes, done, group, stream, _resize_message, "resize"))

        receiver = _Receiver(stream, done)

        def handle() -> None:
            eofs: set[int] = set()
            try:
                while True:
                    try:
                        msg = receiver.get(group.stopped)
                    except _Stopped:
                        _stop_or_raise(group)
                        return
                    if msg is None:
                        return
                    if not isinstance(msg, FdMessage):
                        raise ValueError(f"unexpected message: {type(msg).__name__}")
                    if msg.fd in eofs:
                        continue
                    if msg.fd == 1:
                        out = config.stdout
                    elif msg.fd == 2:
                        out = config.stderr
                    else:
                        raise ValueError(f"unsupported fd {msg.fd}")
                    if out is None:
                        log.warning("attach_io: no writer for fd %d", msg.fd)
                        continue
                    if msg.data:
                        out.write(msg.data)
                        flush = getattr(out, "flush", None)
                        if flush is not None:
                            flush()
                    if msg.eof:
                        eofs.add(msg.fd)
            finally:
                done.set()
                for close in closers:
                    close()

        group.go(handle)
        group.wait()
    finally:
        done.set()
        for close in closers:
            close()