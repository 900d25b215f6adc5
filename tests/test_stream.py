import io
import queue
import signal
import threading
import time

import pytest

from buildcontrol.stream import (
    DebugStream,
    FdMessage,
    InitMessage,
    IOAttachConfig,
    IOServerConfig,
    ResizeMessage,
    SignalMessage,
    StreamCancelled,
    WinSize,
    attach_io,
    copy_to_stream,
    serve_io,
)

END = object()


class FakeStream:
    def __init__(self, messages=(), end=True):
        self.incoming = queue.Queue()
        for msg in messages:
            self.incoming.put(msg)
        if end:
            self.incoming.put(END)
        self._sent = []
        self._lock = threading.Lock()

    def send(self, msg):
        with self._lock:
            self._sent.append(msg)

    def recv(self):
        item = self.incoming.get()
        if item is END:
            self.incoming.put(END)
            raise EOFError
        if isinstance(item, BaseException):
            raise item
        return item

    def close(self):
        self.incoming.put(END)

    @property
    def sent(self):
        with self._lock:
            return list(self._sent)


class FailingSend(FakeStream):
    def send(self, msg):
        raise OSError("broken")


class Sink:
    def __init__(self):
        self.data = bytearray()
        self.closed = False

    def write(self, data):
        self.data += data
        return len(data)

    def flush(self):
        pass

    def close(self):
        self.closed = True


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def close_when(stream, predicate):
    def watch():
        wait_for(predicate)
        stream.close()

    threading.Thread(target=watch, daemon=True).start()


def fd_data(messages, fd):
    return b"".join(m.data for m in messages if isinstance(m, FdMessage) and m.fd == fd)


def has_eof(stream, fd):
    return any(isinstance(m, FdMessage) and m.fd == fd and m.eof for m in stream.sent)


def test_copy_to_stream_sends_data_then_eof():
    stream = FakeStream()
    copy_to_stream(1, stream, io.BytesIO(b"hello"))
    assert stream.sent == [FdMessage(fd=1, data=b"hello"), FdMessage(fd=1, eof=True)]


def test_copy_to_stream_empty_reader_sends_only_eof():
    stream = FakeStream()
    copy_to_stream(2, stream, io.BytesIO(b""))
    assert stream.sent == [FdMessage(fd=2, eof=True)]


def test_copy_to_stream_chunks_large_input():
    payload = bytes(range(256)) * 300
    stream = FakeStream()
    copy_to_stream(0, stream, io.BytesIO(payload))
    sent = stream.sent
    assert fd_data(sent, 0) == payload
    assert all(len(m.data) <= 32 * 1024 for m in sent)
    assert sent[-1].eof
    assert len(sent) > 2


def test_serve_io_requires_init_first():
    stream = FakeStream([FdMessage(fd=0, data=b"x")])
    with pytest.raises(ValueError, match="wanted init"):
        serve_io(stream, lambda init: None, IOServerConfig())


def test_serve_io_requires_ref():
    stream = FakeStream([InitMessage(ref="", process_id="p")])
    with pytest.raises(ValueError, match="no ref is provided"):
        serve_io(stream, lambda init: None, IOServerConfig())


def test_serve_io_wraps_init_failure():
    def fail(init):
        raise KeyError("nope")

    stream = FakeStream([InitMessage(ref="r", process_id="p")])
    with pytest.raises(RuntimeError, match="failed to initialize IO server"):
        serve_io(stream, fail, IOServerConfig())


def test_serve_io_closed_before_init():
    stream = FakeStream([])
    with pytest.raises(EOFError):
        serve_io(stream, lambda init: None, IOServerConfig())


def test_serve_io_forwards_stdin_and_stdout():
    init = InitMessage(ref="r", process_id="p")
    stream = FakeStream(
        [init, FdMessage(fd=0, data=b"abc"), FdMessage(fd=0, eof=True)], end=False
    )
    stdin = Sink()
    inits = []
    close_when(stream, lambda: has_eof(stream, 1) and stdin.closed)
    serve_io(stream, inits.append, IOServerConfig(stdin=stdin, stdout=io.BytesIO(b"out")))
    assert inits == [init]
    assert bytes(stdin.data) == b"abc"
    assert stdin.closed
    assert fd_data(stream.sent, 1) == b"out"
    assert has_eof(stream, 1)


def test_serve_io_rejects_output_fd_from_client():
    stream = FakeStream([InitMessage(ref="r"), FdMessage(fd=1, data=b"x")])
    with pytest.raises(ValueError, match="unexpected fd"):
        serve_io(stream, lambda init: None, IOServerConfig(stdin=Sink()))


def test_serve_io_ignores_stdin_without_destination():
    stream = FakeStream([InitMessage(ref="r"), FdMessage(fd=0, data=b"x"), ResizeMessage(rows=1, cols=2)])
    sizes = []
    serve_io(stream, lambda init: None, IOServerConfig(resize_fn=sizes.append))
    assert sizes == [WinSize(rows=1, cols=2)]


def test_serve_io_delivers_resize():
    stream = FakeStream([InitMessage(ref="r"), ResizeMessage(rows=24, cols=80)])
    sizes = []
    serve_io(stream, lambda init: None, IOServerConfig(resize_fn=sizes.append))
    assert sizes == [WinSize(rows=24, cols=80)]


def test_serve_io_delivers_known_signals_only():
    stream = FakeStream(
        [InitMessage(ref="r"), SignalMessage(name="NOPE"), SignalMessage(name="INT")]
    )
    received = []
    serve_io(stream, lambda init: None, IOServerConfig(signal_fn=received.append))
    assert received == [signal.SIGINT]


def test_serve_io_rejects_unknown_message():
    stream = FakeStream([InitMessage(ref="r"), "bogus"])
    with pytest.raises(ValueError, match="unexpected message"):
        serve_io(stream, lambda init: None, IOServerConfig())


def test_serve_io_cancelled():
    stream = FakeStream([InitMessage(ref="r")], end=False)
    cancel = threading.Event()
    timer = threading.Timer(0.1, cancel.set)
    timer.start()
    with pytest.raises(StreamCancelled):
        serve_io(stream, lambda init: None, IOServerConfig(cancel=cancel))
    assert cancel.is_set()


def test_attach_io_writes_output_and_ignores_after_eof():
    stream = FakeStream(
        [
            FdMessage(fd=1, data=b"hi"),
            FdMessage(fd=2, data=b"err"),
            FdMessage(fd=1, eof=True),
            FdMessage(fd=1, data=b"ignored"),
        ]
    )
    stdout, stderr = Sink(), Sink()
    init = InitMessage(ref="r", process_id="p")
    attach_io(stream, init, IOAttachConfig(stdout=stdout, stderr=stderr))
    assert stream.sent[0] == init
    assert bytes(stdout.data) == b"hi"
    assert bytes(stderr.data) == b"err"


def test_attach_io_rejects_unsupported_fd():
    stream = FakeStream([FdMessage(fd=3, data=b"x")])
    with pytest.raises(ValueError, match="unsupported fd 3"):
        attach_io(stream, InitMessage(ref="r"), IOAttachConfig())


def test_attach_io_rejects_non_file_message():
    stream = FakeStream([ResizeMessage(rows=1, cols=1)])
    with pytest.raises(ValueError, match="unexpected message"):
        attach_io(stream, InitMessage(ref="r"), IOAttachConfig())


def test_attach_io_sends_stdin():
    stream = FakeStream(end=False)
    close_when(stream, lambda: has_eof(stream, 0))
    attach_io(stream, InitMessage(ref="r"), IOAttachConfig(stdin=io.BytesIO(b"input")))
    assert fd_data(stream.sent, 0) == b"input"
    assert has_eof(stream, 0)


def test_attach_io_sends_signals():
    signals = queue.Queue()
    signals.put(signal.SIGTERM)
    stream = FakeStream(end=False)
    close_when(stream, lambda: SignalMessage(name="TERM") in stream.sent)
    attach_io(stream, InitMessage(ref="r"), IOAttachConfig(signal=signals))
    assert SignalMessage(name="TERM") in stream.sent


def test_attach_io_sends_resizes():
    resizes = queue.Queue()
    resizes.put(WinSize(rows=10, cols=20))
    stream = FakeStream(end=False)
    close_when(stream, lambda: ResizeMessage(rows=10, cols=20) in stream.sent)
    attach_io(stream, InitMessage(ref="r"), IOAttachConfig(resize=resizes))
    assert ResizeMessage(rows=10, cols=20) in stream.sent


def test_attach_io_init_failure():
    stream = FailingSend()
    with pytest.raises(ConnectionError, match="failed to init"):
        attach_io(stream, InitMessage(ref="r"), IOAttachConfig())


def test_attach_io_propagates_receive_error():
    stream = FakeStream([RuntimeError("boom")], end=False)
    with pytest.raises(RuntimeError, match="boom"):
        attach_io(stream, InitMessage(ref="r"), IOAttachConfig())


def test_debug_stream_delegates():
    msg = FdMessage(fd=1, data=b"x")
    inner = FakeStream([msg])
    debug = DebugStream(inner, "test")
    assert debug.recv() == msg
    out = SignalMessage(name="INT")
    debug.send(out)
    assert inner.sent == [out]
    with pytest.raises(EOFError):
        debug.recv()