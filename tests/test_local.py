import io
import threading
import time

import pytest

from buildcontrol.errors import BuildError
from buildcontrol.local import LocalController
from buildcontrol.models import BuildOptions, InvokeConfig


def _eventually(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def ping_pong(config, stdin, stdout, stderr, cancelled):
    data = b""
    while data != b"ping":
        chunk = stdin.read(1024)
        if not chunk:
            return
        data += chunk
    stdout.write(b"pong")


def block(config, stdin, stdout, stderr, cancelled):
    stdin.read()


def fail(config, stdin, stdout, stderr, cancelled):
    raise RuntimeError("exit 1")


class FakeContainer:
    def __init__(self, behaviour):
        self.behaviour = behaviour

    def run(self, config, stdin, stdout, stderr, cancelled):
        self.behaviour(config, stdin, stdout, stderr, cancelled)

    def cancel(self):
        pass

    def is_unavailable(self):
        return False


class FakeResult:
    def __init__(self, behaviour=block):
        self.behaviour = behaviour
        self.done_called = False

    def new_container(self, config):
        return FakeContainer(self.behaviour)

    def done(self):
        self.done_called = True


class FailedWithResult(Exception):
    def __init__(self, message, result):
        super().__init__(message)
        self.result = result


def controller_with(result, response=None):
    def run_build(options, stdin, progress):
        return response, result

    return LocalController(run_build)


def _run_in_thread(fn, *args):
    outcome = {}

    def target():
        try:
            outcome["value"] = fn(*args)
        except BaseException as exc:
            outcome["error"] = exc

    thread = threading.Thread(target=target, daemon=True)
    thread.start()
    return thread, outcome


def test_build_returns_ref_and_response():
    response = {"containerimage.digest": "sha256:abc"}
    ctl = controller_with(FakeResult(), response)
    options = BuildOptions(context_path="/ctx")
    ref, resp = ctl.build(options, None, None)
    assert ref == "local"
    assert resp is response
    assert ctl.inspect("local").options is options
    assert ctl.list() == ["local"]


def test_build_error_with_result_is_wrapped():
    result = FakeResult()
    original = FailedWithResult("solve failed", result)

    def run_build(options, stdin, progress):
        raise original

    ctl = LocalController(run_build)
    options = BuildOptions(context_path="/ctx")
    with pytest.raises(BuildError) as excinfo:
        ctl.build(options, None, None)
    assert excinfo.value.ref == "local"
    assert excinfo.value.error is original
    assert ctl.inspect("local").options is options


def test_build_error_without_result_is_raised_as_is():
    def run_build(options, stdin, progress):
        raise ValueError("bad dockerfile")

    ctl = LocalController(run_build)
    with pytest.raises(ValueError, match="bad dockerfile"):
        ctl.build(BuildOptions(), None, None)
    assert ctl.inspect("local").options is None


def test_concurrent_build_is_refused():
    started = threading.Event()
    release = threading.Event()

    def run_build(options, stdin, progress):
        started.set()
        release.wait(2)
        return None, FakeResult()

    ctl = LocalController(run_build)
    thread, outcome = _run_in_thread(ctl.build, BuildOptions(), None, None)
    assert started.wait(2)
    with pytest.raises(RuntimeError, match="build ongoing"):
        ctl.build(BuildOptions(), None, None)
    release.set()
    thread.join(2)
    assert outcome["value"][0] == "local"
    assert ctl.build(BuildOptions(), None, None)[0] == "local"


def test_unknown_ref_is_rejected():
    ctl = controller_with(FakeResult())
    with pytest.raises(LookupError, match='unknown ref "other"'):
        ctl.inspect("other")
    with pytest.raises(LookupError):
        ctl.list_processes("other")
    with pytest.raises(LookupError):
        ctl.disconnect_process("other", "p1")
    with pytest.raises(LookupError):
        ctl.invoke("other", "p1", InvokeConfig(), None, None, None)


def test_invoke_without_result():
    ctl = LocalController(lambda options, stdin, progress: (None, None))
    ctl.build(BuildOptions(), None, None)
    with pytest.raises(RuntimeError, match="no build result is registered"):
        ctl.invoke("local", "p1", InvokeConfig(), None, None, None)


def test_invoke_runs_process():
    ctl = controller_with(FakeResult(ping_pong))
    ctl.build(BuildOptions(), None, None)
    out = io.BytesIO()
    ctl.invoke("local", "p1", InvokeConfig(), io.BytesIO(b"ping"), out, None)
    assert out.getvalue() == b"pong"
    assert ctl.list_processes("local") == []


def test_invoke_raises_process_error():
    ctl = controller_with(FakeResult(fail))
    ctl.build(BuildOptions(), None, None)
    with pytest.raises(RuntimeError, match="exit 1"):
        ctl.invoke("local", "p1", InvokeConfig(), None, None, None)


def test_second_attach_cancels_first():
    ctl = controller_with(FakeResult(block))
    ctl.build(BuildOptions(), None, None)
    first, first_outcome = _run_in_thread(
        ctl.invoke, "local", "p1", InvokeConfig(), None, None, None
    )
    assert _eventually(lambda: len(ctl.list_processes("local")) == 1)

    second, second_outcome = _run_in_thread(
        ctl.invoke, "local", "p1", InvokeConfig(), None, None, None
    )
    first.join(2)
    assert isinstance(first_outcome.get("error"), RuntimeError)
    assert str(first_outcome["error"]) == "io cancelled"

    ctl.disconnect_process("local", "p1")
    second.join(2)
    assert "error" not in second_outcome
    assert ctl.list_processes("local") == []


def test_close_stops_processes_and_releases_result():
    result = FakeResult(block)
    ctl = controller_with(result)
    ctl.build(BuildOptions(), None, None)
    thread, outcome = _run_in_thread(
        ctl.invoke, "local", "p1", InvokeConfig(), None, None, None
    )
    assert _eventually(lambda: len(ctl.list_processes("local")) == 1)
    ctl.close()
    thread.join(2)
    assert "error" not in outcome
    assert result.done_called
    assert ctl.list_processes("local") == []


def test_kill_and_disconnect_release_result():
    result = FakeResult()
    ctl = controller_with(result)
    ctl.build(BuildOptions(), None, None)
    ctl.kill()
    assert result.done_called

    other = FakeResult()
    ctl2 = controller_with(other)
    ctl2.build(BuildOptions(), None, None)
    ctl2.disconnect("local")
    assert other.done_called


def test_context_manager_closes():
    result = FakeResult()
    with controller_with(result) as ctl:
        ctl.build(BuildOptions(), None, None)
        assert not result.done_called
    assert result.done_called