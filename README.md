# buildcontrol

`buildcontrol` is the control layer between a build front end and a build
engine. It turns user build options into the entries an engine expects, keeps
track of debug processes started inside a build result, carries standard IO
between a client and those processes over a message stream, and provides a
session server that keeps builds under client-chosen references.

It has no dependencies outside the standard library and needs Python 3.11 or
later.

## Modules

### `buildcontrol.models`

Plain dataclasses for build requests and responses: `ControlOptions`,
`BuildOptions`, `CacheOptionsEntry`, `ExportEntry`, `Secret`, `SSH`, `Attest`,
`InvokeConfig`, `ProcessInfo` and `InspectResponse`. `BuildxController` is the
abstract interface every controller implements (`build`, `invoke`, `kill`,
`close`, `list`, `disconnect`, `list_processes`, `disconnect_process`,
`inspect`); it is also a context manager that calls `close()` on exit.

### `buildcontrol.errors`

`BuildError(ref, error)` is raised when a build fails but still produced a
result; its `ref` names the session under which that result was kept, so the
result can still be inspected or debugged. `wrap_build(err, ref)` wraps an
exception this way and returns `None` for `None`.

### `buildcontrol.options`

- `create_attestations(attests)` maps each attestation type to its attributes.
  The first entry of a type wins; a disabled one maps to `None`.
- `create_caches(entries)` copies cache entries into `ClientCacheEntry` values.
- `create_exports(entries)` validates export entries and returns
  `ClientExportEntry` values. `local` needs a destination directory (not `-`);
  `tar` writes to a file, or to standard output when no destination is given;
  `oci` and `docker` write a file unless their `tar` attribute is false, in
  which case they need a directory; `registry` becomes `image`. Writing a
  tarball to standard output is refused when it is a terminal. Files opened
  before a failing entry are closed again.
- `create_secrets(secrets)` returns a dict of `SecretSource` keyed by secret
  id; `SecretSource.read()` gives the value from its environment variable or
  file.
- `create_ssh(ssh)` returns `AgentConfig` values, each with its own copy of
  the paths.
- `resolve_option_paths(options)` returns a copy of a `BuildOptions` with every
  local path made absolute: the context, the Dockerfile (only for a local
  context), named contexts (also behind `oci-layout://`), the `src` of local
  cache imports, the `dest` of local cache exports, export destinations,
  secret files and SSH paths. Remote contexts, `docker-image://` references,
  empty values and `-` are left alone.
- `is_remote_url(value)` tells an HTTP(S) URL or git reference from a local
  path.

```python
from buildcontrol.models import Attest
from buildcontrol.options import create_attestations, is_remote_url

is_remote_url("https://example.com/project.git")  # True
is_remote_url("./context")                        # False

create_attestations([
    Attest(type="sbom"),
    Attest(type="provenance", disabled=True),
    Attest(type="sbom", attrs="generator=other"),
])
# {"sbom": "", "provenance": None}
```

### `buildcontrol.status`

Progress records (`Vertex`, `VertexStatus`, `VertexLog`, `VertexWarning`)
grouped into a `SolveStatus` on the engine side and a `StatusResponse` on the
wire side; `to_control_status` and `from_control_status` convert between the
two, copying every list. `ProgressWriter(channel)` puts every status batch
written to it into `channel` (anything with a `put` method, such as a
`queue.Queue`), records build references in `build_refs`, and accepts every
log source.

### `buildcontrol.processes`

`Manager` keeps the processes of one build result and the container they run
in. `start_process(pid, result, config)` creates a fresh container from
`result.new_container(config)` on rollback, on first use or when the current
one reports `is_unavailable()`, cancelling the processes that were running;
the process then runs through the container's
`run(config, stdin, stdout, stderr, cancelled)` on a background thread.
`get`, `list_processes`, `delete_process` and `cancel_running_processes`
manage the set; deleting an unknown process raises `LookupError`.

`Process.forward_io(stdio, on_cancel)` attaches a `StdIO` to the process,
replacing and notifying the previous attachment. `Process.wait(timeout)`
waits for the process and raises the error it failed with; `done` tells
whether it has exited.

### `buildcontrol.local`

`LocalController(run_build, ref="local")` is an in-process controller with a
single session. `run_build(options, stdin, progress)` returns
`(response, result)`; if it raises an exception carrying a `result`
attribute, that result is still registered and the failure is raised as a
`BuildError`. A second build while one is running raises `RuntimeError`, and
an unknown ref raises `LookupError`.

### `buildcontrol.stream`

A framed IO protocol over any object with `send(msg)` and `recv()` (which
raises `EOFError` at the end of the stream): `InitMessage`, `FdMessage`,
`ResizeMessage` and `SignalMessage`.

- `serve_io(stream, init_fn, config)` waits for the init message, hands it to
  `init_fn`, then sends the process's stdout (fd 1) and stderr (fd 2) and
  delivers incoming stdin data, resizes and signals according to an
  `IOServerConfig`.
- `attach_io(stream, init_message, config)` is the client side: it sends the
  init message, stdin, and the signals and `WinSize` values queued in an
  `IOAttachConfig`, and writes incoming fd 1 and fd 2 data to its outputs.
- `copy_to_stream(fd, stream, reader)` sends a reader's data and a final EOF.
- `DebugStream` logs every message passing through it.

Both sessions can be stopped from outside through the `cancel` event of their
configuration, which raises `StreamCancelled`.

### `buildcontrol.server`

`Server(build_func, version=None)` runs builds under refs chosen by its
callers. `build(ref, options)` runs `build_func(options, stdin, progress)` and
returns its exporter response as a dict; `status(ref)` yields the
`StatusResponse` batches of that build, waiting for it to start;
`input(messages)` feeds build input from an `InputInitMessage` followed by
`DataMessage` values; `invoke(stream)` serves an IO session that attaches to,
or starts, a process in the build's result. `info`, `list`, `inspect`,
`list_processes`, `disconnect_process`, `disconnect` and `close` manage the
sessions; `info()` returns a `BuildxVersion`.

### `buildcontrol.daemon`

Helpers for running a server in the background on Linux:

- `load_config(path, default_root)` reads a TOML file with `root`,
  `log_level` and `log_file` into a `ServerConfig`; with no path,
  `config.toml` under `default_root` is used and may be absent.
  `ServerConfig.logging_level()` maps the level name to a `logging` level.
- `prepare_root_dir(config, default_root)` creates the root and its `shared`
  directory and returns the latter.
- `ServerPaths(root, revision)` names the log file, socket and PID file of a
  server revision; `log_file_path(config, default_root, revision)` picks the
  configured log file or the default one.
- `launch(log_file, *args)` starts the Python interpreter with `args` in a
  new session, with output appended to `log_file`, and returns a function
  that waits for it.
- `write_pid_file(root, revision)` records the current process id;
  `kill_server(server_root, revision)` sends SIGINT to the recorded process.

## What it does not do

- It contains no build engine. Builds are run by the `run_build` or
  `build_func` callables you pass in, and containers come from the result
  objects those callables return.
- It has no network transport. `Server` methods are called directly, and IO
  sessions run over whatever stream object you supply; there is no client
  that connects to a running server over a socket.
- It installs no command. `launch` starts the interpreter with the arguments
  it is given, but the package has no entry point that serves requests in the
  launched process.