"""Configuration, files and lifecycle of a detached build server."""

from __future__ import annotations

import logging
import os
import re
import signal
import subprocess
import sys
import tomllib
from dataclasses import dataclass
from typing import Callable

SERVE_COMMAND = "_INTERNAL_SERVE"
CONFIG_FILENAME = "config.toml"
SHARED_DIRNAME = "shared"

_PID = re.compile(r"[+-]?[0-9]+")
_LEVELS = {
    "trace": logging.DEBUG,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
    "panic": logging.CRITICAL,
}


@dataclass
class ServerConfig:
    """Settings read from the server's TOML configuration file."""

    root: str = ""
    log_level: str = ""
    log_file: str = ""

    def logging_level(self) -> int:
        """Return the logging level named by ``log_level``; info when unset."""
        if not self.log_level:
            return logging.INFO
        try:
            return _LEVELS[self.log_level.lower()]
        except KeyError:
            raise ValueError(
                f"failed to prepare logger: not a valid level: {self.log_level!r}"
            ) from None


@dataclass(frozen=True)
class ServerPaths:
    """The files a server of one revision keeps in its root directory."""

    root: str
    revision: str

    @property
    def log_file(self) -> str:
        return os.path.join(self.root, f"buildx.{self.revision}.log")

    @property
    def socket(self) -> str:
        return os.path.join(self.root, f"buildx.{self.revision}.sock")

    @property
    def pid_file(self) -> str:
        return os.path.join(self.root, f"buildx.{self.revision}.pid")


def load_config(path: str, default_root: str) -> ServerConfig:
    """Read the server configuration.

    With no ``path`` the file ``config.toml`` under ``default_root`` is used,
    and its absence yields the defaults; an explicit path must exist.
    """
    is_default = not path
    if is_default:
        path = os.path.join(default_root, CONFIG_FILENAME)
    try:
        with open(path, "rb") as fh:
            data = tomllib.load(fh)
    except FileNotFoundError as exc:
        if is_default:
            return ServerConfig()
        raise OSError(f'failed to read config "{path}": {exc}') from exc
    except tomllib.TOMLDecodeError as exc:
        raise ValueError(f'failed to read config "{path}": {exc}') from exc
    except OSError as exc:
        raise OSError(f'failed to read config "{path}": {exc}') from exc

    values: dict[str, str] = {}
    for key in ("root", "log_level", "log_file"):
        if key not in data:
            continue
        value = data[key]
        if not isinstance(value, str):
            raise ValueError(
                f'failed to unmarshal config "{path}": {key} must be a string, '
                f"not {type(value).__name__}"
            )
        values[key] = value
    return ServerConfig(**values)


def prepare_root_dir(config: ServerConfig, default_root: str) -> str:
    """Create the server root and its shared directory; return the shared one."""
    root = config.root or default_root
    if not root:
        raise ValueError("buildx root dir must be determined")
    os.makedirs(root, mode=0o700, exist_ok=True)
    server_root = os.path.join(root, SHARED_DIRNAME)
    os.makedirs(server_root, mode=0o700, exist_ok=True)
    return server_root


def log_file_path(config: ServerConfig, default_root: str, revision: str) -> str:
    """Return the server log file: the configured one, or one in the shared root."""
    if config.log_file:
        return config.log_file
    return ServerPaths(prepare_root_dir(config, default_root), revision).log_file


def _check_supported() -> None:
    if not sys.platform.startswith("linux"):
        raise OSError("remote buildx unsupported")


def launch(log_file: str, *args: str) -> Callable[[], int]:
    """Start the interpreter with ``args`` in a new session, detached from this one.

    Output goes to ``log_file`` (appended) or is discarded when it is empty.
    Returns a function that waits for the process and gives its exit code.
    """
    _check_supported()
    command = [sys.executable, *args]
    if log_file:
        fd = os.open(log_file, os.O_APPEND | os.O_CREAT | os.O_WRONLY, 0o644)
        with os.fdopen(fd, "ab") as out:
            proc = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=out,
                stderr=out,
                cwd="/",
                start_new_session=True,
            )
    else:
        proc = subprocess.Popen(
            command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            cwd="/",
            start_new_session=True,
        )
    return proc.wait


def write_pid_file(root: str, revision: str) -> str:
    """Record this process's id in the server root; return the file's path."""
    path = ServerPaths(root, revision).pid_file
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as fh:
        fh.write(str(os.getpid()))
    return path


def kill_server(server_root: str, revision: str) -> int:
    """Send SIGINT to the server whose id is recorded in ``server_root``; return that id."""
    with open(ServerPaths(server_root, revision).pid_file) as fh:
        text = fh.read()
    if not _PID.fullmatch(text):
        raise ValueError(f"invalid syntax in recorded PID: {text!r}")
    pid = int(text)
    if pid <= 0:
        raise ValueError("no PID is recorded for buildx server")
    os.kill(pid, signal.SIGINT)
    return pid