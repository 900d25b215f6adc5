"""Turning build options into exporter, cache, secret and SSH settings."""

from __future__ import annotations

import dataclasses
import os
import re
import stat
import sys
from dataclasses import dataclass, field
from typing import IO, Iterable
from urllib.parse import urlsplit

from buildcontrol.models import (
    SSH,
    Attest,
    BuildOptions,
    CacheOptionsEntry,
    ExportEntry,
    Secret,
)

EXPORTER_IMAGE = "image"
EXPORTER_LOCAL = "local"
EXPORTER_TAR = "tar"
EXPORTER_OCI = "oci"
EXPORTER_DOCKER = "docker"

_SCHEME = re.compile(r"^([a-zA-Z][a-zA-Z0-9+.-]*)://")
_SCP_LIKE = re.compile(r"^([A-Za-z0-9_-]+)@([A-Za-z0-9.-]+):(.*?)(?:#(.*))?$")
_TRUE = {"1", "t", "T", "true", "TRUE", "True"}
_FALSE = {"0", "f", "F", "false", "FALSE", "False"}


@dataclass
class ClientCacheEntry:
    """A cache entry as handed to the solver."""

    type: str
    attrs: dict[str, str] = field(default_factory=dict)


@dataclass
class ClientExportEntry:
    """An exporter as handed to the solver, with its output target."""

    type: str
    attrs: dict[str, str] = field(default_factory=dict)
    output_dir: str = ""
    output: IO[bytes] | None = None


@dataclass
class SecretSource:
    """Where the value of one secret comes from."""

    id: str = ""
    file_path: str = ""
    env: str = ""

    def read(self) -> bytes:
        """Return the secret's value."""
        if self.env:
            return os.environ[self.env].encode()
        if self.file_path:
            with open(self.file_path, "rb") as fh:
                return fh.read()
        raise LookupError(f"secret {self.id!r} has no source")


@dataclass
class AgentConfig:
    """An SSH agent forwarded to the build."""

    id: str = ""
    paths: list[str] = field(default_factory=list)


def create_attestations(attests: Iterable[Attest]) -> dict[str, str | None]:
    """Map attestation types to attributes; disabled ones map to ``None``, first wins."""
    result: dict[str, str | None] = {}
    for attest in attests:
        if attest.type in result:
            continue
        result[attest.type] = None if attest.disabled else attest.attrs
    return result


def create_caches(entries: Iterable[CacheOptionsEntry]) -> list[ClientCacheEntry]:
    """Copy cache entries into solver cache entries."""
    return [ClientCacheEntry(type=e.type, attrs=dict(e.attrs)) for e in entries]


def _parse_bool(value: str) -> bool | None:
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    return None


def _stat(path: str, what: str) -> os.stat_result | None:
    try:
        return os.stat(path)
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise OSError(f"{what}: {path}") from exc


def _create_export(entry: ExportEntry) -> ClientExportEntry:
    if not entry.type:
        raise ValueError("type is required for output")

    out = ClientExportEntry(type=entry.type, attrs=dict(entry.attrs))
    support_file = False
    support_dir = False
    if out.type == EXPORTER_LOCAL:
        support_dir = True
    elif out.type == EXPORTER_TAR:
        support_file = True
    elif out.type in (EXPORTER_OCI, EXPORTER_DOCKER):
        tar = _parse_bool(out.attrs.get("tar", ""))
        if tar is None:
            tar = True
        support_file = tar
        support_dir = not tar
    elif out.type == "registry":
        out.type = EXPORTER_IMAGE

    dest = entry.destination
    if support_dir:
        if not dest:
            raise ValueError(f"dest is required for {out.type} exporter")
        if dest == "-":
            raise ValueError(f"dest cannot be stdout for {out.type} exporter")
        info = _stat(dest, "invalid destination directory")
        if info is not None and not stat.S_ISDIR(info.st_mode):
            raise ValueError(f"destination directory {dest} is a file")
        out.output_dir = dest

    if support_file:
        if not dest and out.type != EXPORTER_DOCKER:
            dest = "-"
        if dest == "-":
            stdout = sys.stdout
            if stdout.isatty():
                raise ValueError(
                    f"dest file is required for {out.type} exporter. refusing to write to console"
                )
            out.output = getattr(stdout, "buffer", stdout)
        elif dest:
            info = _stat(dest, "invalid destination file")
            if info is not None and stat.S_ISDIR(info.st_mode):
                raise ValueError(f"destination file {dest} is a directory")
            try:
                out.output = open(dest, "wb")
            except OSError as exc:
                raise OSError(f"failed to open {exc}") from exc
    return out


def create_exports(entries: Iterable[ExportEntry]) -> list[ClientExportEntry]:
    """Validate export entries and open their output files or directories."""
    outs: list[ClientExportEntry] = []
    try:
        for entry in entries:
            outs.append(_create_export(entry))
    except BaseException:
        stdout_buffer = getattr(sys.stdout, "buffer", sys.stdout)
        for out in outs:
            if out.output is not None and out.output is not stdout_buffer:
                out.output.close()
        raise
    return outs


def _is_url(value: str) -> bool:
    return value.startswith(("http://", "https://"))


def _is_git_ref(value: str) -> bool:
    if value.startswith(("./", "../")):
        return False
    if value.startswith("github.com/"):
        return True
    match = _SCHEME.match(value)
    if match:
        scheme = match.group(1)
        if scheme in ("http", "https"):
            return urlsplit(value).path.endswith(".git")
        return scheme in ("ssh", "git")
    return _SCP_LIKE.match(value) is not None


def is_remote_url(value: str) -> bool:
    """Tell whether ``value`` names a remote build context (an HTTP URL or a git ref)."""
    return _is_url(value) or _is_git_ref(value)


def _abs_unless_empty(path: str) -> str:
    return os.path.abspath(path) if path else path


def _resolve_named_context(value: str) -> str:
    if is_remote_url(value) or value.startswith("docker-image://"):
        return value
    prefix = "oci-layout://"
    if value.startswith(prefix):
        return prefix + os.path.abspath(value[len(prefix):])
    return os.path.abspath(value)


def _resolve_cache(entry: CacheOptionsEntry, path_key: str) -> CacheOptionsEntry:
    if entry.type != "local":
        return dataclasses.replace(entry, attrs=dict(entry.attrs))
    attrs = {
        key: _abs_unless_empty(value) if key == path_key else value
        for key, value in entry.attrs.items()
    }
    return dataclasses.replace(entry, attrs=attrs)


def resolve_option_paths(options: BuildOptions) -> BuildOptions:
    """Return a copy of ``options`` with every local path made absolute."""
    context_path = options.context_path
    local_context = False
    if context_path not in ("", "-") and not is_remote_url(context_path):
        local_context = True
        context_path = os.path.abspath(context_path)

    dockerfile = options.dockerfile_name
    if dockerfile not in ("", "-") and local_context and not _is_url(dockerfile):
        dockerfile = os.path.abspath(dockerfile)

    exports = [
        dataclasses.replace(
            e,
            attrs=dict(e.attrs),
            destination=e.destination
            if e.destination in ("", "-")
            else os.path.abspath(e.destination),
        )
        for e in options.exports
    ]
    secrets = [
        dataclasses.replace(s, file_path=_abs_unless_empty(s.file_path)) for s in options.secrets
    ]
    ssh = [
        dataclasses.replace(s, paths=[_abs_unless_empty(p) for p in s.paths]) for s in options.ssh
    ]

    return dataclasses.replace(
        options,
        context_path=context_path,
        dockerfile_name=dockerfile,
        named_contexts={
            key: _resolve_named_context(value) for key, value in options.named_contexts.items()
        },
        cache_from=[_resolve_cache(e, "src") for e in options.cache_from],
        cache_to=[_resolve_cache(e, "dest") for e in options.cache_to],
        exports=exports,
        secrets=secrets,
        ssh=ssh,
        attests=list(options.attests),
    )


def create_secrets(secrets: Iterable[Secret]) -> dict[str, SecretSource]:
    """Index secret sources by their ids."""
    return {
        s.id: SecretSource(id=s.id, file_path=s.file_path, env=s.env) for s in secrets
    }


def create_ssh(ssh: Iterable[SSH]) -> list[AgentConfig]:
    """Build SSH agent configurations, each with its own copy of the paths."""
    return [AgentConfig(id=s.id, paths=list(s.paths)) for s in ssh]