"""Errors that carry the ref of the build they came from."""

from __future__ import annotations


class BuildError(Exception):
    """A build failure tied to the ref under which its result was registered."""

    def __init__(self, ref: str, error: BaseException) -> None:
        super().__init__(str(error))
        self.ref = ref
        self.error = error
        self.__cause__ = error


def wrap_build(err: BaseException | None, ref: str) -> BuildError | None:
    """Wrap ``err`` with ``ref``; ``None`` stays ``None``."""
    if err is None:
        return None
    return BuildError(ref, err)