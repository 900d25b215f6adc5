"""Build controller: options, progress, processes, IO streaming and a session server."""

__version__ = "0.1.0"

__all__ = [
    "daemon",
    "errors",
    "local",
    "models",
    "options",
    "processes",
    "server",
    "status",
    "stream",
]