"""Filename-driven TV and movie library sync to a remote media server."""
from .media_sync import MediaSync, __version__, main

__all__ = ["MediaSync", "__version__", "main"]
