# src/__init__.py - v1
"""indexcore: result caching, distributed locking and search fusion."""

from indexcore.version import __version__

__all__ = ["__version__"]
