"""Local storage package for linguasync.

Only KeyValueStore is exported as the public API.
"""

from .kv_store import KeyValueStore

__all__ = ["KeyValueStore"]
