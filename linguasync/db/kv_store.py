"""
On-device durable key-value storage for linguasync.

A DuckDB table maps string keys to JSON text. The persisted session and the
local progress document both live here.
"""

import duckdb
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional, Union

from ..exceptions import SerializationError, StorageOperationError
from .connection import ConnectionHandler
from .schema_manager import SchemaManager

logger = logging.getLogger(__name__)


class KeyValueStore:
    """
    Facade over the local store: coordinates the ConnectionHandler and the
    SchemaManager and exposes JSON get/set/delete by key.

    The schema is created lazily on first use, so constructing a store never
    touches the disk.
    """

    def __init__(self, db_path: Union[str, Path], read_only: bool = False):
        self._handler = ConnectionHandler(db_path=db_path, read_only=read_only)
        self._schema_manager = SchemaManager(self._handler)
        self._schema_ready = False

    @property
    def db_path_resolved(self) -> Path:
        return self._handler.db_path_resolved

    def _connection(self) -> duckdb.DuckDBPyConnection:
        conn = self._handler.get_connection()
        if not self._schema_ready:
            self._schema_manager.initialize_schema()
            self._schema_ready = True
        return conn

    def get_json(self, key: str) -> Optional[Any]:
        """
        Return the decoded JSON value stored under `key`, or None if absent.

        Raises:
            StorageOperationError: If the read fails.
            SerializationError: If the stored text is not valid JSON.
        """
        try:
            row = (
                self._connection()
                .execute("SELECT value FROM kv_store WHERE key = ?", [key])
                .fetchone()
            )
        except duckdb.Error as e:
            raise StorageOperationError(
                f"Failed to read key '{key}': {e}", original_exception=e
            ) from e
        if row is None:
            return None
        try:
            return json.loads(row[0])
        except json.JSONDecodeError as e:
            raise SerializationError(
                f"Stored value for '{key}' is not valid JSON: {e}",
                original_exception=e,
            ) from e

    def set_json(self, key: str, value: Any) -> None:
        """Serialize `value` to JSON and store it under `key`, replacing any
        previous value."""
        try:
            payload = json.dumps(value, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise SerializationError(
                f"Value for '{key}' is not JSON serializable: {e}",
                original_exception=e,
            ) from e
        try:
            self._connection().execute(
                "INSERT OR REPLACE INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)",  # noqa: E501
                [key, payload, datetime.now(timezone.utc).replace(tzinfo=None)],
            )
        except duckdb.Error as e:
            raise StorageOperationError(
                f"Failed to write key '{key}': {e}", original_exception=e
            ) from e

    def delete(self, key: str) -> None:
        try:
            self._connection().execute(
                "DELETE FROM kv_store WHERE key = ?", [key]
            )
        except duckdb.Error as e:
            raise StorageOperationError(
                f"Failed to delete key '{key}': {e}", original_exception=e
            ) from e

    def keys(self, prefix: str = "") -> List[str]:
        try:
            rows = (
                self._connection()
                .execute(
                    "SELECT key FROM kv_store WHERE starts_with(key, ?) ORDER BY key",
                    [prefix],
                )
                .fetchall()
            )
        except duckdb.Error as e:
            raise StorageOperationError(
                f"Failed to list keys: {e}", original_exception=e
            ) from e
        return [row[0] for row in rows]

    def close(self) -> None:
        self._handler.close_connection()
        # A reopened in-memory store starts empty.
        if self._handler.is_memory:
            self._schema_ready = False

    def __enter__(self) -> "KeyValueStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
