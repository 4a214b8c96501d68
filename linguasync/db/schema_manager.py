import duckdb
import logging

from .connection import ConnectionHandler
from ..exceptions import StorageConnectionError, SchemaInitializationError

logger = logging.getLogger(__name__)

KV_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS kv_store (
    key VARCHAR PRIMARY KEY,
    value VARCHAR NOT NULL,
    updated_at TIMESTAMP
);
"""


class SchemaManager:
    """Manages the local store schema."""

    def __init__(self, handler: ConnectionHandler):
        self._handler = handler

    def initialize_schema(self, force_recreate_tables: bool = False) -> None:
        """
        Creates the key-value table inside a transaction. Skips file stores
        opened read-only. `force_recreate_tables` drops every stored key
        first.
        """
        if self._handle_read_only_initialization(force_recreate_tables):
            return

        conn = self._handler.get_connection()
        try:
            with conn.cursor() as cursor:
                cursor.begin()
                if force_recreate_tables:
                    logger.warning(
                        f"Recreating kv_store at {self._handler.db_path_resolved}. ALL STORED KEYS WILL BE LOST."  # noqa: E501
                    )
                    cursor.execute("DROP TABLE IF EXISTS kv_store;")
                cursor.execute(KV_SCHEMA_SQL)
                cursor.commit()
            logger.debug(
                f"Local store schema at {self._handler.db_path_resolved} ready."
            )
        except duckdb.Error as e:
            logger.error(
                f"Error initializing local store schema at {self._handler.db_path_resolved}: {e}"  # noqa: E501
            )
            try:
                conn.rollback()
            except duckdb.Error as rb_err:
                logger.error(f"Failed to rollback transaction: {rb_err}")
            raise SchemaInitializationError(
                f"Failed to initialize schema: {e}", original_exception=e
            ) from e

    def _handle_read_only_initialization(
        self, force_recreate_tables: bool
    ) -> bool:
        """Returns True if initialization should be skipped because the
        store is read-only."""
        if self._handler.read_only:
            if force_recreate_tables:
                raise StorageConnectionError(
                    "Cannot force_recreate_tables in read-only mode."
                )
            if not self._handler.is_memory:
                logger.warning(
                    "Attempting to initialize schema in read-only mode. Skipping."
                )
                return True
        return False
