import duckdb
import logging
from pathlib import Path
from typing import Optional, Union

from ..exceptions import StorageConnectionError

logger = logging.getLogger(__name__)

MEMORY_PATH = Path(":memory:")


def resolve_store_path(db_path: Union[str, Path]) -> Path:
    """Map ":memory:" (any case) to MEMORY_PATH; expand and resolve files."""
    if isinstance(db_path, str) and db_path.lower() == ":memory:":
        return MEMORY_PATH
    return Path(db_path).expanduser().resolve()


class ConnectionHandler:
    """Opens the on-device DuckDB connection lazily and reopens after close."""

    def __init__(self, db_path: Union[str, Path], read_only: bool = False):
        self.db_path_resolved = resolve_store_path(db_path)
        self.read_only = read_only
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        logger.debug(f"Local store location: {self.db_path_resolved}")

    @property
    def is_memory(self) -> bool:
        return self.db_path_resolved == MEMORY_PATH

    def get_connection(self) -> duckdb.DuckDBPyConnection:
        """
        Return the open connection, opening it on first use. File stores get
        their parent directory created.

        Raises:
            StorageConnectionError: If the directory or the DuckDB file cannot
                be opened.
        """
        if self._connection is not None:
            return self._connection
        try:
            if not self.is_memory:
                self.db_path_resolved.parent.mkdir(parents=True, exist_ok=True)
            self._connection = duckdb.connect(
                database=str(self.db_path_resolved), read_only=self.read_only
            )
        except (duckdb.Error, OSError) as e:
            raise StorageConnectionError(
                f"Failed to open local store: {e}", original_exception=e
            ) from e
        logger.debug("Connected to the local store.")
        return self._connection

    def close_connection(self) -> None:
        if self._connection is None:
            return
        connection, self._connection = self._connection, None
        try:
            connection.close()
        except duckdb.Error as e:
            logger.error(f"Error closing the local store connection: {e}")
        else:
            logger.debug(f"Closed local store at {self.db_path_resolved}.")
