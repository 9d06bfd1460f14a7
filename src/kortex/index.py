"""Vector index co-located with the record store in SQLite.

Vectors live in a ``sqlite-vec`` virtual table inside the same database file
as the entries. When the extension cannot be loaded on this installation the
index stays in the ``UNAVAILABLE`` state: reads return empty or negative
results and writes are skipped, so callers lose the semantic signal instead of
failing.
"""

import sqlite3
import warnings
from enum import Enum

import numpy as np
import sqlite_vec
from loguru import logger


class IndexState(str, Enum):
    UNAVAILABLE = "unavailable"
    EMPTY = "available-empty"
    POPULATED = "available-populated"


class VectorIndex:
    """``entry_id -> vector`` mapping with cosine k-nearest-neighbor search.

    Args:
        connection: Open SQLite connection shared with the record store
        dimensions: Vector length; must match between writes and queries
        table_name: Name of the vec0 virtual table
    """

    def __init__(
        self,
        connection: sqlite3.Connection,
        dimensions: int,
        table_name: str = "entry_embeddings",
    ):
        if dimensions <= 0:
            raise ValueError(f"dimensions must be positive, got {dimensions}")
        self.connection = connection
        self.dimensions = dimensions
        self.table_name = table_name
        self.requires_reindex = False
        self._enabled = False

    def initialize(self) -> None:
        """Load sqlite-vec and create the vector table.

        Never raises for a missing extension; the index is left disabled.
        """
        if self._enabled:
            return

        try:
            self.connection.enable_load_extension(True)
            try:
                sqlite_vec.load(self.connection)
            finally:
                self.connection.enable_load_extension(False)
        except (AttributeError, sqlite3.Error) as e:
            # AttributeError: Python built without loadable extension support
            warnings.warn(
                f"sqlite-vec extension not available ({e}). Semantic search disabled.",
                UserWarning,
                stacklevel=2,
            )
            logger.warning(f"sqlite-vec extension not available, semantic search disabled: {e}")
            return

        with self.connection:
            self.connection.execute(
                f"CREATE TABLE IF NOT EXISTS {self.table_name}_meta "
                "(key TEXT PRIMARY KEY, value TEXT NOT NULL)"
            )
            row = self.connection.execute(
                f"SELECT value FROM {self.table_name}_meta WHERE key = 'dimensions'"
            ).fetchone()
            if row is not None and int(row[0]) != self.dimensions:
                logger.warning(
                    f"Vector index built with {row[0]} dims, provider uses {self.dimensions}; "
                    "dropping stored vectors (reindex required)"
                )
                self.connection.execute(f"DROP TABLE IF EXISTS {self.table_name}")
                self.requires_reindex = True

            self.connection.execute(
                f"CREATE VIRTUAL TABLE IF NOT EXISTS {self.table_name} USING vec0("
                f"entry_id TEXT PRIMARY KEY, embedding FLOAT[{self.dimensions}])"
            )
            self.connection.execute(
                f"INSERT OR REPLACE INTO {self.table_name}_meta (key, value) "
                "VALUES ('dimensions', ?)",
                (str(self.dimensions),),
            )

        self._enabled = True
        logger.debug(f"Vector index {self.table_name} ready ({self.dimensions} dims)")

    def is_available(self) -> bool:
        return self._enabled

    @property
    def state(self) -> IndexState:
        if not self._enabled:
            return IndexState.UNAVAILABLE
        return IndexState.POPULATED if self.count() > 0 else IndexState.EMPTY

    def _to_blob(self, vector: list[float]) -> bytes:
        array = np.asarray(vector, dtype=np.float32)
        if array.ndim != 1 or array.shape[0] != self.dimensions:
            raise ValueError(
                f"Expected {self.dimensions} dimensions, got {array.shape[-1] if array.ndim else 0}"
            )
        return array.tobytes()

    def upsert(self, entry_id: str, vector: list[float]) -> None:
        """Store the vector for ``entry_id``, replacing any existing one."""
        if not self._enabled:
            logger.debug(f"Vector index disabled, skipping upsert of {entry_id}")
            return

        blob = self._to_blob(vector)
        # vec0 tables do not support INSERT OR REPLACE
        with self.connection:
            self.connection.execute(
                f"DELETE FROM {self.table_name} WHERE entry_id = ?", (entry_id,)
            )
            self.connection.execute(
                f"INSERT INTO {self.table_name} (entry_id, embedding) VALUES (?, ?)",
                (entry_id, blob),
            )

    def delete(self, entry_id: str) -> None:
        if not self._enabled:
            return
        with self.connection:
            self.connection.execute(
                f"DELETE FROM {self.table_name} WHERE entry_id = ?", (entry_id,)
            )

    def search(self, query_vector: list[float], k: int = 10) -> list[tuple[str, float]]:
        """Return up to ``k`` ``(entry_id, similarity)`` pairs, most similar first.

        Similarity is ``1 - cosine_distance``.
        """
        if not self._enabled or k <= 0:
            return []

        rows = self.connection.execute(
            f"""
            SELECT entry_id, 1 - vec_distance_cosine(embedding, ?) AS similarity
            FROM {self.table_name}
            ORDER BY similarity DESC
            LIMIT ?
            """,
            (self._to_blob(query_vector), k),
        ).fetchall()
        return [(row[0], float(row[1])) for row in rows]

    def get(self, entry_id: str) -> list[float] | None:
        if not self._enabled:
            return None
        row = self.connection.execute(
            f"SELECT embedding FROM {self.table_name} WHERE entry_id = ?", (entry_id,)
        ).fetchone()
        if row is None:
            return None
        return np.frombuffer(row[0], dtype=np.float32).tolist()

    def has(self, entry_id: str) -> bool:
        if not self._enabled:
            return False
        row = self.connection.execute(
            f"SELECT 1 FROM {self.table_name} WHERE entry_id = ? LIMIT 1", (entry_id,)
        ).fetchone()
        return row is not None

    def count(self) -> int:
        if not self._enabled:
            return 0
        row = self.connection.execute(f"SELECT COUNT(*) FROM {self.table_name}").fetchone()
        return int(row[0])
