"""Record store contract and a SQLite reference implementation.

The retrieval pipeline only reads from the store (``list_entries``,
``get_entry``, ``search_entries``, ``get_entry_relations``). The FTS5 keyword
index is maintained by triggers, so it is always current without any action
from the pipeline.
"""

import json
import re
import sqlite3
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from loguru import logger

from kortex.errors import StorageError, StorageErrorCodes
from kortex.models import Entry, EntryFilters, EntryRelation, PaginatedResult

DEFAULT_PAGE_SIZE = 20

_SCHEMA = """
CREATE TABLE IF NOT EXISTS entries (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    title TEXT NOT NULL,
    type TEXT NOT NULL,
    status TEXT NOT NULL,
    content TEXT NOT NULL,
    context_summary TEXT,
    tags TEXT NOT NULL DEFAULT '[]',
    supersedes TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 1
);

CREATE INDEX IF NOT EXISTS idx_entries_project ON entries(project_id);

CREATE VIRTUAL TABLE IF NOT EXISTS entries_fts USING fts5(
    title, content, context_summary,
    content='entries', content_rowid='rowid'
);

CREATE TRIGGER IF NOT EXISTS entries_ai AFTER INSERT ON entries BEGIN
    INSERT INTO entries_fts(rowid, title, content, context_summary)
    VALUES (new.rowid, new.title, new.content, new.context_summary);
END;

CREATE TRIGGER IF NOT EXISTS entries_ad AFTER DELETE ON entries BEGIN
    INSERT INTO entries_fts(entries_fts, rowid, title, content, context_summary)
    VALUES ('delete', old.rowid, old.title, old.content, old.context_summary);
END;

CREATE TRIGGER IF NOT EXISTS entries_au AFTER UPDATE ON entries BEGIN
    INSERT INTO entries_fts(entries_fts, rowid, title, content, context_summary)
    VALUES ('delete', old.rowid, old.title, old.content, old.context_summary);
    INSERT INTO entries_fts(rowid, title, content, context_summary)
    VALUES (new.rowid, new.title, new.content, new.context_summary);
END;

CREATE TABLE IF NOT EXISTS entry_relations (
    from_id TEXT NOT NULL REFERENCES entries(id) ON DELETE CASCADE,
    to_id TEXT NOT NULL REFERENCES entries(id) ON DELETE CASCADE,
    relation_type TEXT NOT NULL DEFAULT 'related',
    PRIMARY KEY (from_id, to_id)
);
"""

_FTS_TOKEN = re.compile(r"\w+", re.UNICODE)


class RecordStore(Protocol):
    """Read contract the retrieval pipeline depends on."""

    async def list_entries(self, filters: EntryFilters | None = None) -> PaginatedResult[Entry]:
        ...

    async def get_entry(self, entry_id: str) -> Entry | None:
        ...

    async def search_entries(
        self, query: str, filters: EntryFilters | None = None
    ) -> PaginatedResult[Entry]:
        """Full-text search ordered by the store's own lexical ranking."""
        ...

    async def get_entry_relations(self, entry_id: str) -> list[EntryRelation]:
        ...


def to_fts_query(query: str) -> str:
    """Turn free text into an FTS5 expression of quoted terms (implicit AND)."""
    return " ".join(f'"{token}"' for token in _FTS_TOKEN.findall(query))


def _filter_clause(filters: EntryFilters | None, alias: str = "e") -> tuple[str, list[Any]]:
    conditions: list[str] = []
    params: list[Any] = []
    if filters is None:
        return "", params

    if filters.project_id:
        conditions.append(f"{alias}.project_id = ?")
        params.append(filters.project_id)
    if filters.type:
        conditions.append(f"{alias}.type IN ({', '.join('?' for _ in filters.type)})")
        params.extend(filters.type)
    if filters.status:
        conditions.append(f"{alias}.status IN ({', '.join('?' for _ in filters.status)})")
        params.extend(filters.status)
    return " AND ".join(conditions), params


class SQLiteRecordStore:
    """SQLite-backed record store with an FTS5 keyword index.

    Args:
        path: Database file, or ``":memory:"``
    """

    def __init__(self, path: str | Path = ":memory:"):
        self.path = str(path)
        self._connection: sqlite3.Connection | None = None

    @property
    def connection(self) -> sqlite3.Connection:
        """The open connection, shared with ``VectorIndex``."""
        if self._connection is None:
            raise StorageError("Record store not initialized", StorageErrorCodes.UNKNOWN)
        return self._connection

    async def initialize(self) -> None:
        if self._connection is not None:
            return
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)

        self._connection = sqlite3.connect(self.path)
        self._connection.row_factory = sqlite3.Row
        self._connection.execute("PRAGMA foreign_keys = ON")
        self._connection.executescript(_SCHEMA)
        logger.debug(f"Opened record store at {self.path}")

    async def close(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> Entry:
        return Entry(
            id=row["id"],
            project_id=row["project_id"],
            title=row["title"],
            type=row["type"],
            status=row["status"],
            content=row["content"],
            context_summary=row["context_summary"],
            tags=json.loads(row["tags"]),
            supersedes=row["supersedes"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            version=row["version"],
        )

    async def create_entry(
        self,
        project_id: str,
        title: str,
        type: str,
        content: str,
        *,
        status: str = "active",
        tags: list[str] | None = None,
        context_summary: str | None = None,
        supersedes: str | None = None,
        entry_id: str | None = None,
    ) -> Entry:
        now = datetime.now(UTC)
        entry = Entry(
            id=entry_id or f"kortex_{uuid.uuid4().hex[:12]}",
            project_id=project_id,
            title=title,
            type=type,
            status=status,
            content=content,
            context_summary=context_summary,
            tags=tags or [],
            supersedes=supersedes,
            created_at=now,
            updated_at=now,
        )
        try:
            with self.connection:
                self.connection.execute(
                    """
                    INSERT INTO entries (id, project_id, title, type, status, content,
                        context_summary, tags, supersedes, created_at, updated_at, version)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        entry.id,
                        entry.project_id,
                        entry.title,
                        entry.type,
                        entry.status,
                        entry.content,
                        entry.context_summary,
                        json.dumps(entry.tags),
                        entry.supersedes,
                        entry.created_at.isoformat(),
                        entry.updated_at.isoformat(),
                        entry.version,
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise StorageError(
                f"Entry {entry.id!r} already exists", StorageErrorCodes.ALREADY_EXISTS, e
            ) from e
        return entry

    async def update_entry(self, entry_id: str, **changes: Any) -> Entry | None:
        current = await self.get_entry(entry_id)
        if current is None:
            return None

        updated = current.model_copy(
            update={
                **changes,
                "updated_at": datetime.now(UTC),
                "version": current.version + 1,
            }
        )
        updated = Entry.model_validate(updated.model_dump())
        with self.connection:
            self.connection.execute(
                """
                UPDATE entries SET title = ?, type = ?, status = ?, content = ?,
                    context_summary = ?, tags = ?, supersedes = ?, updated_at = ?, version = ?
                WHERE id = ?
                """,
                (
                    updated.title,
                    updated.type,
                    updated.status,
                    updated.content,
                    updated.context_summary,
                    json.dumps(updated.tags),
                    updated.supersedes,
                    updated.updated_at.isoformat(),
                    updated.version,
                    entry_id,
                ),
            )
        return updated

    async def delete_entry(self, entry_id: str) -> bool:
        with self.connection:
            cursor = self.connection.execute("DELETE FROM entries WHERE id = ?", (entry_id,))
        return cursor.rowcount > 0

    async def get_entry(self, entry_id: str) -> Entry | None:
        row = self.connection.execute("SELECT * FROM entries WHERE id = ?", (entry_id,)).fetchone()
        return self._row_to_entry(row) if row else None

    async def list_entries(self, filters: EntryFilters | None = None) -> PaginatedResult[Entry]:
        where, params = _filter_clause(filters)
        where_sql = f"WHERE {where}" if where else ""
        limit = (filters.limit if filters else None) or DEFAULT_PAGE_SIZE
        offset = (filters.offset if filters else None) or 0

        total = self.connection.execute(
            f"SELECT COUNT(*) FROM entries e {where_sql}", params
        ).fetchone()[0]
        rows = self.connection.execute(
            f"SELECT e.* FROM entries e {where_sql} "
            "ORDER BY e.updated_at DESC, e.id LIMIT ? OFFSET ?",
            [*params, limit, offset],
        ).fetchall()

        return PaginatedResult[Entry](
            items=[self._row_to_entry(r) for r in rows], total=total, limit=limit, offset=offset
        )

    async def search_entries(
        self, query: str, filters: EntryFilters | None = None
    ) -> PaginatedResult[Entry]:
        limit = (filters.limit if filters else None) or DEFAULT_PAGE_SIZE
        offset = (filters.offset if filters else None) or 0

        match = to_fts_query(query)
        if not match:
            return PaginatedResult[Entry](items=[], total=0, limit=limit, offset=offset)

        where, params = _filter_clause(filters)
        filter_sql = f"AND {where}" if where else ""
        base = (
            "FROM entries e JOIN entries_fts ON e.rowid = entries_fts.rowid "
            f"WHERE entries_fts MATCH ? {filter_sql}"
        )

        try:
            total = self.connection.execute(
                f"SELECT COUNT(*) {base}", [match, *params]
            ).fetchone()[0]
            rows = self.connection.execute(
                f"SELECT e.*, bm25(entries_fts) AS rank {base} ORDER BY rank LIMIT ? OFFSET ?",
                [match, *params, limit, offset],
            ).fetchall()
        except sqlite3.OperationalError as e:
            raise StorageError(
                f"Full-text search failed for {query!r}: {e}", StorageErrorCodes.INVALID_INPUT, e
            ) from e

        return PaginatedResult[Entry](
            items=[self._row_to_entry(r) for r in rows], total=total, limit=limit, offset=offset
        )

    async def create_relation(
        self, from_id: str, to_id: str, relation_type: str = "related"
    ) -> EntryRelation:
        relation = EntryRelation(from_id=from_id, to_id=to_id, relation_type=relation_type)
        try:
            with self.connection:
                self.connection.execute(
                    "INSERT INTO entry_relations (from_id, to_id, relation_type) VALUES (?, ?, ?)",
                    (relation.from_id, relation.to_id, relation.relation_type),
                )
        except sqlite3.IntegrityError as e:
            raise StorageError(
                f"Cannot relate {from_id!r} -> {to_id!r}: {e}",
                StorageErrorCodes.INVALID_INPUT,
                e,
            ) from e
        return relation

    async def get_entry_relations(self, entry_id: str) -> list[EntryRelation]:
        rows = self.connection.execute(
            "SELECT from_id, to_id, relation_type FROM entry_relations "
            "WHERE from_id = ? OR to_id = ? ORDER BY rowid",
            (entry_id, entry_id),
        ).fetchall()
        return [
            EntryRelation(from_id=r["from_id"], to_id=r["to_id"], relation_type=r["relation_type"])
            for r in rows
        ]
