"""Pydantic models for entries, search results and context bundles.

Entries are owned by the record store; the retrieval pipeline treats them as
immutable inputs for the duration of one call.
"""

from datetime import datetime
from typing import Generic, Literal, TypeVar

from pydantic import BaseModel, Field

EntryType = Literal["decision", "research", "artifact", "note", "reference"]
EntryStatus = Literal["draft", "active", "superseded", "archived"]
RelationType = Literal["related", "implements", "extends", "contradicts"]

SearchMode = Literal["hybrid", "semantic", "keyword"]
ContextFormat = Literal["markdown", "xml"]

T = TypeVar("T")


class Entry(BaseModel):
    """A stored knowledge record.

    Attributes:
        id: Unique entry identifier
        project_id: Owning project
        title: Short title (1-500 characters)
        type: Entry category
        status: Lifecycle status
        content: Markdown body
        context_summary: Optional short summary used for embedding
        tags: User-defined tags
        supersedes: ID of the entry this one replaces, if any
        created_at: Creation timestamp
        updated_at: Last modification timestamp
        version: Monotonic revision counter
    """

    id: str
    project_id: str
    title: str = Field(min_length=1, max_length=500)
    type: EntryType
    status: EntryStatus = "active"
    content: str
    context_summary: str | None = Field(default=None, max_length=500)
    tags: list[str] = Field(default_factory=list)
    supersedes: str | None = None
    created_at: datetime
    updated_at: datetime
    version: int = Field(default=1, ge=1)


class EntryRelation(BaseModel):
    """Directed edge between two entries."""

    from_id: str
    to_id: str
    relation_type: RelationType = "related"

    def other_id(self, entry_id: str) -> str:
        """Return the neighbor on the opposite side of ``entry_id``."""
        return self.to_id if self.from_id == entry_id else self.from_id


class EntryFilters(BaseModel):
    """Filters accepted by record store queries and search.

    Attributes:
        project_id: Restrict to one project
        type: Allowed entry types (None means any)
        status: Allowed statuses (None means any)
        limit: Page size
        offset: Page offset
    """

    project_id: str | None = None
    type: list[EntryType] | None = None
    status: list[EntryStatus] | None = None
    limit: int | None = Field(default=None, ge=1)
    offset: int | None = Field(default=None, ge=0)

    def matches(self, entry: Entry) -> bool:
        """Apply project/type/status filters to an already-fetched entry."""
        if self.project_id and entry.project_id != self.project_id:
            return False
        if self.type and entry.type not in self.type:
            return False
        if self.status and entry.status not in self.status:
            return False
        return True


class PaginatedResult(BaseModel, Generic[T]):
    items: list[T]
    total: int = Field(ge=0)
    limit: int
    offset: int = 0


class ScoreBreakdown(BaseModel):
    """Per-signal components of a search score.

    ``semantic`` is the raw cosine similarity, ``keyword`` the rank-normalized
    lexical score in [0, 1]. A signal that did not match the entry is 0.
    """

    semantic: float = 0.0
    keyword: float = Field(default=0.0, ge=0.0, le=1.0)


class SearchResult(BaseModel):
    """A single ranked search hit.

    Attributes:
        entry: The matched entry
        score: Mode-dependent score (similarity, keyword weight or fused RRF score)
        score_breakdown: Semantic and keyword components
    """

    entry: Entry
    score: float
    score_breakdown: ScoreBreakdown = Field(default_factory=ScoreBreakdown)


class ContextItemMetadata(BaseModel):
    project_id: str | None = None
    status: EntryStatus
    created_at: str
    updated_at: str


class ContextItem(BaseModel):
    """Projection of an entry prepared for LLM consumption."""

    id: str
    title: str
    type: EntryType
    content: str
    tags: list[str] = Field(default_factory=list)
    relevance_score: float
    metadata: ContextItemMetadata

    @classmethod
    def from_entry(cls, entry: Entry, score: float) -> "ContextItem":
        return cls(
            id=entry.id,
            title=entry.title,
            type=entry.type,
            content=entry.content,
            tags=list(entry.tags),
            relevance_score=score,
            metadata=ContextItemMetadata(
                project_id=entry.project_id,
                status=entry.status,
                created_at=entry.created_at.isoformat(),
                updated_at=entry.updated_at.isoformat(),
            ),
        )


class ContextRetrievalResult(BaseModel):
    """Token-bounded bundle of context items.

    Attributes:
        items: Included items in admission order
        total_tokens_estimate: Sum of the estimates of the included items
        truncated: True when search produced more candidates than were included
    """

    items: list[ContextItem] = Field(default_factory=list)
    total_tokens_estimate: int = Field(default=0, ge=0)
    truncated: bool = False
