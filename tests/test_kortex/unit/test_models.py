"""Tests for Pydantic entry, result and context models."""

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from kortex.models import (
    ContextItem,
    Entry,
    EntryFilters,
    EntryRelation,
    PaginatedResult,
    ScoreBreakdown,
    SearchResult,
)


class TestEntry:
    def test_defaults(self, make_entry):
        entry = make_entry("e1", "Title")

        assert entry.status == "active"
        assert entry.tags == []
        assert entry.version == 1
        assert entry.context_summary is None

    @pytest.mark.parametrize("title", ["", "x" * 501])
    def test_title_length(self, make_entry, title):
        with pytest.raises(ValidationError):
            make_entry("e1", title)

    def test_unknown_type_rejected(self, make_entry):
        with pytest.raises(ValidationError):
            make_entry("e1", "Title", type="memo")

    def test_version_must_be_positive(self, make_entry):
        with pytest.raises(ValidationError):
            make_entry("e1", "Title", version=0)


class TestEntryFilters:
    def test_empty_filters_match_everything(self, make_entry):
        assert EntryFilters().matches(make_entry("e1", "Title", status="archived"))

    def test_project_type_status(self, make_entry):
        entry = make_entry("e1", "Title", project_id="alpha", type="decision", status="draft")

        assert EntryFilters(project_id="alpha").matches(entry)
        assert not EntryFilters(project_id="beta").matches(entry)
        assert EntryFilters(type=["decision", "note"]).matches(entry)
        assert not EntryFilters(type=["note"]).matches(entry)
        assert EntryFilters(status=["draft"]).matches(entry)
        assert not EntryFilters(status=["active"]).matches(entry)

    def test_paging_bounds(self):
        with pytest.raises(ValidationError):
            EntryFilters(limit=0)
        with pytest.raises(ValidationError):
            EntryFilters(offset=-1)


class TestRelationsAndResults:
    def test_other_id_either_direction(self):
        relation = EntryRelation(from_id="a", to_id="b")

        assert relation.relation_type == "related"
        assert relation.other_id("a") == "b"
        assert relation.other_id("b") == "a"

    def test_keyword_component_bounded(self):
        with pytest.raises(ValidationError):
            ScoreBreakdown(keyword=1.5)

    def test_search_result_default_breakdown(self, make_entry):
        result = SearchResult(entry=make_entry("e1", "Title"), score=0.4)

        assert result.score_breakdown.semantic == 0.0
        assert result.score_breakdown.keyword == 0.0

    def test_paginated_result(self, make_entry):
        page = PaginatedResult[Entry](items=[make_entry("e1", "Title")], total=3, limit=1)

        assert page.offset == 0
        assert page.total == 3


class TestContextItem:
    def test_from_entry(self):
        entry = Entry(
            id="e1",
            project_id="alpha",
            title="Title",
            type="research",
            content="Body",
            tags=["x"],
            created_at=datetime(2025, 1, 15, 12, 0, tzinfo=UTC),
            updated_at=datetime(2025, 2, 1, 9, 30, tzinfo=UTC),
        )

        item = ContextItem.from_entry(entry, 0.42)

        assert item.id == "e1"
        assert item.type == "research"
        assert item.relevance_score == 0.42
        assert item.tags == ["x"]
        assert item.metadata.project_id == "alpha"
        assert item.metadata.status == "active"
        assert item.metadata.created_at == "2025-01-15T12:00:00+00:00"
        assert item.metadata.updated_at == "2025-02-01T09:30:00+00:00"
