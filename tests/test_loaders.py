"""
Tests for document models and loaders.
"""

import json

import pytest
import yaml
from pydantic import ValidationError

from hypernote.document import (
    ActionSpec,
    Document,
    DocumentNotFoundError,
    FileDocumentLoader,
    MemoryDocumentLoader,
    QuerySpec,
)

FEED = {
    "queries": {
        "feed": {"kinds": [1], "authors": ["$contacts"], "limit": 20},
        "$contacts": {"filter": {"kinds": [3], "authors": ["user.pubkey"]}, "pipe": ["first"]},
    },
    "events": {"like": {"kind": 7, "content": "+", "tags": [["e", "form.note"]]}},
}


# =============================================================================
# Models
# =============================================================================


class TestDocumentModels:
    """Tests for compiled document validation."""

    def test_names_are_normalized(self):
        document = Document.model_validate(FEED)

        assert set(document.queries) == {"$feed", "$contacts"}
        assert set(document.events) == {"@like"}
        assert document.get_query("feed") is document.queries["$feed"]
        assert document.get_action("like").kind == 7

    def test_flat_and_nested_shapes_agree(self):
        flat = QuerySpec.model_validate({"kinds": [3], "authors": ["user.pubkey"], "pipe": ["first"]})
        nested = QuerySpec.model_validate({"filter": {"kinds": [3], "authors": ["user.pubkey"]}, "pipe": ["first"]})

        assert flat == nested

    def test_tags_mapping_becomes_tag_filters(self):
        spec = QuerySpec.model_validate({"kinds": [1], "tags": {"p": "user.pubkey", "#t": ["python"]}})

        assert spec.filter == {"kinds": [1], "#p": ["user.pubkey"], "#t": ["python"]}

    def test_scalar_list_fields_are_wrapped(self):
        spec = QuerySpec.model_validate({"kinds": 1, "authors": "$contacts"})

        assert spec.filter == {"kinds": [1], "authors": ["$contacts"]}

    def test_dependencies(self):
        spec = QuerySpec.model_validate({"authors": ["$contacts"], "#e": ["{@post}"], "triggers": "notify"})

        assert spec.query_dependencies == ["$contacts"]
        assert spec.action_dependencies == ["@post"]
        assert spec.triggers == "@notify"

    def test_action_rejects_content_and_json(self):
        with pytest.raises(ValidationError):
            ActionSpec.model_validate({"kind": 1, "content": "x", "json": {"a": 1}})

    def test_action_d_tag_alias(self):
        assert ActionSpec.model_validate({"kind": 30078, "dTag": "counter"}).d == "counter"

    def test_with_query_copies(self):
        document = Document.model_validate(FEED)

        extended = document.with_query("extra", {"kinds": [0]})

        assert "$extra" in extended.queries
        assert "$extra" not in document.queries

    def test_component_kind(self):
        with pytest.raises(ValidationError):
            Document.model_validate({"component_kind": 5})


# =============================================================================
# Loaders
# =============================================================================


class TestFileDocumentLoader:
    """Tests for FileDocumentLoader."""

    @pytest.mark.asyncio
    async def test_loads_json(self, tmp_path):
        (tmp_path / "feed.json").write_text(json.dumps(FEED))

        document = await FileDocumentLoader(tmp_path).load("feed")

        assert set(document.queries) == {"$feed", "$contacts"}

    @pytest.mark.asyncio
    async def test_loads_yaml(self, tmp_path):
        (tmp_path / "counter.yaml").write_text(
            yaml.safe_dump(
                {
                    "queries": {"$count": {"kinds": [7], "pipe": ["count"], "triggers": "@notify"}},
                    "events": {"@notify": {"kind": 1, "content": "count is {$count}"}},
                }
            )
        )

        document = await FileDocumentLoader(tmp_path).load("counter")

        assert document.queries["$count"].triggers == "@notify"
        assert document.events["@notify"].content == "count is {$count}"

    @pytest.mark.asyncio
    async def test_missing_document(self, tmp_path):
        with pytest.raises(DocumentNotFoundError):
            await FileDocumentLoader(tmp_path).load("nope")

    @pytest.mark.asyncio
    async def test_list_documents(self, tmp_path):
        (tmp_path / "feed.json").write_text("{}")
        (tmp_path / "card.yml").write_text("{}")
        (tmp_path / "notes.txt").write_text("ignored")

        assert await FileDocumentLoader(tmp_path).list_documents() == ["card", "feed"]

    @pytest.mark.asyncio
    async def test_list_missing_directory(self, tmp_path):
        assert await FileDocumentLoader(tmp_path / "absent").list_documents() == []

    def test_invalid_document(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({"events": {"@x": {"content": "no kind"}}}))

        with pytest.raises(ValidationError):
            FileDocumentLoader(tmp_path).load_path(path)


class TestMemoryDocumentLoader:
    """Tests for MemoryDocumentLoader."""

    @pytest.mark.asyncio
    async def test_add_and_load(self):
        loader = MemoryDocumentLoader()
        loader.add("feed", FEED)

        document = await loader.load("feed")

        assert isinstance(document, Document)
        assert await loader.list_documents() == ["feed"]

    @pytest.mark.asyncio
    async def test_missing(self):
        loader = MemoryDocumentLoader()
        loader.add("feed", FEED)
        loader.clear()

        with pytest.raises(DocumentNotFoundError):
            await loader.load("feed")
