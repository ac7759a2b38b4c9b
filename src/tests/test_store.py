"""
Unit tests for the in-memory chunk store.
"""

import pytest
import numpy as np

from rag_tenant_qa.store import Chunk, InMemoryChunkStore, tokenize

from fakes import embed_text, make_chunk


class TestChunk:

    def test_from_dict_accepts_camel_case(self):
        chunk = Chunk.from_dict({
            "chunkId": "c1",
            "documentId": "d1",
            "documentTitle": "Report",
            "content": "Some text",
            "chunkIndex": 3,
            "embedding": [0.1, 0.2],
        })

        assert chunk.chunk_id == "c1"
        assert chunk.document_title == "Report"
        assert chunk.text == "Some text"
        assert chunk.chunk_index == 3
        assert chunk.embedding.dtype == np.float32

    def test_to_dict_round_trip(self):
        chunk = make_chunk("c1", "d1", "revenue grew", 2, title="Q3")

        restored = Chunk.from_dict(chunk.to_dict(include_embedding=True))

        assert restored == chunk
        assert np.allclose(restored.embedding, chunk.embedding)

    def test_tokenize(self):
        assert tokenize("The Revenue, in Q3 was UP!") == ["revenue", "q3", "up"]


class TestInMemoryChunkStore:
    """Test search, isolation and persistence."""

    @pytest.mark.asyncio
    async def test_vector_search_orders_by_similarity(self, corpus_store):
        hits = await corpus_store.vector_search("acme", embed_text("paid vacation days"), 3)

        assert hits[0].chunk_id == "hr-0"
        assert hits[0].score >= hits[1].score

    @pytest.mark.asyncio
    async def test_keyword_search_only_returns_matches(self, corpus_store):
        hits = await corpus_store.keyword_search("acme", ["vacation"], 10)

        assert [h.chunk_id for h in hits] == ["hr-0"]

    @pytest.mark.asyncio
    async def test_keyword_search_matches_titles(self, corpus_store):
        hits = await corpus_store.keyword_search("acme", ["financial"], 10)

        assert {h.chunk_id for h in hits} == {"q3-0", "q3-1"}

    @pytest.mark.asyncio
    async def test_searches_are_tenant_scoped(self, corpus_store):
        hits = await corpus_store.keyword_search("globex", ["vacation"], 10)
        vector_hits = await corpus_store.vector_search("globex", embed_text("vacation"), 10)

        assert hits == []
        assert [h.chunk_id for h in vector_hits] == ["gx-0"]

    @pytest.mark.asyncio
    async def test_unknown_tenant(self, corpus_store):
        assert await corpus_store.vector_search("nobody", embed_text("x"), 5) == []
        assert await corpus_store.keyword_search("nobody", ["x"], 5) == []
        assert await corpus_store.get_document_full_text("nobody", "d-q3") == ""

    @pytest.mark.asyncio
    async def test_get_chunks_by_ids_keeps_order(self, corpus_store):
        chunks = await corpus_store.get_chunks_by_ids("acme", ["st-1", "missing", "q3-0"])

        assert [c.chunk_id for c in chunks] == ["st-1", "q3-0"]

    @pytest.mark.asyncio
    async def test_get_chunks_by_ids_other_tenant(self, corpus_store):
        assert await corpus_store.get_chunks_by_ids("globex", ["q3-0"]) == []

    @pytest.mark.asyncio
    async def test_full_text_in_chunk_order(self, corpus_store):
        text = await corpus_store.get_document_full_text("acme", "d-q3")

        assert text.startswith("Total revenue")
        assert "\n\nOperating expenses" in text

    def test_duplicate_chunks_ignored(self, corpus_store):
        added = corpus_store.add_chunks("acme", [make_chunk("q3-0", "d-q3", "duplicate")])

        assert added == 0
        assert corpus_store.count("acme") == 5

    @pytest.mark.asyncio
    async def test_save_and_load(self, corpus_store, tmp_path):
        path = tmp_path / "corpus.json"
        corpus_store.save_json(path)

        loaded = InMemoryChunkStore.load_json(path)
        hits = await loaded.keyword_search("acme", ["vacation"], 5)

        assert loaded.tenant_ids() == ["acme", "globex"]
        assert loaded.count("acme") == 5
        assert [h.chunk_id for h in hits] == ["hr-0"]

    def test_from_records_requires_tenant(self):
        with pytest.raises(ValueError):
            InMemoryChunkStore.from_records([{"chunk_id": "c1", "document_id": "d1", "text": "x"}])

    def test_from_flat_records(self):
        store = InMemoryChunkStore.from_records([
            {"tenant_id": "a", "chunk_id": "c1", "document_id": "d1", "text": "x", "embedding": [1.0]},
            {"tenantId": "b", "chunk_id": "c2", "document_id": "d2", "text": "y", "embedding": [1.0]},
        ])

        assert store.tenant_ids() == ["a", "b"]
