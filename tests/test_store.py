from __future__ import annotations

from datetime import datetime, timezone

from ragrouter.embeddings.store import ChromaVectorStore
from ragrouter.models import DocumentChunk, DocumentMetadata, QueryFilters


def _doc_chunk(
    doc_id: str,
    text: str,
    index: int,
    granularity: str = "coarse",
    *,
    source: str | None = None,
    content_hash: str | None = None,
    created_at: datetime | None = None,
) -> DocumentChunk:
    meta = DocumentMetadata(
        document_id=doc_id,
        title=f"Title {doc_id}",
        source=source,
        content_hash=content_hash,
        created_at=created_at or datetime(2024, 1, 1, tzinfo=timezone.utc),
        extra={"tags": ["demo"]},
    )
    return DocumentChunk(
        chunk_id=f"{doc_id}-{granularity}-{index}",
        text=text,
        document_metadata=meta,
        chunk_index=index,
        granularity=granularity,
        chunk_metadata={"tokens": 3},
    )


def test_store_upsert_and_similarity_search(vector_store, provider):
    chunks = [
        _doc_chunk("d1", "alpha beta gamma", 0),
        _doc_chunk("d2", "lorem ipsum dolor", 0),
    ]
    ids = vector_store.upsert(chunks)
    assert list(ids) == ["d1-coarse-0", "d2-coarse-0"]
    assert vector_store.count() == 2

    results = vector_store.search(provider.embed_query("alpha beta gamma"), top_k=2)
    assert results
    top = results[0]
    assert top.chunk.chunk_id == "d1-coarse-0"
    assert 0.99 < top.score <= 1.0 + 1e-6
    assert top.chunk.document_metadata.title == "Title d1"
    assert top.chunk.document_metadata.extra == {"tags": ["demo"]}
    assert top.chunk.chunk_metadata == {"tokens": 3}


def test_search_respects_threshold_and_granularity(vector_store, provider):
    vector_store.upsert(
        [
            _doc_chunk("d1", "solar panels convert sunlight", 0, "coarse"),
            _doc_chunk("d1", "solar panels", 0, "fine"),
            _doc_chunk("d1", "convert sunlight", 1, "fine"),
        ]
    )
    vector = provider.embed_query("solar panels convert sunlight")

    fine = vector_store.search(vector, top_k=5, granularity="fine")
    assert fine
    assert all(item.chunk.granularity == "fine" for item in fine)

    strict = vector_store.search(vector, top_k=5, score_threshold=0.999, granularity="fine")
    assert strict == []


def test_search_applies_filters(vector_store, provider):
    vector_store.upsert(
        [
            _doc_chunk("d1", "river delta sediment", 0, source="wiki"),
            _doc_chunk("d2", "river delta sediment", 0, source="news"),
            _doc_chunk(
                "d3",
                "river delta sediment",
                0,
                source="wiki",
                created_at=datetime(2020, 6, 1, tzinfo=timezone.utc),
            ),
        ]
    )
    vector = provider.embed_query("river delta")

    by_source = vector_store.search(vector, top_k=5, filters=QueryFilters(sources=("wiki",)))
    assert {item.chunk.document_metadata.document_id for item in by_source} == {"d1", "d3"}

    window = (datetime(2023, 1, 1, tzinfo=timezone.utc), datetime(2025, 1, 1, tzinfo=timezone.utc))
    combined = vector_store.search(
        vector,
        top_k=5,
        filters=QueryFilters(sources=("wiki",), date_range=window),
    )
    assert [item.chunk.document_metadata.document_id for item in combined] == ["d1"]


def test_build_where_only_wraps_multiple_clauses():
    assert ChromaVectorStore._build_where(None, None) is None
    assert ChromaVectorStore._build_where("fine", None) == {"granularity": "fine"}
    where = ChromaVectorStore._build_where("coarse", QueryFilters(document_ids=("a", "b")))
    assert where == {"$and": [{"granularity": "coarse"}, {"document_id": {"$in": ["a", "b"]}}]}


def test_neighbors_returns_window_in_index_order(vector_store):
    vector_store.upsert([_doc_chunk("d1", f"part {i}", i, "fine") for i in range(5)])
    vector_store.upsert([_doc_chunk("d2", "other", 0, "fine")])

    window = vector_store.neighbors("d1", "fine", 2, radius=1)
    assert [chunk.chunk_index for chunk in window] == [1, 2, 3]

    edge = vector_store.neighbors("d1", "fine", 0, radius=2)
    assert [chunk.chunk_index for chunk in edge] == [0, 1, 2]


def test_document_lookup_delete_and_reset(vector_store):
    vector_store.upsert(
        [
            _doc_chunk("d1", "first", 0, content_hash="hash-1"),
            _doc_chunk("d1", "second", 1, content_hash="hash-1"),
            _doc_chunk("d2", "third", 0, content_hash="hash-2"),
        ]
    )
    assert vector_store.find_document_by_hash("hash-2") == "d2"
    assert vector_store.find_document_by_hash("missing") is None
    assert dict(vector_store.count_by_document()) == {"d1": 2, "d2": 1}

    vector_store.delete_document("d1")
    assert dict(vector_store.count_by_document()) == {"d2": 1}

    vector_store.reset()
    assert vector_store.count() == 0
    assert vector_store.ping()
