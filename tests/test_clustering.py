"""
Tests for clustered search over the address table.
"""

import math

import numpy as np
import pytest

from chunkdb.core.address_table import ChunkAddressTable
from chunkdb.core.clustering import ResultClusterer, average_distance, average_gap
from chunkdb.vector import NumpyIndexAdapter, SearchHit


def normalize(v):
    v = np.asarray(v, dtype=np.float32)
    return v / np.linalg.norm(v)


def basis(dimension, i):
    v = np.zeros(dimension, dtype=np.float32)
    v[i] = 1.0
    return v


@pytest.fixture
def table():
    return ChunkAddressTable(NumpyIndexAdapter())


@pytest.fixture
def clusterer(table):
    return ResultClusterer(table)


def test_average_gap():
    assert average_gap([]) == 0.0
    assert average_gap([4]) == 0.0
    assert average_gap([0, 1, 2]) == pytest.approx(1.5)
    # Long gaps count as 15
    assert average_gap([0, 100]) == pytest.approx(1.5 * 15)


def test_average_distance():
    assert average_distance([]) == 0.0
    hits = [SearchHit(0, 1.0), SearchHit(1, 0.5)]
    assert average_distance(hits) == pytest.approx(0.75)


def test_empty_store_returns_nothing(clusterer):
    assert clusterer.search(np.ones(3), 5) == []


def test_single_chunk_document(table, clusterer):
    table.insert("doc1", "hello world", [(0, 11)], [basis(2, 0)])

    results = clusterer.search(basis(2, 0), 1)

    assert len(results) == 1
    assert results[0].content == "hello world"
    assert results[0].path_name == "doc1"
    assert results[0].relevance == pytest.approx(0.6 + 0.1 * math.log(2))


def test_contiguous_chunks_merge_into_one_passage(table, clusterer):
    """Twenty near-identical consecutive chunks come back as one passage."""
    text = "".join(f"chunk{i:02d} " for i in range(20))
    spans = [(8 * i, 7) for i in range(20)]
    vectors = [normalize([1.0, 0.01 * i]) for i in range(20)]
    table.insert("doc", text, spans, vectors)

    results = clusterer.search(basis(2, 0), 1)

    assert len(results) == 1
    assert results[0].content == text.rstrip()
    assert results[0].path_name == "doc"


def test_search_is_deterministic(table, clusterer):
    text = "".join(f"part{i} " for i in range(10))
    spans = [(6 * i, 5) for i in range(10)]
    vectors = [normalize([math.cos(i), math.sin(i), 0.5]) for i in range(10)]
    table.insert("doc", text, spans, vectors)
    query = normalize([1.0, 0.3, 0.2])

    first = clusterer.search(query, 3)
    second = clusterer.search(query, 3)

    assert [r.to_dict() for r in first] == [r.to_dict() for r in second]


def test_min_relevance_filters_everything(table, clusterer):
    table.insert("doc", "a b", [(0, 1), (2, 1)], [basis(2, 0), basis(2, 1)])

    assert clusterer.search(basis(2, 0), 2, min_relevance=2.0) == []
    assert clusterer.last_stats["candidates"] == 0


def test_k_is_clamped_to_store_size(table, clusterer):
    table.insert("a", "x", [(0, 1)], [basis(3, 0)])
    table.insert("b", "y", [(0, 1)], [basis(3, 1)])
    table.insert("c", "z", [(0, 1)], [basis(3, 2)])

    results = clusterer.search(normalize([1.0, 1.0, 1.0]), 10)

    assert 1 <= len(results) <= 3
    assert {r.path_name for r in results} <= {"a", "b", "c"}


def test_keywords_rerank_results(table, clusterer):
    table.insert("alpha", "alpha text", [(0, 10)], [basis(2, 0)])
    table.insert("beta", "beta text", [(0, 9)], [normalize([0.98, 0.2])])

    plain = clusterer.search(basis(2, 0), 2)
    boosted = clusterer.search(basis(2, 0), 2, keywords=["BETA"])

    assert [r.path_name for r in plain] == ["alpha", "beta"]
    assert [r.path_name for r in boosted] == ["beta", "alpha"]


def test_content_size_adds_context(table, clusterer):
    text = "c0 c1 c2 c3 c4"
    spans = [(3 * i, 2) for i in range(5)]
    table.insert("doc", text, spans, [basis(5, i) for i in range(5)])

    results = clusterer.search(basis(5, 2), 1, min_relevance=0.5, content_size=1)

    assert [r.content for r in results] == ["c1 c2 c3"]
    assert clusterer.last_stats["candidates"] == 1


def test_unrelated_documents_stay_separate(table, clusterer):
    table.insert("left", "l0 l1", [(0, 2), (3, 2)], [basis(3, 0), basis(3, 0)])
    table.insert("right", "r0 r1", [(0, 2), (3, 2)], [basis(3, 0), basis(3, 0)])

    results = clusterer.search(basis(3, 0), 2)

    # Adjacent labels in different documents never share a cluster
    assert sorted(r.content for r in results) == ["l0 l1", "r0 r1"]
