"""Tests for vector index implementations."""

import json

import pytest
from unittest.mock import MagicMock

from ledgerlens.common.vector_index import (
    AtlasVectorIndex,
    DEFAULT_SCAN_SORT,
    InMemoryVectorIndex,
    UnsupportedPipelineError,
)


RECORDS = [
    {"_id": "a", "tenantId": "t1", "workbookId": "wb1", "year": 2020, "quarter": "Q2", "embedding": [1.0, 0.0]},
    {"_id": "b", "tenantId": "t1", "workbookId": "wb1", "year": 2021, "quarter": "Q3", "embedding": [0.7, 0.7]},
    {"_id": "c", "tenantId": "t2", "workbookId": "wb1", "year": 2021, "quarter": "Q1", "embedding": [0.0, 1.0]},
    {"_id": "d", "tenantId": "t1", "workbookId": "wb1", "year": 2021, "quarter": "Q1"},
]


class TestInMemoryVectorIndex:
    @pytest.fixture
    def index(self):
        return InMemoryVectorIndex(RECORDS)

    def test_vector_search_orders_by_similarity(self, index):
        results = index.vector_search([1.0, 0.0], num_candidates=10, limit=10)

        assert [r["_id"] for r, _ in results] == ["a", "b", "c"]
        assert results[0][1] == pytest.approx(1.0)
        assert results[2][1] == pytest.approx(0.0)

    def test_vector_search_strips_embeddings(self, index):
        results = index.vector_search([1.0, 0.0], num_candidates=10, limit=1)

        assert "embedding" not in results[0][0]

    def test_vector_search_limit_and_pool(self, index):
        assert len(index.vector_search([1.0, 0.0], num_candidates=10, limit=2)) == 2
        assert len(index.vector_search([1.0, 0.0], num_candidates=1, limit=5)) == 1

    def test_vector_search_pre_filter(self, index):
        results = index.vector_search([0.0, 1.0], num_candidates=10, limit=10, pre_filter={"tenantId": "t1"})

        assert {r["_id"] for r, _ in results} == {"a", "b"}

    def test_vector_search_dimension_mismatch(self, index):
        with pytest.raises(ValueError, match="dimension mismatch"):
            index.vector_search([1.0, 0.0, 0.0], num_candidates=10, limit=10)

    def test_zero_query_vector_scores_zero(self, index):
        results = index.vector_search([0.0, 0.0], num_candidates=10, limit=10)

        assert all(score == 0.0 for _, score in results)

    def test_find_sorted_and_limited(self, index):
        rows = index.find({"tenantId": "t1", "workbookId": "wb1"}, sort=DEFAULT_SCAN_SORT)

        assert [r["_id"] for r in rows] == ["d", "b", "a"]
        assert len(index.find({"tenantId": "t1"}, sort=DEFAULT_SCAN_SORT, limit=2)) == 2

    def test_find_in_operator(self, index):
        rows = index.find({"_id": {"$in": ["a", "c"]}})

        assert [r["_id"] for r in rows] == ["a", "c"]

    def test_empty_index(self):
        index = InMemoryVectorIndex([])

        assert index.vector_search([1.0], num_candidates=5, limit=5) == []
        assert index.find({"tenantId": "t1"}) == []

    def test_from_json(self, tmp_path):
        path = tmp_path / "records.json"
        path.write_text(json.dumps({"records": RECORDS}))

        index = InMemoryVectorIndex.from_json(path)

        assert len(index) == 4


class TestAtlasVectorIndex:
    @pytest.fixture
    def client(self):
        return MagicMock()

    def test_pipeline_starts_with_vector_search(self):
        index = AtlasVectorIndex("mongodb://example", index_name="vi", embedding_path="vec")

        pipeline = index.build_vector_pipeline([0.1, 0.2], num_candidates=1000, limit=250)

        assert pipeline[0] == {
            "$vectorSearch": {
                "index": "vi",
                "path": "vec",
                "queryVector": [0.1, 0.2],
                "numCandidates": 1000,
                "limit": 250,
            }
        }
        assert pipeline[1] == {"$addFields": {"score": {"$meta": "vectorSearchScore"}}}
        assert pipeline[2] == {"$project": {"vec": 0}}

    def test_pipeline_with_pre_filter(self):
        index = AtlasVectorIndex("mongodb://example")

        pipeline = index.build_vector_pipeline([0.1], 100, 50, pre_filter={"tenantId": "t1"})

        assert pipeline[0]["$vectorSearch"]["filter"] == {"tenantId": "t1"}

    def test_vector_search_returns_scored_records(self, client):
        collection = client["ledgerlens"]["atlascells"]
        collection.aggregate.return_value = [{"_id": 42, "metric": "Revenue", "score": 0.87}]
        index = AtlasVectorIndex("", client=client)

        results = index.vector_search([0.1], num_candidates=100, limit=50)

        assert results == [({"_id": "42", "metric": "Revenue"}, 0.87)]

    def test_operation_failure_becomes_unsupported_pipeline(self, client):
        from pymongo.errors import OperationFailure

        collection = client["ledgerlens"]["atlascells"]
        collection.aggregate.side_effect = OperationFailure("$vectorSearch is not allowed")
        index = AtlasVectorIndex("", client=client)

        with pytest.raises(UnsupportedPipelineError):
            index.vector_search([0.1], num_candidates=100, limit=50)

    def test_find_uses_sort_and_limit(self, client):
        collection = client["ledgerlens"]["atlascells"]
        cursor = collection.find.return_value
        cursor.sort.return_value = cursor
        cursor.limit.return_value = cursor
        cursor.__iter__.return_value = iter([{"_id": 1, "year": 2021}])
        index = AtlasVectorIndex("", client=client)

        rows = index.find({"tenantId": "t1"}, sort=DEFAULT_SCAN_SORT, limit=10)

        assert rows == [{"_id": "1", "year": 2021}]
        collection.find.assert_called_once_with({"tenantId": "t1"}, projection={"embedding": 0})
        cursor.sort.assert_called_once_with(list(DEFAULT_SCAN_SORT))
        cursor.limit.assert_called_once_with(10)

    def test_missing_url_raises(self):
        index = AtlasVectorIndex("")

        assert not index.is_available
        with pytest.raises(RuntimeError, match="MongoDB URL"):
            index.find({})
