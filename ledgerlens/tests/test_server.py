"""Tests for the search HTTP surface."""

import pytest
from unittest.mock import AsyncMock, Mock

from fastapi.testclient import TestClient

from ledgerlens.retriever import server
from ledgerlens.retriever.pipeline import SearchInputError


@pytest.fixture
def fake_pipeline(monkeypatch):
    pipeline = Mock()
    pipeline.synthesizer.has_llm = True
    response = Mock()
    response.to_dict.return_value = {
        "synthesized_answer": {"answer": "1,200", "confidence": 0.9},
        "timings": {"total": 12.5},
        "strategy": "pure_vector",
    }
    pipeline.search = AsyncMock(return_value=response)
    monkeypatch.setattr(server, "pipeline", pipeline)
    return pipeline


@pytest.fixture
def client():
    # No context manager: lifespan startup is skipped
    return TestClient(server.app)


class TestSearchEndpoint:
    def test_search_ok(self, client, fake_pipeline):
        resp = client.post("/search", json={
            "tenant_id": "t1",
            "workbook_id": "wb1",
            "query": "What was revenue in 2021?",
            "top_k": 20,
        })

        assert resp.status_code == 200
        assert resp.json()["synthesized_answer"]["confidence"] == 0.9
        fake_pipeline.search.assert_awaited_once_with(
            tenant_id="t1", workbook_id="wb1", query="What was revenue in 2021?", top_k=20,
        )

    def test_top_k_optional(self, client, fake_pipeline):
        resp = client.post("/search", json={"tenant_id": "t1", "workbook_id": "wb1", "query": "revenue"})

        assert resp.status_code == 200
        assert fake_pipeline.search.await_args.kwargs["top_k"] is None

    def test_input_error_is_400(self, client, fake_pipeline):
        fake_pipeline.search.side_effect = SearchInputError("tenant_id is required")

        resp = client.post("/search", json={"tenant_id": "", "workbook_id": "wb1", "query": "revenue"})

        assert resp.status_code == 400
        assert resp.json()["detail"] == "tenant_id is required"

    def test_missing_field_is_422(self, client, fake_pipeline):
        resp = client.post("/search", json={"tenant_id": "t1", "query": "revenue"})

        assert resp.status_code == 422
        fake_pipeline.search.assert_not_called()

    def test_not_initialized_is_503(self, client, monkeypatch):
        monkeypatch.setattr(server, "pipeline", None)

        resp = client.post("/search", json={"tenant_id": "t1", "workbook_id": "wb1", "query": "revenue"})

        assert resp.status_code == 503


class TestHealthEndpoint:
    def test_health(self, client, fake_pipeline):
        data = client.get("/health").json()

        assert data["status"] == "healthy"
        assert data["initialized"] is True
        assert data["llm_available"] is True

    def test_health_before_startup(self, client, monkeypatch):
        monkeypatch.setattr(server, "pipeline", None)

        data = client.get("/health").json()

        assert data["initialized"] is False
        assert data["llm_available"] is False
