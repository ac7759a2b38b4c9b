"""
Tests for the HTTP interface.
"""

import json

import pytest
from fastapi.testclient import TestClient

from rag_tenant_qa.api import create_app, default_tenant_loader, format_sse, load_tenant_configs
from rag_tenant_qa.config import TenantRAGConfig
from rag_tenant_qa.errors import ProviderError

from fakes import FakeCompletionProvider

QUESTION = "What was the total revenue for Q3 2024?"


def parse_sse(text):
    events = []
    for block in text.strip().split("\n\n"):
        lines = block.split("\n")
        event = lines[0][len("event: "):]
        data = json.loads(lines[1][len("data: "):])
        events.append((event, data))
    return events


@pytest.fixture
def client_for(make_orchestrator, corpus_store, tenant_config):
    def build(completion):
        orchestrator = make_orchestrator(completion)
        loader = default_tenant_loader(corpus_store, {"acme": tenant_config})
        return TestClient(create_app(orchestrator, loader))

    return build


class TestQAEndpoint:
    """Test JSON responses and error mapping."""

    def test_json_answer(self, client_for, revenue_completion):
        client = client_for(revenue_completion)

        response = client.post("/api/qa", json={"question": QUESTION, "tenant_id": "acme", "stream": False})

        assert response.status_code == 200
        body = response.json()
        assert "150 million" in body["answer"]
        assert body["citations"][0]["document_id"] == "d-q3"
        assert body["sources"].startswith("**Sources:**")
        assert body["trace_id"] == response.headers["X-Trace-Id"]

    def test_tenant_slug_alias(self, client_for, revenue_completion):
        client = client_for(revenue_completion)

        response = client.post("/api/qa", json={"question": QUESTION, "tenantSlug": "acme", "stream": False})

        assert response.status_code == 200

    def test_store_tenant_without_config(self, client_for, revenue_completion):
        client = client_for(revenue_completion)

        response = client.post("/api/qa", json={"question": QUESTION, "tenant_id": "globex", "stream": False})

        assert response.status_code == 200

    def test_trace_id_header_propagated(self, client_for, revenue_completion):
        client = client_for(revenue_completion)

        response = client.post(
            "/api/qa",
            json={"question": QUESTION, "tenant_id": "acme", "stream": False},
            headers={"X-Trace-Id": "trace-abc"},
        )

        assert response.headers["X-Trace-Id"] == "trace-abc"
        assert response.json()["trace_id"] == "trace-abc"

    @pytest.mark.parametrize("body", [
        {"tenant_id": "acme"},
        {"question": "", "tenant_id": "acme"},
        {"question": "x" * 2001, "tenant_id": "acme"},
        {"question": 42, "tenant_id": "acme"},
        {"question": QUESTION},
    ])
    def test_invalid_body(self, client_for, revenue_completion, body):
        client = client_for(revenue_completion)

        response = client.post("/api/qa", json=body)

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_REQUEST"
        assert revenue_completion.calls == []

    def test_blank_question(self, client_for, revenue_completion):
        client = client_for(revenue_completion)

        response = client.post("/api/qa", json={"question": "   ", "tenant_id": "acme"})

        assert response.status_code == 400
        assert response.json() == {
            "error": "Invalid question format",
            "code": "INVALID_INPUT",
            "trace_id": response.headers["X-Trace-Id"],
        }

    def test_unknown_tenant(self, client_for, revenue_completion):
        client = client_for(revenue_completion)

        response = client.post("/api/qa", json={"question": QUESTION, "tenant_id": "initech"})

        assert response.status_code == 404
        assert response.json()["code"] == "TENANT_NOT_FOUND"

    def test_pipeline_failure(self, client_for):
        client = client_for(FakeCompletionProvider({"answer": ProviderError("secret upstream detail")}))

        response = client.post("/api/qa", json={"question": QUESTION, "tenant_id": "acme", "stream": False})

        assert response.status_code == 500
        body = response.json()
        assert body["code"] == "RAG_ERROR"
        assert "secret" not in body["error"]

    def test_health(self, client_for, revenue_completion):
        response = client_for(revenue_completion).get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestStreamingEndpoint:

    def test_sse_events(self, client_for, revenue_completion):
        client = client_for(revenue_completion)

        response = client.post("/api/qa", json={"question": QUESTION, "tenant_id": "acme"})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        events = parse_sse(response.text)
        names = [name for name, _ in events]
        assert names[0] == "start"
        assert names[-2:] == ["citations", "complete"]
        assert events[0][1]["trace_id"] == response.headers["X-Trace-Id"]
        assert "150 million" in events[-1][1]["answer"]

    def test_sse_error_event(self, client_for):
        client = client_for(FakeCompletionProvider({"answer": RuntimeError("boom")}))

        response = client.post("/api/qa", json={"question": QUESTION, "tenant_id": "acme"})

        events = parse_sse(response.text)
        assert [name for name, _ in events] == ["start", "error"]
        assert events[-1][1]["code"] == "RAG_ERROR"


class TestHelpers:

    def test_format_sse(self):
        assert format_sse("chunk", {"content": "hi"}) == 'event: chunk\ndata: {"content": "hi"}\n\n'

    def test_load_tenant_configs(self, tmp_path):
        path = tmp_path / "tenants.json"
        path.write_text(json.dumps({"acme": {"topK": 7, "features": {"hyde_enabled": False}}}))

        configs = load_tenant_configs(path)

        assert configs["acme"].top_k == 7
        assert configs["acme"].features.hyde_enabled is False

    def test_default_loader(self, corpus_store):
        loader = default_tenant_loader(corpus_store, {"special": TenantRAGConfig(top_k=3)})

        assert loader("special").top_k == 3
        assert isinstance(loader("acme"), TenantRAGConfig)
        assert loader("initech") is None
