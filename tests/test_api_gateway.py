"""
Tests for the API Gateway.
"""

import pytest
from fastapi.testclient import TestClient
from unittest.mock import AsyncMock, MagicMock

from sophia.api_gateway.gateway import create_app
from sophia.tool_registry.registry import ToolRegistry
from sophia.tool_registry.runner import ToolRunner
from sophia.utils.vector_store import FileVectorStore
from sophia.workflow.models import SuggestionStep, WorkflowSuggestion
from sophia.workflow.service import WorkflowService


@pytest.fixture
def services(tmp_path, embedder):
    registry = ToolRegistry(
        store=FileVectorStore(str(tmp_path / "tools")),
        embedder=embedder,
        runner=ToolRunner(timeout=5),
        workspace_path=str(tmp_path / "workspace")
    )
    workflows = WorkflowService(registry, str(tmp_path / "workflows"), max_retries=0, backoff_base=0)
    return registry, workflows


@pytest.fixture
def client(services):
    registry, workflows = services
    app = create_app(registry, workflows)
    with TestClient(app) as client:
        yield client


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] in ("healthy", "degraded")
    assert body["components"]["tool_registry"]["status"] == "healthy"
    assert "X-Process-Time" in response.headers


def test_tool_lifecycle(client, make_tool):
    response = client.post("/api/tools", json=make_tool())
    assert response.status_code == 201
    assert response.json()["current_version"] == "1.0.0"

    assert [tool["name"] for tool in client.get("/api/tools").json()] == ["add_numbers"]
    assert client.get("/api/tools/add_numbers").json()["description"] == "Sum two numbers"

    response = client.post("/api/tools/add_numbers/run", json={"input": {"a": 2, "b": "3"}})
    assert response.status_code == 200
    assert response.json()["success"] is True
    assert response.json()["output"] == {"sum": 5}

    metrics = client.get("/api/tools/add_numbers/metrics").json()
    assert metrics["execution_count"] == 1

    assert client.delete("/api/tools/add_numbers").status_code == 200
    assert client.get("/api/tools/add_numbers").status_code == 404


def test_registry_errors_map_to_status_codes(client, make_tool):
    client.post("/api/tools", json=make_tool())

    duplicate = client.post("/api/tools", json=make_tool())
    assert duplicate.status_code == 409
    assert duplicate.json()["component"] == "tool_registry"

    invalid = client.post("/api/tools", json=make_tool(name="other", input_schema={"type": "nope"}))
    assert invalid.status_code == 400
    assert invalid.json()["details"]["errors"]

    missing = client.post("/api/tools/ghost/run", json={"input": {}})
    assert missing.status_code == 404


def test_failed_run_is_not_an_http_error(client, make_tool):
    client.post("/api/tools", json=make_tool())

    response = client.post("/api/tools/add_numbers/run", json={"input": {"a": 1}})

    assert response.status_code == 200
    assert response.json()["success"] is False
    assert response.json()["error"].startswith("Invalid input: ")


def test_versions_endpoints(client, make_tool):
    client.post("/api/tools", json=make_tool())

    created = client.post("/api/tools/add_numbers/versions",
                          json={"version": "2.0.0", "code": "return {'sum': 0}"})
    assert created.status_code == 201

    versions = [v["version"] for v in client.get("/api/tools/add_numbers/versions").json()]
    assert versions == ["1.0.0", "2.0.0"]

    switched = client.put("/api/tools/add_numbers/current-version", json={"version": "2.0.0"})
    assert switched.json()["current_version"] == "2.0.0"

    assert client.get("/api/tools/add_numbers/versions/9.9.9").status_code == 404
    assert client.put("/api/tools/add_numbers/current-version", json={"version": "9.9.9"}).status_code == 400


def test_category_endpoints(client):
    assert client.post("/api/tools/categories", json={"id": "root", "name": "Root"}).status_code == 201
    client.post("/api/tools/categories", json={"id": "leaf", "name": "Leaf", "parent_id": "root"})

    hierarchy = client.get("/api/tools/categories/hierarchy").json()
    assert [(node["category"]["id"], node["depth"]) for node in hierarchy] == [("root", 0), ("leaf", 1)]

    cycle = client.put("/api/tools/categories/root", json={"parent_id": "leaf"})
    assert cycle.status_code == 400


def test_workflow_endpoints(client, make_tool):
    client.post("/api/tools", json=make_tool())
    workflow = {
        "name": "Add twice",
        "steps": [
            {"id": "first", "tool_name": "add_numbers", "input": {"static": {"a": 1, "b": 2}}},
            {
                "id": "second",
                "tool_name": "add_numbers",
                "input": {
                    "static": {"b": 10},
                    "mappings": {"a": {"step_id": "first", "output_path": "sum"}}
                }
            }
        ]
    }

    created = client.post("/api/workflows", json=workflow)
    assert created.status_code == 201
    workflow_id = created.json()["id"]

    result = client.post(f"/api/workflows/{workflow_id}/execute", json={"input": {}}).json()
    assert result["success"] is True
    assert result["step_results"]["second"]["output"] == {"sum": 13}

    progress = client.get(f"/api/workflows/executions/{result['execution_id']}").json()
    assert progress["status"] == "completed"

    renamed = client.patch(f"/api/workflows/{workflow_id}", json={"name": "Renamed"})
    assert renamed.json()["name"] == "Renamed"

    assert client.delete(f"/api/workflows/{workflow_id}").status_code == 200
    assert client.get(f"/api/workflows/{workflow_id}").status_code == 404


def test_workflow_errors(client):
    assert client.post("/api/workflows/workflow-missing/execute").status_code == 404
    assert client.get("/api/workflows/executions/exec-missing").status_code == 404

    invalid = client.post("/api/workflows", json={"name": "Bad", "steps": [{"id": "input", "tool_name": "x"}]})
    assert invalid.status_code == 400


def test_suggestions_require_a_service(client):
    response = client.post("/api/workflows/suggestions",
                           json={"description": "anything", "available_tools": []})

    assert response.status_code == 503


def test_suggestions_endpoint(services):
    registry, workflows = services
    suggestion_service = MagicMock()
    suggestion_service.get_suggestions = AsyncMock(return_value=[
        WorkflowSuggestion(name="Digest", steps=[SuggestionStep(tool_name="summarize")], confidence=0.7)
    ])

    with TestClient(create_app(registry, workflows, suggestion_service)) as client:
        response = client.post("/api/workflows/suggestions",
                               json={"description": "digest", "available_tools": ["summarize"]})

    assert response.status_code == 200
    assert response.json()[0]["name"] == "Digest"
