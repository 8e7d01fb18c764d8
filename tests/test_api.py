import logging

import pytest
from httpx import AsyncClient

from app.core.generation.backends import MockBackend
from app.main import app, configure_logging

from tests.factories import CUSTOMER_SCHEMA


@pytest.mark.asyncio
async def test_root(client: AsyncClient):
    response = await client.get("/")
    assert response.status_code == 200
    assert "message" in response.json()


def test_log_level_applies_after_root_is_configured():
    root = logging.getLogger()
    previous = root.level
    try:
        root.setLevel(logging.INFO)
        configure_logging("WARNING")
        assert root.level == logging.WARNING
    finally:
        root.setLevel(previous)


@pytest.mark.asyncio
async def test_list_products(client: AsyncClient):
    response = await client.get("/products")

    assert response.status_code == 200
    products = {item["id"]: item for item in response.json()}
    assert set(products) == {"xframe5-ui", "spring-backend"}
    assert products["xframe5-ui"]["output_types"] == ["xml", "javascript"]
    assert products["xframe5-ui"]["default_kind"] == "list"
    assert products["spring-backend"]["kinds"] == ["crud"]
    assert "mapper_xml" in products["spring-backend"]["output_types"]
    assert set(products["spring-backend"]["input_types"]) == {"db_schema", "query_sample", "natural_language"}


@pytest.mark.asyncio
async def test_generate_customer_list(client: AsyncClient):
    """Structured schema in, xml + js artifacts out"""
    payload = {"product": "xframe5-ui", "input": CUSTOMER_SCHEMA, "options": {"language": "en"}}
    response = await client.post("/generate", json=payload)

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "success"
    assert set(data["artifacts"]) == {"xml", "javascript"}
    assert data["filenames"]["xml"] == "customer_list.xml"
    assert data["meta"]["generator"] == "xframe5-ui-v1"
    assert isinstance(data["meta"]["elapsed_ms"], int)


@pytest.mark.asyncio
async def test_generate_failure_is_reported_in_body(client: AsyncClient):
    payload = {"product": "xframe5-ui", "input": {"type": "natural_language", "description": "  "}}
    response = await client.post("/generate", json=payload)

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "failed"
    assert data["error"] == "normalization_error"
    assert data["artifacts"] == {}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        {"product": "react-ui", "input": CUSTOMER_SCHEMA},
        {"product": "xframe5-ui", "input": {"type": "csv", "data": "a,b"}},
        {"product": "xframe5-ui", "input": CUSTOMER_SCHEMA, "model": "gpt-4"},
        {"product": "xframe5-ui", "input": CUSTOMER_SCHEMA, "options": {"temperature": 1.0}},
    ],
)
async def test_generate_rejects_invalid_requests(client: AsyncClient, payload):
    """Unknown products, input types and any model / sampling override are refused"""
    response = await client.post("/generate", json=payload)
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_health_ok(client: AsyncClient):
    response = await client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["overall_status"] == "healthy"
    names = {check["name"] for check in data["checks"]}
    assert {"model_backend", "database_connectivity", "table_structure", "fallback_knowledge"} <= names


@pytest.mark.asyncio
async def test_health_reports_unavailable_backend(client: AsyncClient):
    app.state.pipeline.backend = MockBackend(healthy=False)

    response = await client.get("/health")

    assert response.status_code == 503
    data = response.json()
    assert data["overall_status"] == "unhealthy"
    backend_check = next(c for c in data["checks"] if c["name"] == "model_backend")
    assert backend_check["status"] == "fail"
