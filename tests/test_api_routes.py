from fastapi.testclient import TestClient

from kpi_engine.api import routes
from kpi_engine.datasources.base import StatementResult, StatementState
from kpi_engine.errors import RemoteRejectedError, StatementTimeoutError
from kpi_engine.schemas import KpiQueryResult, NormalizedRecord, OptionRecord, OptionsResult
from kpi_engine.services.pipeline import KpiPipeline
from kpi_engine.settings import Settings
from main import app


class _FakePipeline:
    def __init__(self) -> None:
        self.kpi_calls = 0

    async def execute_kpi(self, *, request, correlation_id: str | None = None):
        _ = correlation_id
        self.kpi_calls += 1
        return KpiQueryResult(
            kpi=request.kpi,
            group_by=request.group_by,
            scope=request.scope,
            rows=[NormalizedRecord(dimension="East", current_value=100, prior_value=90)],
            row_count=1,
            statement_id="st-1",
            sql_hash="h1",
            execution_time_ms=7,
        )

    async def list_options(self, *, request, correlation_id: str | None = None):
        _ = correlation_id
        return OptionsResult(
            dimension=request.dimension,
            table=request.table,
            rows=[OptionRecord(label="TX", value="TX")],
            row_count=1,
            statement_id="st-2",
            sql_hash="h2",
            execution_time_ms=3,
        )


class _RaisingPipeline:
    def __init__(self, exc: Exception) -> None:
        self._exc = exc

    async def execute_kpi(self, *, request, correlation_id: str | None = None):
        raise self._exc

    async def list_options(self, *, request, correlation_id: str | None = None):
        raise self._exc


class _RecordingExecutor:
    def __init__(self) -> None:
        self.calls = 0

    async def execute(self, *, statement: str, poll_interval_seconds: float, deadline_seconds: float, correlation_id=None):
        self.calls += 1
        return StatementResult(statement_id="st-3", state=StatementState.SUCCEEDED, rows=[])


def test_health_endpoints() -> None:
    client = TestClient(app)
    for path in ("/health", "/api/query"):
        response = client.get(path)
        assert response.status_code == 200, response.text
        assert response.json()["ok"] is True
        assert response.headers["x-mc-version"] == routes._settings.api_version


def test_ping_never_engages_pipeline() -> None:
    original = routes._pipeline
    fake = _FakePipeline()
    routes._pipeline = fake
    try:
        client = TestClient(app)
        response = client.post("/api/query", json={"ping": True})
        assert response.status_code == 200, response.text
        payload = response.json()
        assert payload["ok"] is True
        assert payload["mode"] == "ping"
        assert payload["received"] == {"ping": True}
        assert fake.kpi_calls == 0
    finally:
        routes._pipeline = original


def test_kpi_query_contract() -> None:
    original = routes._pipeline
    routes._pipeline = _FakePipeline()
    try:
        client = TestClient(app)
        response = client.post(
            "/api/query",
            json={
                "contract_version": "kpi_request.v1",
                "kpi": "volume",
                "groupBy": "region",
                "scope": "ytd",
                "maxMonth": "202510",
                "filters": {"megabrand": ["BrandA"]},
            },
            headers={"x-correlation-id": "corr-7"},
        )
        assert response.status_code == 200, response.text
        payload = response.json()
        assert payload["ok"] is True
        assert payload["result"]["groupBy"] == "region"
        assert payload["result"]["scope"] == "YTD"
        assert payload["result"]["rows"] == [{"dimension": "East", "currentValue": 100, "priorValue": 90}]
        assert payload["result"]["statementId"] == "st-1"
    finally:
        routes._pipeline = original


def test_unknown_kpi_is_client_error_without_warehouse_call() -> None:
    original = routes._pipeline
    executor = _RecordingExecutor()
    routes._pipeline = KpiPipeline(Settings(environment="test"), executor=executor)
    try:
        client = TestClient(app)
        response = client.post("/api/query", json={"kpi": "bogus"})
        assert response.status_code == 400, response.text
        payload = response.json()
        assert payload["ok"] is False
        assert payload["error"]["kind"] == "invalid_request"
        assert "bogus" in payload["error"]["message"]
        assert executor.calls == 0
    finally:
        routes._pipeline = original


def test_malformed_group_by_is_invalid_request() -> None:
    client = TestClient(app)
    response = client.post("/api/query", json={"kpi": "volume", "groupBy": "planet"})
    assert response.status_code == 400, response.text
    error = response.json()["error"]
    assert error["kind"] == "invalid_request"
    assert error["details"]["errors"][0]["field"] == "groupBy"


def test_missing_kpi_is_invalid_request() -> None:
    client = TestClient(app)
    response = client.post("/api/query", json={"scope": "MTD"})
    assert response.status_code == 400, response.text
    assert response.json()["error"]["kind"] == "invalid_request"


def test_timeout_is_distinct_from_execution_failure() -> None:
    original = routes._pipeline
    routes._pipeline = _RaisingPipeline(StatementTimeoutError("Statement did not finish within 12s"))
    try:
        client = TestClient(app)
        response = client.post("/api/query", json={"kpi": "volume"})
        assert response.status_code == 504, response.text
        assert response.json()["error"]["kind"] == "timeout"
    finally:
        routes._pipeline = original


def test_remote_rejection_carries_diagnostics() -> None:
    original = routes._pipeline
    routes._pipeline = _RaisingPipeline(
        RemoteRejectedError("Databricks submit failed with HTTP 400: bad sql", details={"statement": "SELECT 1"})
    )
    try:
        client = TestClient(app)
        response = client.post("/api/query", json={"kpi": "volume"})
        assert response.status_code == 502, response.text
        error = response.json()["error"]
        assert error["kind"] == "remote_rejected"
        assert error["details"]["statement"] == "SELECT 1"
        assert error["errorId"]
    finally:
        routes._pipeline = original


def test_unexpected_failure_is_internal_error() -> None:
    original = routes._pipeline
    routes._pipeline = _RaisingPipeline(RuntimeError("Bearer dapi-secret leaked"))
    try:
        client = TestClient(app)
        response = client.post("/api/query", json={"kpi": "volume"})
        assert response.status_code == 500, response.text
        error = response.json()["error"]
        assert error["kind"] == "internal_error"
        assert "dapi-secret" not in error["message"]
    finally:
        routes._pipeline = original


def test_filters_contract() -> None:
    original = routes._pipeline
    routes._pipeline = _FakePipeline()
    try:
        client = TestClient(app)
        response = client.post("/api/filters", json={"dimension": "mktng_st_cd", "table": "mbmc_actuals_volume"})
        assert response.status_code == 200, response.text
        payload = response.json()
        assert payload["ok"] is True
        assert payload["result"]["rows"] == [{"label": "TX", "value": "TX"}]
    finally:
        routes._pipeline = original


def test_filters_reject_unlisted_table() -> None:
    original = routes._pipeline
    executor = _RecordingExecutor()
    routes._pipeline = KpiPipeline(Settings(environment="test"), executor=executor)
    try:
        client = TestClient(app)
        response = client.post("/api/filters", json={"dimension": "megabrand", "table": "users"})
        assert response.status_code == 400, response.text
        assert response.json()["error"]["kind"] == "invalid_request"
        assert executor.calls == 0
    finally:
        routes._pipeline = original


def test_filters_require_dimension_and_table() -> None:
    client = TestClient(app)
    response = client.post("/api/filters", json={"dimension": "megabrand"})
    assert response.status_code == 400, response.text


def test_cors_preflight_for_allowed_origin() -> None:
    client = TestClient(app)
    response = client.options(
        "/api/query",
        headers={
            "Origin": "http://localhost:3000",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "Content-Type",
        },
    )
    assert response.status_code == 200, response.text
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"


def test_internal_error_text_is_generic_in_production(monkeypatch) -> None:
    original = routes._pipeline
    routes._pipeline = _RaisingPipeline(AttributeError("'list' object has no attribute 'get'"))
    monkeypatch.setattr(routes._settings, "environment", "production")
    try:
        client = TestClient(app)
        response = client.post("/api/query", json={"kpi": "volume"})
        assert response.status_code == 500, response.text
        error = response.json()["error"]
        assert error["kind"] == "internal_error"
        assert error["message"] == "Internal processing error"
    finally:
        routes._pipeline = original
