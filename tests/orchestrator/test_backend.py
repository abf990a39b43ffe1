"""
Unit tests for the HTTP execution backend.

Tests cover:
- Payload parsing with base64 artifacts and claimed actions
- Retry on 5xx and transport errors, no retry on 4xx
- Bearer token handling
- Fix application round trip
"""

import base64
import json

import httpx
import pytest
import respx

from proofgate.config.models import BackendConfig
from proofgate.errors import BackendResponseError, BackendUnavailableError
from proofgate.models.base import (
    ArtifactKind,
    Complexity,
    FailureCategory,
    FixStrategy,
    ModelTier,
)
from proofgate.models.evidence import TraceDetail
from proofgate.models.fixing import FixPlan, RootCauseAnalysis
from proofgate.models.workflow import VerificationRequest
from proofgate.orchestrator import ExecutionBackend, HttpExecutionBackend, parse_execution_output

BASE_URL = "http://executor.test"


def execution_payload() -> dict:
    trace = json.dumps({"entries": [{"method": "GET", "url": "/health", "status": 200}]}).encode()
    return {
        "test_name": "health_check",
        "execution_kind": "api",
        "outcome": {"passed": True, "duration_ms": 900, "assertions_total": 2, "assertions_passed": 2},
        "artifacts": [
            {
                "detail": {"kind": "trace"},
                "content_base64": base64.b64encode(trace).decode(),
                "captured_at": "2026-01-05T10:00:00+00:00",
                "label": "trace",
            },
            {"detail": {"kind": "log", "source": "stdout"}, "content_base64": base64.b64encode(b"ok\n").decode()},
        ],
        "claimed_actions": ["called the health endpoint", {"description": "captured logs"}],
        "change_ref": "abc123",
    }


def fix_plan() -> FixPlan:
    rca = RootCauseAnalysis(
        run_id="r1",
        attempt=1,
        category=FailureCategory.INTEGRATION,
        complexity=Complexity.SIMPLE,
        root_cause="Missing import",
        failure_pattern="cannot import name <str>",
    )
    return FixPlan(
        run_id="r1",
        attempt_number=1,
        execution_attempt=1,
        strategy=FixStrategy.IMPORT_FIX,
        tier=ModelTier.CHEAP,
        model_name="cheap-model",
        target="abc123",
        rca=rca,
    )


@pytest.fixture
def backend() -> HttpExecutionBackend:
    return HttpExecutionBackend(
        BackendConfig(base_url=BASE_URL, max_retries=3),
        token="secret",
        backoff_multiplier=0,
    )


@pytest.fixture
def request_model() -> VerificationRequest:
    return VerificationRequest(run_id="r1", target="abc123", criteria=["service is healthy"])


@pytest.mark.orchestrator
class TestParseExecutionOutput:
    """Tests for parse_execution_output."""

    def test_decodes_artifacts(self):
        raw = parse_execution_output(execution_payload())

        assert raw.outcome.passed
        assert isinstance(raw.artifacts[0].detail, TraceDetail)
        assert b"/health" in raw.artifacts[0].content
        assert raw.artifacts[1].content == b"ok\n"
        assert raw.change_ref == "abc123"

    def test_claimed_actions_from_text(self):
        raw = parse_execution_output(execution_payload())

        assert [c.expected_artifact for c in raw.claimed_actions] == [ArtifactKind.TRACE, ArtifactKind.SCREENSHOT]

    def test_missing_outcome_is_kept_as_none(self):
        data = execution_payload()
        del data["outcome"]

        assert parse_execution_output(data).outcome is None

    @pytest.mark.parametrize(
        "mutate",
        [
            lambda d: d["artifacts"][0].update(content_base64="***"),
            lambda d: d["artifacts"][0].pop("detail"),
            lambda d: d["artifacts"][0].update(detail={"kind": "video"}),
        ],
    )
    def test_malformed_payload(self, mutate):
        data = execution_payload()
        mutate(data)

        with pytest.raises(BackendResponseError, match="Malformed"):
            parse_execution_output(data)


@pytest.mark.orchestrator
class TestHttpExecutionBackend:
    """Tests for HttpExecutionBackend."""

    def test_requires_base_url(self):
        with pytest.raises(ValueError, match="base_url"):
            HttpExecutionBackend(BackendConfig())

    def test_satisfies_protocol(self, backend):
        assert isinstance(backend, ExecutionBackend)

    @pytest.mark.asyncio
    async def test_execute(self, backend, request_model):
        async with respx.mock(base_url=BASE_URL) as mock:
            route = mock.post("/executions").respond(200, json=execution_payload())

            async with backend:
                raw = await backend.execute(request_model, attempt=2, change_ref="abc123+fix1")

        assert raw.test_name == "health_check"
        sent = json.loads(route.calls.last.request.content)
        assert sent == {"run_id": "r1", "attempt": 2, "target": "abc123+fix1", "criteria": ["service is healthy"]}
        assert route.calls.last.request.headers["Authorization"] == "Bearer secret"

    @pytest.mark.asyncio
    async def test_retries_server_errors(self, backend, request_model):
        async with respx.mock(base_url=BASE_URL) as mock:
            route = mock.post("/executions").mock(
                side_effect=[
                    httpx.Response(503, json={"error": "busy"}),
                    httpx.ConnectError("refused"),
                    httpx.Response(200, json=execution_payload()),
                ]
            )

            async with backend:
                raw = await backend.execute(request_model, 1, "abc123")

        assert route.call_count == 3
        assert raw.outcome.passed

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, backend, request_model):
        async with respx.mock(base_url=BASE_URL) as mock:
            route = mock.post("/executions").respond(502, text="bad gateway")

            async with backend:
                with pytest.raises(BackendResponseError) as exc_info:
                    await backend.execute(request_model, 1, "abc123")

        assert exc_info.value.status_code == 502
        assert route.call_count == 3

    @pytest.mark.asyncio
    async def test_transport_errors_surface_as_unavailable(self, backend, request_model):
        async with respx.mock(base_url=BASE_URL) as mock:
            mock.post("/executions").mock(side_effect=httpx.ConnectError("refused"))

            async with backend:
                with pytest.raises(BackendUnavailableError):
                    await backend.execute(request_model, 1, "abc123")

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self, backend, request_model):
        async with respx.mock(base_url=BASE_URL) as mock:
            route = mock.post("/executions").respond(422, json={"error": "unknown target"})

            async with backend:
                with pytest.raises(BackendResponseError, match="unknown target"):
                    await backend.execute(request_model, 1, "abc123")

        assert route.call_count == 1

    @pytest.mark.asyncio
    async def test_non_object_response(self, backend, request_model):
        async with respx.mock(base_url=BASE_URL) as mock:
            mock.post("/executions").respond(200, json=[1, 2])

            async with backend:
                with pytest.raises(BackendResponseError, match="JSON object"):
                    await backend.execute(request_model, 1, "abc123")

    @pytest.mark.asyncio
    async def test_apply_fix(self, backend):
        async with respx.mock(base_url=BASE_URL) as mock:
            route = mock.post("/fixes").respond(
                200, json={"success": True, "changes_made": "added import", "change_ref": "abc124"}
            )

            async with backend:
                application = await backend.apply_fix(fix_plan())

        assert application.change_ref == "abc124"
        sent = json.loads(route.calls.last.request.content)
        assert sent["strategy"] == "import_fix"
        assert sent["rca"]["failure_pattern"] == "cannot import name <str>"

    @pytest.mark.asyncio
    async def test_token_from_environment(self, monkeypatch, request_model):
        monkeypatch.setenv("PROOFGATE_BACKEND_TOKEN", "env-secret")
        backend = HttpExecutionBackend(BackendConfig(base_url=BASE_URL))

        async with respx.mock(base_url=BASE_URL) as mock:
            route = mock.post("/executions").respond(200, json=execution_payload())
            async with backend:
                await backend.execute(request_model, 1, "abc123")

        assert route.calls.last.request.headers["Authorization"] == "Bearer env-secret"
