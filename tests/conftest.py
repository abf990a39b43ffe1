"""
Proofgate Test Configuration and Fixtures

Shared fixtures for the verification pipeline. Nothing here touches the
network or a real execution service.

Fixture Categories:
- Raw execution output: healthy and failing API/UI runs
- Stores: in-memory artifact/record stores and a collector over them
- Execution backend: a scripted fake replaying outputs per attempt
- Orchestrator: a factory wired to the in-memory stores
"""

import asyncio
import json
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from proofgate.config import reset_environment
from proofgate.config.models import ProofgateConfig
from proofgate.evidence.collector import EvidenceCollector
from proofgate.models.base import ExecutionKind, WorkflowStage
from proofgate.models.evidence import (
    ClaimedAction,
    CoverageDetail,
    DomSnapshotDetail,
    EvidenceBundle,
    ExecutionOutcome,
    LogDetail,
    RawArtifact,
    RawExecutionOutput,
    ScreenshotDetail,
    TraceDetail,
)
from proofgate.models.fixing import FixApplication, FixPlan
from proofgate.models.workflow import VerificationRequest
from proofgate.storage import MemoryArtifactStore, MemoryRecordStore

PNG_HEADER = b"\x89PNG\r\n\x1a\n"

IMPORT_ERROR = "ImportError: cannot import name 'client' from 'api'"


# =============================================================================
# Path Fixtures
# =============================================================================


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture(autouse=True)
def isolate_environment(monkeypatch):
    """Reset the loaded environment around each test.

    Keeps tests isolated from a developer's .env file and any
    PROOFGATE_* variables exported in the shell.
    """
    import os

    import proofgate.config.environment as env_module

    reset_environment()
    for name in list(os.environ):
        if name.startswith("PROOFGATE_"):
            monkeypatch.delenv(name, raising=False)
    # Mark dotenv as loaded so .env is never read
    monkeypatch.setattr(env_module, "_dotenv_loaded", True)

    yield

    reset_environment()


# =============================================================================
# Raw Execution Output Factories
# =============================================================================


def trace_artifact(
    attempt: int = 1,
    statuses: Sequence[int | None] = (200, 201),
    exit_code: int | None = None,
    captured_at: datetime | None = None,
) -> RawArtifact:
    """A JSON trace artifact; the collector parses entries from the bytes."""
    payload: dict[str, Any] = {
        "attempt": attempt,
        "entries": [
            {"method": "POST", "url": f"/api/login?attempt={attempt}&n={i}", "status": s, "duration_ms": 40.0}
            for i, s in enumerate(statuses)
        ],
    }
    if exit_code is not None:
        payload["exit_code"] = exit_code
    return RawArtifact(
        detail=TraceDetail(),
        content=json.dumps(payload).encode(),
        captured_at=captured_at or datetime.now(UTC) - timedelta(seconds=2),
        label="trace",
    )


def log_artifact(attempt: int = 1, text: str | None = None, expects_errors: bool = False) -> RawArtifact:
    """A console log artifact; error lines are derived from the bytes."""
    body = text if text is not None else f"attempt {attempt}\nlogin page loaded\n5 passed\n"
    return RawArtifact(
        detail=LogDetail(source="test_output", expects_errors=expects_errors),
        content=body.encode(),
        captured_at=datetime.now(UTC) - timedelta(seconds=1),
        label="log",
    )


def make_raw_output(
    attempt: int = 1,
    passed: bool = True,
    claimed: Sequence[str] = ("ran tests",),
    include_trace: bool = True,
    include_log: bool = True,
    error_message: str | None = None,
    duration_ms: float = 1500.0,
    assertions: tuple[int, int] = (5, 5),
    log_text: str | None = None,
    extra: Sequence[RawArtifact] = (),
    has_outcome: bool = True,
) -> RawExecutionOutput:
    """Raw output of an API execution.

    Defaults describe a healthy, fully evidenced pass. Artifact bytes
    include the attempt number so consecutive attempts never share hashes.
    """
    artifacts: list[RawArtifact] = []
    if include_trace:
        artifacts.append(trace_artifact(attempt))
    if include_log:
        text = log_text
        if text is None and error_message:
            text = f"attempt {attempt}\n{error_message}\n"
        artifacts.append(log_artifact(attempt, text))
    artifacts.extend(extra)

    outcome = None
    if has_outcome:
        outcome = ExecutionOutcome(
            passed=passed,
            duration_ms=duration_ms,
            assertions_total=assertions[0],
            assertions_passed=assertions[1] if passed else 0,
            exit_code=0 if passed else 1,
            error_message=error_message,
        )

    return RawExecutionOutput(
        test_name="login_flow",
        execution_kind=ExecutionKind.API,
        outcome=outcome,
        artifacts=artifacts,
        claimed_actions=[ClaimedAction.from_description(c) for c in claimed],
    )


def make_ui_output(attempt: int = 1, passed: bool = True, coverage: float | None = None) -> RawExecutionOutput:
    """Raw output of a healthy UI execution."""
    now = datetime.now(UTC)
    artifacts = [
        RawArtifact(
            detail=ScreenshotDetail(phase="before"),
            content=PNG_HEADER + bytes([attempt]) * 2048,
            captured_at=now - timedelta(seconds=3),
        ),
        RawArtifact(
            detail=ScreenshotDetail(phase="after"),
            content=PNG_HEADER + bytes([attempt + 1]) * 2048,
            captured_at=now - timedelta(seconds=2),
        ),
        RawArtifact(
            detail=DomSnapshotDetail(element_count=120, changes=4),
            content=f"<html data-attempt='{attempt}'><body>ok</body></html>".encode(),
            captured_at=now - timedelta(seconds=2),
        ),
        trace_artifact(attempt),
        log_artifact(attempt),
    ]
    if coverage is not None:
        artifacts.append(
            RawArtifact(
                detail=CoverageDetail(line_percent=coverage, assertion_count=5),
                content=json.dumps({"attempt": attempt, "line_percent": coverage}).encode(),
                captured_at=now - timedelta(seconds=1),
            )
        )
    return RawExecutionOutput(
        test_name="checkout_ui",
        execution_kind=ExecutionKind.UI,
        outcome=ExecutionOutcome(
            passed=passed,
            duration_ms=4200.0,
            assertions_total=5,
            assertions_passed=5 if passed else 0,
            exit_code=0 if passed else 1,
        ),
        artifacts=artifacts,
        claimed_actions=[ClaimedAction.from_description("navigate to checkout")],
    )


def failing_output(attempt: int = 1, error: str = IMPORT_ERROR) -> RawExecutionOutput:
    """Raw output of an honest failure."""
    return make_raw_output(attempt=attempt, passed=False, error_message=error)


# =============================================================================
# Store Fixtures
# =============================================================================


@pytest.fixture
def artifact_store() -> MemoryArtifactStore:
    return MemoryArtifactStore()


@pytest.fixture
def record_store() -> MemoryRecordStore:
    return MemoryRecordStore()


@pytest.fixture
def collector(artifact_store, record_store) -> EvidenceCollector:
    return EvidenceCollector(artifact_store, record_store)


@pytest.fixture
def make_bundle(collector) -> Callable[..., EvidenceBundle]:
    """Collect a raw output into a persisted bundle."""

    def _make(raw: RawExecutionOutput | None = None, run_id: str = "run-1", attempt: int = 1) -> EvidenceBundle:
        return collector.collect(raw or make_raw_output(attempt=attempt), run_id, attempt)

    return _make


# =============================================================================
# Configuration Fixtures
# =============================================================================


@pytest.fixture
def config() -> ProofgateConfig:
    """Configuration with in-memory storage and short timeouts."""
    return ProofgateConfig(
        storage={"backend": "memory"},
        orchestrator={
            "default_stage_timeout": 5.0,
            "stage_timeouts": {WorkflowStage.EXECUTING: 5.0},
        },
    )


# =============================================================================
# Execution Backend
# =============================================================================

ExecutionScript = RawExecutionOutput | BaseException | Callable[[int, str], RawExecutionOutput]


class ScriptedBackend:
    """Execution backend replaying scripted results.

    `executions` is indexed by execution attempt (the last entry repeats);
    each entry is a RawExecutionOutput, an exception to raise or a callable
    taking (attempt, change_ref). `fixes` is indexed by fix call count.
    """

    def __init__(
        self,
        executions: Sequence[ExecutionScript] | None = None,
        fixes: Sequence[FixApplication | BaseException] | None = None,
        execute_delay: float = 0.0,
    ) -> None:
        self.executions = list(executions or [healthy])
        self.fixes = list(fixes or [])
        self.execute_delay = execute_delay
        self.execute_calls: list[tuple[str, int, str]] = []
        self.fix_calls: list[FixPlan] = []
        self.active = 0
        self.max_active = 0

    async def execute(self, request: VerificationRequest, attempt: int, change_ref: str) -> RawExecutionOutput:
        self.execute_calls.append((request.run_id, attempt, change_ref))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.execute_delay:
                await asyncio.sleep(self.execute_delay)
            item = self.executions[min(attempt, len(self.executions)) - 1]
            if isinstance(item, BaseException):
                raise item
            if callable(item) and not isinstance(item, RawExecutionOutput):
                return item(attempt, change_ref)
            return item
        finally:
            self.active -= 1

    async def apply_fix(self, plan: FixPlan) -> FixApplication:
        self.fix_calls.append(plan)
        index = len(self.fix_calls) - 1
        if index < len(self.fixes):
            item = self.fixes[index]
            if isinstance(item, BaseException):
                raise item
            return item
        return FixApplication(
            success=True,
            changes_made=f"Applied {plan.strategy.value}",
            change_ref=f"{plan.target}+fix{plan.attempt_number}",
            tokens_used=1000,
            cost_usd=0.01,
        )


def healthy(attempt: int, change_ref: str) -> RawExecutionOutput:
    return make_raw_output(attempt=attempt)


def failing(attempt: int, change_ref: str) -> RawExecutionOutput:
    return failing_output(attempt)


@pytest.fixture
def make_orchestrator(config, artifact_store, record_store):
    """Build a TestOrchestrator over the shared in-memory stores."""
    from proofgate.orchestrator import TestOrchestrator

    def _make(backend=None, cfg: ProofgateConfig | None = None, **kwargs: Any) -> TestOrchestrator:
        return TestOrchestrator(
            backend if backend is not None else ScriptedBackend([healthy]),
            cfg or config,
            artifact_store=artifact_store,
            record_store=record_store,
            **kwargs,
        )

    return _make


# =============================================================================
# Factory Fixtures
# =============================================================================


@pytest.fixture
def make_raw():
    """Factory for API raw execution output."""
    return make_raw_output


@pytest.fixture
def make_failing():
    """Factory for honestly failing raw execution output."""
    return failing_output


@pytest.fixture
def make_ui():
    """Factory for UI raw execution output."""
    return make_ui_output


@pytest.fixture
def make_trace():
    return trace_artifact


@pytest.fixture
def make_log():
    return log_artifact


@pytest.fixture
def scripted_backend():
    """The ScriptedBackend class, for building backends per test."""
    return ScriptedBackend


@pytest.fixture
def scripts():
    """Per-attempt execution scripts: healthy and failing."""
    return {"healthy": healthy, "failing": failing, "import_error": IMPORT_ERROR}
