"""
Tests for the TestOrchestrator state machine.

Tests cover:
- Healthy runs completing without fixes
- Reject -> diagnose -> fix -> re-execute loops and tier escalation
- Claims without trace evidence and runs without an outcome
- Escalation on retry ceiling, cost budget and human-only diagnoses
- Stage timeouts, stage retries and cancellation
- Concurrency ceiling and run id isolation
- Resuming persisted runs without redoing recorded work
- Fatal state persistence failures
- Learning feedback across runs
"""

import asyncio

import pytest
from pydantic import ValidationError

from proofgate.config.models import ProofgateConfig
from proofgate.errors import OrchestratorUnavailableError, RunNotFoundError
from proofgate.evidence.collector import BUNDLES_COLLECTION, EvidenceCollector
from proofgate.models.base import (
    DetectorVerdict,
    EscalationReason,
    FixStrategy,
    FlagCategory,
    ModelTier,
    Recommendation,
    Severity,
    WorkflowStage,
    WorkflowStatus,
)
from proofgate.models.fixing import FixApplication
from proofgate.models.red_flags import RedFlagReport
from proofgate.models.verification import VerificationReport
from proofgate.models.workflow import StartResult, WorkflowState
from proofgate.orchestrator import (
    FIX_ATTEMPTS_COLLECTION,
    RED_FLAGS_COLLECTION,
    ROOT_CAUSE_COLLECTION,
    STATES_COLLECTION,
    VERIFICATION_COLLECTION,
    TestOrchestrator,
    WorkflowStateStore,
)
from proofgate.storage import MemoryArtifactStore, MemoryRecordStore, record_key

TARGET = "commit:abc123"


async def run_to_end(orchestrator: TestOrchestrator, run_id: str = "run-1") -> WorkflowState:
    result = await orchestrator.start_verification(run_id, TARGET, ["login works"])
    assert result == StartResult.ACCEPTED
    return await orchestrator.wait(run_id, timeout=10)


def stages(state: WorkflowState) -> list[WorkflowStage]:
    return [t.to_stage for t in state.history]


class FlakyBackend:
    """Raises on the first `failures` execute calls, then delegates."""

    def __init__(self, inner, failures: int) -> None:
        self.inner = inner
        self.failures = failures
        self.calls = 0

    async def execute(self, request, attempt, change_ref):
        self.calls += 1
        if self.failures:
            self.failures -= 1
            raise RuntimeError("executor crashed")
        return await self.inner.execute(request, attempt, change_ref)

    async def apply_fix(self, plan):
        return await self.inner.apply_fix(plan)


class SlowVerifier:
    async def verify(self, bundle, flag_report, history=None):
        await asyncio.sleep(5)


class StateWriteFailingStore(MemoryRecordStore):
    def __init__(self) -> None:
        super().__init__()
        self.fail_states = False

    def put(self, collection, key, data):
        if self.fail_states and collection == STATES_COLLECTION:
            raise OSError("disk full")
        super().put(collection, key, data)


@pytest.mark.integration
class TestHappyPath:
    """Runs whose first execution is verified."""

    @pytest.mark.asyncio
    async def test_completes_without_fixes(self, make_orchestrator, scripted_backend):
        backend = scripted_backend()
        orchestrator = make_orchestrator(backend)

        state = await run_to_end(orchestrator)

        assert state.stage == WorkflowStage.COMPLETED
        assert state.status == WorkflowStatus.COMPLETED
        assert state.execution_attempt == 1
        assert state.retry_count == 0
        assert stages(state) == [
            WorkflowStage.EXECUTING,
            WorkflowStage.EVIDENCE_COLLECTED,
            WorkflowStage.RED_FLAG_CHECKED,
            WorkflowStage.VERIFYING,
            WorkflowStage.ACCEPTED,
            WorkflowStage.COMPLETED,
        ]
        assert backend.execute_calls == [("run-1", 1, TARGET)]
        assert backend.fix_calls == []

    @pytest.mark.asyncio
    async def test_report(self, make_orchestrator):
        orchestrator = make_orchestrator()
        await run_to_end(orchestrator)

        report = orchestrator.get_report("run-1")

        assert report.verification.recommendation == Recommendation.ACCEPT
        assert report.verification.confidence_score == 100
        assert report.red_flags.flags == ()
        assert report.red_flags.verdict == DetectorVerdict.PASS
        assert report.verification.critical_flags == 0
        assert report.root_cause is None
        assert report.fix_attempts == []
        assert len(report.bundle_ids) == 1
        assert report.summary.startswith("run-1: completed, confidence 100 (accept)")
        assert await orchestrator.learning_store.all() == []

    @pytest.mark.asyncio
    async def test_progress_callbacks(self, make_orchestrator):
        orchestrator = make_orchestrator()
        seen: list[WorkflowStage] = []
        orchestrator.on_progress(lambda s: seen.append(s.stage))
        orchestrator.on_progress(lambda s: 1 / 0)

        await run_to_end(orchestrator)

        assert seen[0] == WorkflowStage.EXECUTING
        assert seen[-1] == WorkflowStage.COMPLETED

    @pytest.mark.asyncio
    async def test_metrics(self, make_orchestrator):
        orchestrator = make_orchestrator()
        await run_to_end(orchestrator)

        summary = orchestrator.metrics.get_summary()

        assert summary["outcomes"]["runs_started"] == 1
        assert summary["outcomes"]["terminal"] == {"completed": 1}
        assert summary["stages"]["executing"]["calls"] == 1


@pytest.mark.integration
class TestFixLoop:
    """Rejected runs that are diagnosed and repaired."""

    @pytest.mark.asyncio
    async def test_fixed_on_first_attempt(self, make_orchestrator, scripted_backend, scripts):
        backend = scripted_backend([scripts["failing"], scripts["healthy"]])
        orchestrator = make_orchestrator(backend)

        state = await run_to_end(orchestrator)

        assert state.stage == WorkflowStage.COMPLETED
        assert state.execution_attempt == 2
        assert state.retry_count == 1
        assert state.total_cost_usd == pytest.approx(0.01)
        assert [(p.strategy, p.tier) for p in backend.fix_calls] == [
            (FixStrategy.IMPORT_FIX, ModelTier.CHEAP)
        ]
        assert backend.execute_calls[1] == ("run-1", 2, f"{TARGET}+fix1")

        report = orchestrator.get_report("run-1")
        assert [a.success for a in report.fix_attempts] == [True]
        assert report.root_cause.recommended_strategy == FixStrategy.IMPORT_FIX
        assert len(report.bundle_ids) == 2

        learnings = await orchestrator.learning_store.all()
        assert [(r.fix_strategy, r.times_tried, r.times_succeeded) for r in learnings] == [
            (FixStrategy.IMPORT_FIX, 1, 1)
        ]

    @pytest.mark.asyncio
    async def test_escalates_through_tiers(self, make_orchestrator, scripted_backend, scripts):
        backend = scripted_backend([scripts["failing"]])
        orchestrator = make_orchestrator(backend)

        state = await run_to_end(orchestrator)

        assert state.stage == WorkflowStage.ESCALATED
        assert state.status == WorkflowStatus.ESCALATED
        assert state.escalation_reason == EscalationReason.MAX_RETRIES
        assert len(backend.execute_calls) == 4
        assert [(p.strategy, p.tier) for p in backend.fix_calls] == [
            (FixStrategy.IMPORT_FIX, ModelTier.CHEAP),
            (FixStrategy.DEPENDENCY_ADD, ModelTier.BALANCED),
            (FixStrategy.API_UPDATE, ModelTier.CAPABLE),
        ]
        assert state.failed_strategies == [
            FixStrategy.IMPORT_FIX,
            FixStrategy.DEPENDENCY_ADD,
            FixStrategy.API_UPDATE,
        ]
        assert state.stage_results["escalated"]["total_attempts"] == 3

        learnings = await orchestrator.learning_store.all()
        assert {(r.times_tried, r.times_succeeded) for r in learnings} == {(1, 0)}

    @pytest.mark.asyncio
    async def test_fix_that_cannot_be_applied(self, make_orchestrator, scripted_backend, scripts):
        backend = scripted_backend(
            [scripts["failing"]],
            fixes=[FixApplication(success=False, error_message="patch did not apply")],
        )
        orchestrator = make_orchestrator(backend)

        state = await run_to_end(orchestrator)

        assert state.stage == WorkflowStage.ESCALATED
        assert len(backend.execute_calls) == 3
        first = orchestrator.get_report("run-1").fix_attempts[0]
        assert not first.success
        assert first.error_message == "patch did not apply"
        assert state.failed_strategies[0] == FixStrategy.IMPORT_FIX

    @pytest.mark.asyncio
    async def test_cost_budget(self, make_orchestrator, scripted_backend, scripts):
        cfg = ProofgateConfig(storage={"backend": "memory"}, retry={"max_total_cost_usd": 0.01})
        backend = scripted_backend([scripts["failing"]])
        orchestrator = make_orchestrator(backend, cfg)

        state = await run_to_end(orchestrator)

        assert state.escalation_reason == EscalationReason.COST_BUDGET
        assert len(backend.fix_calls) == 1

    @pytest.mark.asyncio
    async def test_human_decision_escalates_without_fix(self, make_orchestrator, scripted_backend, make_failing):
        backend = scripted_backend([make_failing(1, "AssertionError: ambiguous business logic for refunds")])
        orchestrator = make_orchestrator(backend)

        state = await run_to_end(orchestrator)

        assert state.escalation_reason == EscalationReason.REQUIRES_HUMAN
        assert backend.fix_calls == []
        assert state.stage_results["diagnosing"]["complexity"] == "requires_human"

    @pytest.mark.asyncio
    async def test_missing_outcome_is_rejected_not_dropped(
        self, make_orchestrator, scripted_backend, make_raw, scripts, record_store
    ):
        backend = scripted_backend([make_raw(has_outcome=False), scripts["healthy"]])
        orchestrator = make_orchestrator(backend)

        state = await run_to_end(orchestrator)

        assert state.stage == WorkflowStage.COMPLETED
        assert WorkflowStage.REJECTED in stages(state)
        assert state.history[1].from_stage == WorkflowStage.EXECUTING
        assert state.history[1].to_stage == WorkflowStage.REJECTED
        assert len(backend.fix_calls) == 1

        stored = record_store.get(BUNDLES_COLLECTION, record_key("run-1", 1))
        assert stored["outcome_missing"] is True
        assert stored["outcome"]["passed"] is False
        assert len(stored["artifacts"]) == 2
        report = orchestrator.get_report("run-1")
        assert len(report.bundle_ids) == 2
        assert report.fix_attempts[0].success

    @pytest.mark.asyncio
    async def test_claim_without_trace_is_rejected_then_fixed(
        self, make_orchestrator, scripted_backend, make_raw, scripts, record_store
    ):
        backend = scripted_backend([make_raw(claimed=("ran tests",), include_trace=False), scripts["healthy"]])
        orchestrator = make_orchestrator(backend)

        state = await run_to_end(orchestrator)

        first_key = record_key("run-1", 1)
        flags = RedFlagReport.model_validate(record_store.get(RED_FLAGS_COLLECTION, first_key))
        assert [(f.category, f.severity) for f in flags.flags] == [
            (FlagCategory.MISSING_EVIDENCE, Severity.CRITICAL)
        ]
        assert flags.flags[0].details["expected_artifact"] == "trace"
        verdict = VerificationReport.model_validate(record_store.get(VERIFICATION_COLLECTION, first_key))
        assert verdict.recommendation == Recommendation.REJECT
        assert record_store.exists(ROOT_CAUSE_COLLECTION, first_key)

        assert state.stage == WorkflowStage.COMPLETED
        assert stages(state)[:6] == [
            WorkflowStage.EXECUTING,
            WorkflowStage.EVIDENCE_COLLECTED,
            WorkflowStage.RED_FLAG_CHECKED,
            WorkflowStage.VERIFYING,
            WorkflowStage.REJECTED,
            WorkflowStage.DIAGNOSING,
        ]
        attempts = orchestrator.get_report("run-1").fix_attempts
        assert len(attempts) == 1
        assert attempts[0].tier == ModelTier.CHEAP
        assert [p.tier for p in backend.fix_calls] == [ModelTier.CHEAP]

    @pytest.mark.asyncio
    async def test_learning_carries_to_next_run(self, make_orchestrator, scripted_backend, scripts):
        first = make_orchestrator(scripted_backend([scripts["failing"], scripts["healthy"]]))
        await run_to_end(first, "run-1")
        second = make_orchestrator(scripted_backend([scripts["failing"], scripts["healthy"]]))

        state = await run_to_end(second, "run-2")

        selected = [t.reason for t in state.history if t.to_stage == WorkflowStage.FIX_SELECTED]
        assert selected == ["import_fix on cheap tier (from learning)"]


@pytest.mark.orchestrator
class TestStageBoundaries:
    """Timeouts, retries and cancellation."""

    @pytest.mark.asyncio
    async def test_stage_timeout(self, make_orchestrator):
        cfg = ProofgateConfig(
            storage={"backend": "memory"},
            orchestrator={"stage_timeouts": {WorkflowStage.VERIFYING: 0.05}},
        )
        orchestrator = make_orchestrator(cfg=cfg, verifier=SlowVerifier())

        state = await run_to_end(orchestrator)

        assert state.stage == WorkflowStage.TIMED_OUT
        assert state.status == WorkflowStatus.TIMED_OUT
        assert "verifying" in state.terminal_reason
        assert orchestrator.metrics.stage(WorkflowStage.VERIFYING).failures == 1

    @pytest.mark.asyncio
    async def test_stage_retried_once(self, make_orchestrator, scripted_backend):
        backend = FlakyBackend(scripted_backend(), failures=1)
        orchestrator = make_orchestrator(backend)

        state = await run_to_end(orchestrator)

        assert state.stage == WorkflowStage.COMPLETED
        assert backend.calls == 2

    @pytest.mark.asyncio
    async def test_stage_fails_after_retry_limit(self, make_orchestrator, scripted_backend):
        backend = scripted_backend([RuntimeError("executor crashed")])
        orchestrator = make_orchestrator(backend)

        state = await run_to_end(orchestrator)

        assert state.stage == WorkflowStage.FAILED
        assert state.error == "RuntimeError: executor crashed"
        assert len(backend.execute_calls) == 2

    @pytest.mark.asyncio
    async def test_cancel(self, make_orchestrator, scripted_backend):
        orchestrator = make_orchestrator(scripted_backend(execute_delay=10))
        await orchestrator.start_verification("run-1", TARGET)
        await asyncio.sleep(0.05)

        assert await orchestrator.cancel("run-1")

        state = orchestrator.get_status("run-1")
        assert state.stage == WorkflowStage.FAILED
        assert state.terminal_reason == "cancelled"
        assert not await orchestrator.cancel("run-1")
        assert orchestrator.resources.active == 0


@pytest.mark.orchestrator
class TestScheduling:
    """Concurrency, resumption and API edge cases."""

    @pytest.mark.asyncio
    async def test_concurrency_ceiling(self, make_orchestrator, scripted_backend):
        cfg = ProofgateConfig(storage={"backend": "memory"}, orchestrator={"max_concurrent_runs": 2})
        backend = scripted_backend(execute_delay=0.05)
        orchestrator = make_orchestrator(backend, cfg)

        for i in range(5):
            await orchestrator.start_verification(f"run-{i}", TARGET)
        await orchestrator.wait_all(timeout=10)

        assert backend.max_active == 2
        assert all(orchestrator.get_status(f"run-{i}").stage == WorkflowStage.COMPLETED for i in range(5))

    @pytest.mark.asyncio
    async def test_duplicate_run_id(self, make_orchestrator):
        orchestrator = make_orchestrator()
        await run_to_end(orchestrator)

        assert await orchestrator.start_verification("run-1", TARGET) == StartResult.ALREADY_EXISTS

    @pytest.mark.asyncio
    @pytest.mark.parametrize("run_id", ["run__b", "a/b", "a b"])
    async def test_run_id_that_cannot_key_records(self, make_orchestrator, run_id):
        orchestrator = make_orchestrator()

        with pytest.raises(ValidationError):
            await orchestrator.start_verification(run_id, TARGET)

    @pytest.mark.asyncio
    async def test_runs_do_not_see_rows_under_a_longer_run_id(
        self, make_orchestrator, scripted_backend, record_store
    ):
        for attempt in (1, 2, 3):
            record_store.create(
                FIX_ATTEMPTS_COLLECTION,
                f"run__b__{attempt:04d}",
                {"run_id": "run__b", "attempt_number": attempt},
            )
        backend = scripted_backend()
        orchestrator = make_orchestrator(backend)

        state = await run_to_end(orchestrator, "run")

        assert state.stage == WorkflowStage.COMPLETED
        assert backend.fix_calls == []
        report = orchestrator.get_report("run")
        assert report.fix_attempts == []
        assert len(report.bundle_ids) == 1

    @pytest.mark.asyncio
    async def test_unknown_run(self, make_orchestrator):
        orchestrator = make_orchestrator()

        with pytest.raises(RunNotFoundError):
            orchestrator.get_status("missing")
        with pytest.raises(RunNotFoundError):
            await orchestrator.resume("missing")

    @pytest.mark.asyncio
    async def test_shutdown_stops_accepting(self, make_orchestrator):
        orchestrator = make_orchestrator()
        await orchestrator.shutdown()

        assert not orchestrator.accepting
        with pytest.raises(OrchestratorUnavailableError):
            await orchestrator.start_verification("run-1", TARGET)

    @pytest.mark.asyncio
    async def test_resume_skips_recorded_work(
        self, make_orchestrator, scripted_backend, collector, record_store, make_raw
    ):
        collector.collect(make_raw(attempt=1), "run-1", 1)
        WorkflowStateStore(record_store).save(
            WorkflowState(
                run_id="run-1",
                target=TARGET,
                stage=WorkflowStage.EXECUTING,
                execution_attempt=1,
                current_change_ref=TARGET,
            )
        )
        backend = scripted_backend()
        orchestrator = make_orchestrator(backend)

        assert await orchestrator.resume_incomplete() == ["run-1"]
        state = await orchestrator.wait("run-1", timeout=10)

        assert state.stage == WorkflowStage.COMPLETED
        assert backend.execute_calls == []

    @pytest.mark.asyncio
    async def test_resume_terminal_run_is_noop(self, make_orchestrator):
        orchestrator = make_orchestrator()
        await run_to_end(orchestrator)

        assert not await orchestrator.resume("run-1")

    @pytest.mark.asyncio
    async def test_interrupted_run_resumes_on_new_instance(self, config, scripted_backend, scripts):
        artifacts, records = MemoryArtifactStore(), MemoryRecordStore()
        slow = scripted_backend([scripts["failing"], scripts["healthy"]], execute_delay=10)
        first = TestOrchestrator(slow, config, artifact_store=artifacts, record_store=records)
        await first.start_verification("run-1", TARGET)
        await asyncio.sleep(0.05)
        await first.shutdown(cancel_running=True)

        interrupted = first.get_status("run-1")
        assert interrupted.stage == WorkflowStage.EXECUTING

        backend = scripted_backend([scripts["failing"], scripts["healthy"]])
        second = TestOrchestrator(backend, config, artifact_store=artifacts, record_store=records)
        assert await second.resume("run-1")
        state = await second.wait("run-1", timeout=10)

        assert state.stage == WorkflowStage.COMPLETED
        assert records.keys(FIX_ATTEMPTS_COLLECTION) == ["run-1__0001"]
        assert EvidenceCollector(artifacts, records).load("run-1", 2) is not None

    @pytest.mark.asyncio
    async def test_state_persistence_failure_halts_service(self, config, scripted_backend):
        records = StateWriteFailingStore()
        orchestrator = TestOrchestrator(
            scripted_backend(), config, artifact_store=MemoryArtifactStore(), record_store=records
        )
        await orchestrator.start_verification("run-1", TARGET)
        records.fail_states = True

        await orchestrator.wait("run-1", timeout=10)

        assert not orchestrator.accepting
        assert "disk full" in str(orchestrator.fatal_error)
        with pytest.raises(OrchestratorUnavailableError, match="disk full"):
            await orchestrator.start_verification("run-2", TARGET)

    @pytest.mark.asyncio
    async def test_file_storage_writes_journal(self, tmp_path, scripted_backend):
        cfg = ProofgateConfig(storage={"backend": "file", "base_dir": str(tmp_path)})
        orchestrator = TestOrchestrator(scripted_backend(), cfg)

        await run_to_end(orchestrator)

        events = orchestrator.journal.read("run-1")
        assert events[0]["type"] == "run_start"
        assert events[-1]["type"] == "run_complete"
        assert events[-1]["stage"] == "completed"
        assert TestOrchestrator(None, cfg).get_status("run-1").stage == WorkflowStage.COMPLETED
