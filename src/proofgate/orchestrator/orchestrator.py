"""
Test Orchestrator.

Top-level state machine of the verification pipeline. Each run is an
independent asyncio task that walks the stages strictly in order:

    pending -> executing -> evidence_collected -> red_flag_checked
        -> verifying -> accepted -> completed
                     -> rejected -> diagnosing -> fix_selected
                                 -> fix_applying -> executing (loop)

with `escalated`, `timed_out` and `failed` as the other terminal stages.

Each stage's work runs after the stage has been persisted, so a crashed
run resumes from its last stage. Work is bounded by a per-stage timeout
(expiry goes straight to `timed_out`) and retried at most
`stage_retry_limit` times when it raises before the run is `failed`.
Only a failure to persist WorkflowState is fatal to the service: the
orchestrator then stops accepting runs.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from proofgate.config.models import ProofgateConfig, StorageBackend
from proofgate.errors import (
    MissingOutcomeError,
    OrchestratorError,
    OrchestratorUnavailableError,
    RunNotFoundError,
    StatePersistenceError,
    StrategyExhaustedError,
)
from proofgate.evidence.collector import EvidenceCollector
from proofgate.fixing.ladder import TIER_LADDER, TierLadder, tier_index_for
from proofgate.fixing.retry import RetryManager
from proofgate.learning.store import FixLearningStore
from proofgate.models.base import Complexity, EscalationReason, WorkflowStage
from proofgate.models.evidence import EvidenceBundle
from proofgate.models.fixing import FixApplication, FixAttempt, FixPlan, RootCauseAnalysis
from proofgate.models.red_flags import RedFlagReport
from proofgate.models.verification import VerificationReport
from proofgate.models.workflow import (
    PendingFix,
    RunReport,
    StartResult,
    VerificationRequest,
    WorkflowState,
)
from proofgate.orchestrator.backend import ExecutionBackend
from proofgate.orchestrator.journal import (
    FixAttemptEvent,
    JournalEvent,
    RunCompleteEvent,
    RunJournal,
    RunStartEvent,
    StageErrorEvent,
    StageTransitionEvent,
)
from proofgate.orchestrator.resources import ResourceManager
from proofgate.orchestrator.state import WorkflowStateStore, apply_transition
from proofgate.rca.analyzer import RootCauseAnalyzer
from proofgate.rca.selector import FixStrategySelector
from proofgate.red_flags.detector import RedFlagDetector
from proofgate.storage import ArtifactStore, RecordStore, create_stores, record_key
from proofgate.utils.metrics import MetricsCollector
from proofgate.verification.verifier import IndependentVerifier

logger = logging.getLogger(__name__)

RED_FLAGS_COLLECTION = "red_flag_reports"
VERIFICATION_COLLECTION = "verification_reports"
ROOT_CAUSE_COLLECTION = "root_causes"
FIX_ATTEMPTS_COLLECTION = "fix_attempts"

# Type alias for progress callback
ProgressCallback = Callable[[WorkflowState], None]
StageHandler = Callable[[WorkflowState], Awaitable[WorkflowState]]


class TestOrchestrator:
    """Schedules and drives verification runs.

    Usage:
        orchestrator = TestOrchestrator(backend, config)
        result = await orchestrator.start_verification("run-1", "commit:abc123", ["login works"])
        state = await orchestrator.wait("run-1")
        report = orchestrator.get_report("run-1")
    """

    # Not a pytest test class
    __test__ = False

    def __init__(
        self,
        backend: ExecutionBackend | None = None,
        config: ProofgateConfig | None = None,
        artifact_store: ArtifactStore | None = None,
        record_store: RecordStore | None = None,
        journal: RunJournal | None = None,
        metrics: MetricsCollector | None = None,
        detector: RedFlagDetector | None = None,
        verifier: IndependentVerifier | None = None,
        analyzer: RootCauseAnalyzer | None = None,
        learning_store: FixLearningStore | None = None,
        selector: FixStrategySelector | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            backend: Execution handle for running tests and applying fixes. May
                be None for read-only use (status and reports).
            config: Root configuration (defaults apply when omitted)
            artifact_store: Artifact bytes store (built from config.storage if omitted)
            record_store: Record store (built from config.storage if omitted)
            journal: Run journal (file storage gets one under base_dir/journal)
            metrics: Metrics collector
            detector: Red flag detector
            verifier: Independent verifier
            analyzer: Root cause analyzer
            learning_store: Fix learning store
            selector: Fix strategy selector
        """
        self._config = config or ProofgateConfig()
        self._backend = backend

        if artifact_store is None or record_store is None:
            default_artifacts, default_records = create_stores(
                self._config.storage.backend.value, self._config.storage.base_dir
            )
            artifact_store = artifact_store or default_artifacts
            record_store = record_store or default_records
        self._records = record_store

        if journal is None and self._config.storage.backend == StorageBackend.FILE:
            journal = RunJournal(Path(self._config.storage.base_dir) / "journal")
        self._journal = journal

        self._metrics = metrics or MetricsCollector()
        self._collector = EvidenceCollector(artifact_store, record_store)
        self._detector = detector or RedFlagDetector(self._config.detection)
        self._verifier = verifier or IndependentVerifier(
            artifact_store,
            self._config.verification,
            self._config.detection,
            self._config.models,
        )
        self._analyzer = analyzer or RootCauseAnalyzer()
        self._learning = learning_store or FixLearningStore(record_store, self._config.learning)
        self._selector = selector or FixStrategySelector(self._learning)
        self._ladder = TierLadder(self._config.models)
        self._resources = ResourceManager(self._config.orchestrator.max_concurrent_runs)
        self._states = WorkflowStateStore(record_store)

        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._live: dict[str, WorkflowState] = {}
        self._progress_callbacks: list[ProgressCallback] = []
        self._accepting = True
        self._shutting_down = False
        self._fatal_error: StatePersistenceError | None = None

        self._handlers: dict[WorkflowStage, StageHandler] = {
            WorkflowStage.EXECUTING: self._execute,
            WorkflowStage.EVIDENCE_COLLECTED: self._detect_red_flags,
            WorkflowStage.RED_FLAG_CHECKED: self._begin_verification,
            WorkflowStage.VERIFYING: self._verify,
            WorkflowStage.ACCEPTED: self._complete,
            WorkflowStage.REJECTED: self._check_retry_budget,
            WorkflowStage.DIAGNOSING: self._diagnose,
            WorkflowStage.FIX_SELECTED: self._begin_fix,
            WorkflowStage.FIX_APPLYING: self._apply_fix,
        }

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def config(self) -> ProofgateConfig:
        return self._config

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics

    @property
    def resources(self) -> ResourceManager:
        return self._resources

    @property
    def learning_store(self) -> FixLearningStore:
        return self._learning

    @property
    def journal(self) -> RunJournal | None:
        return self._journal

    @property
    def accepting(self) -> bool:
        """Whether new runs are accepted."""
        return self._accepting

    @property
    def fatal_error(self) -> StatePersistenceError | None:
        return self._fatal_error

    def running_runs(self) -> list[str]:
        return sorted(self._tasks)

    def on_progress(self, callback: ProgressCallback) -> None:
        """Register a callback invoked with a state copy after every transition."""
        self._progress_callbacks.append(callback)

    def _notify_progress(self, state: WorkflowState) -> None:
        for callback in self._progress_callbacks:
            try:
                callback(state.model_copy(deep=True))
            except Exception as e:
                logger.warning(f"[{state.run_id}] Progress callback failed: {e}")

    # =========================================================================
    # Public API
    # =========================================================================

    async def start_verification(
        self,
        run_id: str,
        target: str,
        criteria: Iterable[str] = (),
    ) -> StartResult:
        """Accept a run and schedule it.

        Args:
            run_id: Caller-chosen run identifier
            target: Opaque code-change reference
            criteria: Acceptance criteria

        Returns:
            ACCEPTED, or ALREADY_EXISTS when the run id is known

        Raises:
            OrchestratorUnavailableError: If the service stopped accepting runs
            ValidationError: If the run id cannot key its records
            StatePersistenceError: If the initial state cannot be written
        """
        if not self._accepting:
            raise OrchestratorUnavailableError(
                "Orchestrator is not accepting new runs"
                + (f": {self._fatal_error}" if self._fatal_error else "")
            )

        request = VerificationRequest(run_id=run_id, target=target, criteria=list(criteria))
        if run_id in self._tasks or self._states.exists(run_id):
            logger.info(f"[{run_id}] Run already exists")
            return StartResult.ALREADY_EXISTS

        state = WorkflowState(
            run_id=request.run_id,
            target=request.target,
            criteria=request.criteria,
            current_change_ref=request.target,
        )
        self._save(state)
        self._live[run_id] = state
        self._record(RunStartEvent(run_id=run_id, target=target, criteria=request.criteria))
        self._metrics.record_run_started()
        logger.info(f"[{run_id}] Run accepted for {target}")

        self._launch(run_id)
        return StartResult.ACCEPTED

    def get_status(self, run_id: str) -> WorkflowState:
        """Current state of a run.

        Raises:
            RunNotFoundError: If the run id is unknown
        """
        state = self._live.get(run_id) or self._states.load(run_id)
        if state is None:
            raise RunNotFoundError(f"Unknown run: {run_id}")
        return state.model_copy(deep=True)

    def get_report(self, run_id: str) -> RunReport:
        """Review package for a run: latest verdict, flags, diagnosis and fix history.

        Raises:
            RunNotFoundError: If the run id is unknown
        """
        state = self.get_status(run_id)
        return RunReport(
            run_id=run_id,
            state=state,
            verification=self._latest(VERIFICATION_COLLECTION, run_id, VerificationReport),
            red_flags=self._latest(RED_FLAGS_COLLECTION, run_id, RedFlagReport),
            root_cause=self._latest(ROOT_CAUSE_COLLECTION, run_id, RootCauseAnalysis),
            fix_attempts=self._fix_attempts(run_id),
            bundle_ids=[b.bundle_id for b in self._collector.history(run_id, include_missing=True)],
        )

    async def cancel(self, run_id: str) -> bool:
        """Cancel a running run; it ends `failed` with reason "cancelled".

        Returns:
            True if a running run was cancelled
        """
        task = self._tasks.get(run_id)
        if task is None or task.done():
            return False
        task.cancel()
        await asyncio.wait({task})
        return True

    async def resume(self, run_id: str) -> bool:
        """Re-attach to a persisted non-terminal run.

        Returns:
            True if the run was rescheduled

        Raises:
            RunNotFoundError: If the run id is unknown
        """
        if not self._accepting:
            raise OrchestratorUnavailableError("Orchestrator is not accepting runs")
        if run_id in self._tasks:
            return False
        state = self._states.load(run_id)
        if state is None:
            raise RunNotFoundError(f"Unknown run: {run_id}")
        if state.is_terminal:
            return False

        self._live[run_id] = state
        logger.info(f"[{run_id}] Resuming from stage {state.stage.value}")
        self._launch(run_id)
        return True

    async def resume_incomplete(self) -> list[str]:
        """Reschedule every persisted run that has not reached a terminal stage."""
        resumed = []
        for state in self._states.incomplete():
            if await self.resume(state.run_id):
                resumed.append(state.run_id)
        if resumed:
            logger.info(f"Resumed {len(resumed)} incomplete run(s)")
        return resumed

    async def wait(self, run_id: str, timeout: float | None = None) -> WorkflowState:
        """Wait until a run stops (terminal, cancelled or interrupted)."""
        task = self._tasks.get(run_id)
        if task is not None:
            await asyncio.wait({task}, timeout=timeout)
        return self.get_status(run_id)

    async def wait_all(self, timeout: float | None = None) -> None:
        tasks = set(self._tasks.values())
        if tasks:
            await asyncio.wait(tasks, timeout=timeout)

    async def shutdown(self, cancel_running: bool = False) -> None:
        """Stop accepting runs.

        Args:
            cancel_running: Interrupt running runs instead of waiting for
                them. Interrupted runs keep their persisted stage and can be
                resumed later.
        """
        self._accepting = False
        if cancel_running:
            self._shutting_down = True
            for task in self._tasks.values():
                task.cancel()
        await self.wait_all()
        logger.info("Orchestrator shut down")

    # =========================================================================
    # Run driver
    # =========================================================================

    def _launch(self, run_id: str) -> None:
        task = asyncio.create_task(self._drive(run_id), name=f"proofgate-run-{run_id}")
        self._tasks[run_id] = task

        def _forget(done: asyncio.Task[None]) -> None:
            if self._tasks.get(run_id) is done:
                del self._tasks[run_id]

        task.add_done_callback(_forget)

    async def _drive(self, run_id: str) -> None:
        """Run one state machine until a terminal stage."""
        state = self._live[run_id]
        try:
            await self._resources.acquire(run_id)
            if state.stage == WorkflowStage.PENDING:
                state = self._transition(
                    state,
                    WorkflowStage.EXECUTING,
                    "Concurrency slot acquired",
                    execution_attempt=state.execution_attempt + 1,
                )
            while not state.is_terminal:
                state = await self._run_stage(state)
        except asyncio.CancelledError:
            current = self._live.get(run_id, state)
            if not self._shutting_down and not current.is_terminal:
                logger.warning(f"[{run_id}] Cancelled during {current.stage.value}")
                self._transition(current, WorkflowStage.FAILED, "cancelled", error="cancelled")
            raise
        except StatePersistenceError as e:
            self._halt(e)
        finally:
            self._resources.release(run_id)

    async def _run_stage(self, state: WorkflowState) -> WorkflowState:
        """Run the work of the current stage under its timeout and retry limit."""
        stage = state.stage
        handler = self._handlers[stage]
        timeout = self._config.orchestrator.timeout_for(stage)
        retry_limit = self._config.orchestrator.stage_retry_limit
        failures = 0

        while True:
            try:
                async with self._metrics.stage_context(stage):
                    return await asyncio.wait_for(handler(state), timeout=timeout)
            except TimeoutError:
                logger.error(f"[{state.run_id}] Stage {stage.value} exceeded {timeout:g}s")
                self._record(
                    StageErrorEvent(
                        run_id=state.run_id,
                        stage=stage.value,
                        error=f"timeout after {timeout:g}s",
                        error_type="TimeoutError",
                    )
                )
                return self._transition(
                    self._live.get(state.run_id, state),
                    WorkflowStage.TIMED_OUT,
                    f"Stage '{stage.value}' exceeded its {timeout:g}s timeout",
                )
            except StatePersistenceError:
                raise
            except Exception as e:
                failures += 1
                retrying = failures <= retry_limit
                self._record(
                    StageErrorEvent(
                        run_id=state.run_id,
                        stage=stage.value,
                        error=str(e),
                        error_type=type(e).__name__,
                        retry=failures if retrying else 0,
                    )
                )
                if retrying:
                    logger.warning(
                        f"[{state.run_id}] Stage {stage.value} raised {type(e).__name__}: {e} "
                        f"(retry {failures}/{retry_limit})"
                    )
                    continue

                logger.error(f"[{state.run_id}] Stage {stage.value} failed: {e}")
                return self._transition(
                    self._live.get(state.run_id, state),
                    WorkflowStage.FAILED,
                    f"Stage '{stage.value}' failed: {e}",
                    error=f"{type(e).__name__}: {e}",
                )

    def _transition(
        self,
        state: WorkflowState,
        to_stage: WorkflowStage,
        reason: str = "",
        **updates: Any,
    ) -> WorkflowState:
        """Validate, apply and persist a stage transition."""
        if updates:
            state = state.model_copy(update=updates)
        new_state = apply_transition(state, to_stage, reason)
        self._save(new_state)
        self._live[new_state.run_id] = new_state

        logger.info(
            f"[{new_state.run_id}] {state.stage.value} -> {to_stage.value}"
            + (f" ({reason})" if reason else "")
        )
        self._record(
            StageTransitionEvent(
                run_id=new_state.run_id,
                from_stage=state.stage.value,
                to_stage=to_stage.value,
                reason=reason,
                execution_attempt=new_state.execution_attempt,
            )
        )

        if new_state.is_terminal:
            self._finish(new_state)
        self._notify_progress(new_state)
        return new_state

    def _finish(self, state: WorkflowState) -> None:
        self._metrics.record_terminal(state.stage)
        self._record(
            RunCompleteEvent(
                run_id=state.run_id,
                stage=state.stage.value,
                reason=state.terminal_reason,
                execution_attempts=state.execution_attempt,
                fix_attempts=state.retry_count,
                total_cost_usd=state.total_cost_usd,
                duration_seconds=state.duration_seconds,
            )
        )
        if state.stage == WorkflowStage.COMPLETED:
            logger.info(f"[{state.run_id}] Run completed: {state.terminal_reason}")
        else:
            logger.error(f"[{state.run_id}] Run {state.stage.value}: {state.terminal_reason}")

    def _halt(self, error: StatePersistenceError) -> None:
        self._accepting = False
        self._fatal_error = error
        logger.critical(f"State persistence failed, no longer accepting runs: {error}")

    # =========================================================================
    # Stage handlers
    # =========================================================================

    async def _execute(self, state: WorkflowState) -> WorkflowState:
        """Run the test and collect its evidence."""
        run_id, attempt = state.run_id, state.execution_attempt

        bundle = await asyncio.to_thread(self._collector.load, run_id, attempt)
        if bundle is None:
            request = VerificationRequest(run_id=run_id, target=state.target, criteria=state.criteria)
            raw = await self._require_backend().execute(request, attempt, state.current_change_ref)
            try:
                bundle = await asyncio.to_thread(self._collector.collect, raw, run_id, attempt)
            except MissingOutcomeError as e:
                logger.warning(f"[{run_id}] Attempt {attempt} has no outcome: {e}")
                missing = await asyncio.to_thread(self._collector.load, run_id, attempt)
                return await self._reject_missing_outcome(state, str(e), missing)
        elif bundle.outcome_missing:
            return await self._reject_missing_outcome(
                state,
                f"Execution for run {run_id} attempt {attempt} produced no determinable outcome",
                bundle,
            )

        return self._transition(
            state,
            WorkflowStage.EVIDENCE_COLLECTED,
            f"Bundle {bundle.bundle_id[:12]} with {len(bundle.artifacts)} artifact(s)",
            stage_results=self._with_result(
                state,
                WorkflowStage.EXECUTING,
                {
                    "attempt": attempt,
                    "bundle_id": bundle.bundle_id,
                    "artifacts": len(bundle.artifacts),
                    "claimed_pass": bundle.outcome.passed,
                },
            ),
        )

    async def _reject_missing_outcome(
        self,
        state: WorkflowState,
        error: str,
        bundle: EvidenceBundle | None,
    ) -> WorkflowState:
        """Reject an attempt whose execution reported no outcome.

        A fix awaiting its verdict fails with the attempt.
        """
        if state.pending_fix is not None:
            state = await self._complete_fix(
                state,
                state.pending_fix.plan,
                state.pending_fix.application,
                success=False,
                cost_usd=state.pending_fix.cost_usd,
                tokens_used=state.pending_fix.tokens_used,
                error="Execution after fix produced no outcome",
            )
        result: dict[str, Any] = {
            "attempt": state.execution_attempt,
            "missing_outcome": True,
            "error": error,
        }
        if bundle is not None:
            result["bundle_id"] = bundle.bundle_id
            result["artifacts"] = len(bundle.artifacts)
        return self._transition(
            state,
            WorkflowStage.REJECTED,
            "Execution produced no determinable outcome",
            stage_results=self._with_result(state, WorkflowStage.EXECUTING, result),
        )

    async def _detect_red_flags(self, state: WorkflowState) -> WorkflowState:
        run_id, attempt = state.run_id, state.execution_attempt
        key = record_key(run_id, attempt)

        report = self._load(RED_FLAGS_COLLECTION, key, RedFlagReport)
        if report is None:
            bundle = self._require_bundle(run_id, attempt)
            history = await asyncio.to_thread(self._collector.history, run_id, attempt)
            report = await asyncio.to_thread(self._detector.detect, bundle, history)
            self._records.create(RED_FLAGS_COLLECTION, key, report.model_dump(mode="json"))
            self._metrics.record_red_flags(report)

        return self._transition(
            state,
            WorkflowStage.RED_FLAG_CHECKED,
            f"{len(report.flags)} red flag(s), verdict {report.verdict.value}",
            stage_results=self._with_result(
                state,
                WorkflowStage.EVIDENCE_COLLECTED,
                {
                    "verdict": report.verdict.value,
                    "flags": len(report.flags),
                    "severity_summary": report.severity_summary,
                },
            ),
        )

    async def _begin_verification(self, state: WorkflowState) -> WorkflowState:
        return self._transition(state, WorkflowStage.VERIFYING)

    async def _verify(self, state: WorkflowState) -> WorkflowState:
        run_id, attempt = state.run_id, state.execution_attempt
        key = record_key(run_id, attempt)

        report = self._load(VERIFICATION_COLLECTION, key, VerificationReport)
        if report is None:
            bundle = self._require_bundle(run_id, attempt)
            flags = self._load(RED_FLAGS_COLLECTION, key, RedFlagReport)
            if flags is None:
                raise OrchestratorError(f"No red flag report for {run_id} attempt {attempt}")
            history = await asyncio.to_thread(self._collector.history, run_id, attempt)
            report = await self._verifier.verify(bundle, flags, history)
            self._records.create(VERIFICATION_COLLECTION, key, report.model_dump(mode="json"))
            self._metrics.record_verification(report.recommendation, report.confidence_score)

        if state.pending_fix is not None:
            state = await self._complete_fix(
                state,
                state.pending_fix.plan,
                state.pending_fix.application,
                success=report.passed,
                cost_usd=state.pending_fix.cost_usd,
                tokens_used=state.pending_fix.tokens_used,
                error=None if report.passed else (
                    f"Verification {report.recommendation.value} with confidence "
                    f"{report.confidence_score}"
                ),
            )

        result = {
            "confidence_score": report.confidence_score,
            "recommendation": report.recommendation.value,
            "critical_flags": report.critical_flags,
            "verifier_model": report.verifier_model,
        }
        reason = f"confidence {report.confidence_score}, {report.recommendation.value}"
        if report.passed:
            return self._transition(
                state,
                WorkflowStage.ACCEPTED,
                reason,
                stage_results=self._with_result(state, WorkflowStage.VERIFYING, result),
            )
        return self._transition(
            state,
            WorkflowStage.REJECTED,
            reason,
            flagged_for_review=state.flagged_for_review or report.needs_review,
            stage_results=self._with_result(state, WorkflowStage.VERIFYING, result),
        )

    async def _complete(self, state: WorkflowState) -> WorkflowState:
        verdict = state.stage_results.get(WorkflowStage.VERIFYING.value, {})
        return self._transition(
            state,
            WorkflowStage.COMPLETED,
            f"Verified with confidence {verdict.get('confidence_score', '?')} after "
            f"{state.execution_attempt} execution(s)",
        )

    async def _check_retry_budget(self, state: WorkflowState) -> WorkflowState:
        manager = self._retry_manager(state.run_id)
        reason = manager.escalation_reason(state.total_cost_usd)
        if reason is not None:
            return self._escalate(state, reason, manager)
        return self._transition(
            state,
            WorkflowStage.DIAGNOSING,
            f"{manager.attempts_used} of {self._config.retry.max_attempts} fix attempts used",
        )

    async def _diagnose(self, state: WorkflowState) -> WorkflowState:
        """Root cause analysis, then strategy selection for the next fix."""
        run_id, attempt = state.run_id, state.execution_attempt
        key = record_key(run_id, attempt)
        manager = self._retry_manager(run_id)

        rca = self._load(ROOT_CAUSE_COLLECTION, key, RootCauseAnalysis)
        if rca is None:
            bundle = await asyncio.to_thread(self._collector.load, run_id, attempt)
            execution = state.stage_results.get(WorkflowStage.EXECUTING.value, {})
            missing_error = execution.get("error") if execution.get("attempt") == attempt else None
            rca = await asyncio.to_thread(
                self._analyzer.analyze,
                run_id,
                attempt,
                bundle,
                self._load(RED_FLAGS_COLLECTION, key, RedFlagReport),
                manager.attempts,
                missing_error,
                self._load(VERIFICATION_COLLECTION, key, VerificationReport),
            )
            self._records.create(ROOT_CAUSE_COLLECTION, key, rca.model_dump(mode="json"))

        diagnosis = {
            "category": rca.category.value,
            "complexity": rca.complexity.value,
            "root_cause": rca.root_cause,
            "failure_pattern": rca.failure_pattern,
        }
        state = state.model_copy(
            update={"stage_results": self._with_result(state, WorkflowStage.DIAGNOSING, diagnosis)}
        )

        if rca.complexity == Complexity.REQUIRES_HUMAN:
            return self._escalate(state, EscalationReason.REQUIRES_HUMAN, manager)

        fix_number = manager.next_attempt_number
        tier_index = max(tier_index_for(fix_number, rca.complexity), state.tier_index)
        tier = TIER_LADDER[tier_index]

        try:
            selection = await self._selector.select(rca, tier, state.failed_strategies)
        except StrategyExhaustedError:
            return self._escalate(state, EscalationReason.NO_STRATEGIES, manager)

        plan = FixPlan(
            run_id=run_id,
            attempt_number=fix_number,
            execution_attempt=attempt,
            strategy=selection.strategy,
            strategy_description=selection.description,
            tier=tier,
            model_name=self._ladder.model_for(tier).name,
            target=state.current_change_ref,
            criteria=tuple(state.criteria),
            rca=rca,
        )
        return self._transition(
            state,
            WorkflowStage.FIX_SELECTED,
            f"{selection.strategy.value} on {tier.value} tier (from {selection.source})",
            fix_plan=plan,
            tier_index=tier_index,
        )

    async def _begin_fix(self, state: WorkflowState) -> WorkflowState:
        return self._transition(state, WorkflowStage.FIX_APPLYING)

    async def _apply_fix(self, state: WorkflowState) -> WorkflowState:
        plan = state.fix_plan
        if plan is None:
            raise OrchestratorError(f"No fix plan for {state.run_id}")

        application = await self._require_backend().apply_fix(plan)

        tier_model = self._ladder.model_for(plan.tier)
        tokens = (
            application.tokens_used
            if application.tokens_used is not None
            else tier_model.estimated_tokens
        )
        cost = (
            application.cost_usd
            if application.cost_usd is not None
            else tier_model.estimate_cost(tokens)
        )
        self._metrics.record_cost(tokens, cost, plan.model_name, plan.tier.value)
        state = state.model_copy(update={"total_cost_usd": state.total_cost_usd + cost})

        if not application.success:
            state = await self._complete_fix(
                state,
                plan,
                application,
                success=False,
                cost_usd=cost,
                tokens_used=tokens,
                error=application.error_message or "Fix could not be applied",
            )
            return self._transition(
                state,
                WorkflowStage.REJECTED,
                f"Fix {plan.strategy.value} could not be applied",
                fix_plan=None,
            )

        return self._transition(
            state,
            WorkflowStage.EXECUTING,
            f"Applied {plan.strategy.value} with {plan.model_name}",
            fix_plan=None,
            pending_fix=PendingFix(
                plan=plan, application=application, cost_usd=cost, tokens_used=tokens
            ),
            current_change_ref=application.change_ref or state.current_change_ref,
            execution_attempt=state.execution_attempt + 1,
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _escalate(
        self,
        state: WorkflowState,
        reason: EscalationReason,
        manager: RetryManager,
    ) -> WorkflowState:
        summary = manager.summary()
        return self._transition(
            state,
            WorkflowStage.ESCALATED,
            f"{reason.value} after {summary.total_attempts} fix attempt(s)",
            escalation_reason=reason,
            stage_results=self._with_result(state, WorkflowStage.ESCALATED, summary.to_dict()),
        )

    async def _complete_fix(
        self,
        state: WorkflowState,
        plan: FixPlan,
        application: FixApplication,
        success: bool,
        cost_usd: float,
        tokens_used: int,
        error: str | None = None,
    ) -> WorkflowState:
        """Record a finished fix attempt and feed the learning store.

        Idempotent per attempt number, so a resumed run never counts an
        attempt twice.
        """
        key = record_key(plan.run_id, plan.attempt_number)
        attempt = FixAttempt(
            run_id=plan.run_id,
            attempt_number=plan.attempt_number,
            execution_attempt=plan.execution_attempt,
            tier=plan.tier,
            model_used=plan.model_name,
            strategy=plan.strategy,
            failure_pattern=plan.rca.failure_pattern,
            success=success,
            cost_usd=cost_usd,
            tokens_used=tokens_used,
            changes_made=application.changes_made,
            change_ref=application.change_ref,
            error_message=error,
        )

        if not self._records.exists(FIX_ATTEMPTS_COLLECTION, key):
            manager = self._retry_manager(plan.run_id)
            self._records.create(FIX_ATTEMPTS_COLLECTION, key, attempt.model_dump(mode="json"))
            await manager.record_attempt(attempt, complexity=plan.rca.complexity)
            self._record(
                FixAttemptEvent(
                    run_id=plan.run_id,
                    attempt_number=attempt.attempt_number,
                    tier=attempt.tier.value,
                    strategy=attempt.strategy.value,
                    success=success,
                    cost_usd=cost_usd,
                )
            )

        failed = list(state.failed_strategies)
        if not success and plan.strategy not in failed:
            failed.append(plan.strategy)
        return state.model_copy(
            update={
                "retry_count": max(state.retry_count, plan.attempt_number),
                "failed_strategies": failed,
                "pending_fix": None,
            }
        )

    def _retry_manager(self, run_id: str) -> RetryManager:
        return RetryManager(run_id, self._learning, self._config.retry, self._fix_attempts(run_id))

    def _fix_attempts(self, run_id: str) -> list[FixAttempt]:
        rows = self._records.run_records(FIX_ATTEMPTS_COLLECTION, run_id)
        return sorted(
            (FixAttempt.model_validate(row) for row in rows), key=lambda a: a.attempt_number
        )

    def _require_backend(self) -> ExecutionBackend:
        if self._backend is None:
            raise OrchestratorError("No execution backend configured")
        return self._backend

    def _require_bundle(self, run_id: str, attempt: int) -> EvidenceBundle:
        bundle = self._collector.load(run_id, attempt)
        if bundle is None:
            raise OrchestratorError(f"No evidence bundle for {run_id} attempt {attempt}")
        return bundle

    def _load(self, collection: str, key: str, model: type[BaseModel]) -> Any:
        data = self._records.get(collection, key)
        return model.model_validate(data) if data else None

    def _latest(self, collection: str, run_id: str, model: type[BaseModel]) -> Any:
        rows = self._records.run_records(collection, run_id)
        return model.model_validate(rows[-1]) if rows else None

    @staticmethod
    def _with_result(
        state: WorkflowState,
        stage: WorkflowStage,
        result: dict[str, Any],
    ) -> dict[str, dict[str, Any]]:
        return {**state.stage_results, stage.value: result}

    def _save(self, state: WorkflowState) -> None:
        self._states.save(state)

    def _record(self, event: JournalEvent) -> None:
        if self._journal is None:
            return
        try:
            self._journal.record(event)
        except OSError as e:
            logger.error(f"[{event.run_id}] Journal write failed: {e}")
