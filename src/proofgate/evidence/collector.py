"""
Evidence Collector.

Normalizes the raw output of one test execution into an immutable,
content-addressed EvidenceBundle.

Contract:
- An execution without a determinable outcome is still recorded: its
  artifacts and a failed bundle marked `outcome_missing` are persisted,
  then MissingOutcomeError is raised (fail closed, never silently dropped).
- Every artifact is persisted before the bundle is written; failing to
  persist any artifact aborts the whole attempt (no partial bundles).
- A bundle is written once per (run id, attempt) and never edited.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
from datetime import UTC, datetime

from pydantic import ValidationError

from proofgate.errors import ArtifactStorageError, MissingOutcomeError, RecordExistsError
from proofgate.models.evidence import (
    ArtifactDetail,
    ArtifactRef,
    EvidenceBundle,
    ExecutionOutcome,
    LogDetail,
    RawArtifact,
    RawExecutionOutput,
    TraceDetail,
    TraceEntry,
)
from proofgate.storage import ArtifactStore, RecordStore, record_key

logger = logging.getLogger(__name__)

BUNDLES_COLLECTION = "evidence_bundles"

MISSING_OUTCOME_MESSAGE = "Execution produced no determinable outcome"

# Lines in a log that indicate an error was printed
ERROR_LINE_PATTERN = re.compile(
    r"\b(error|exception|traceback|fatal|uncaught|failed|failure)\b",
    re.IGNORECASE,
)


def _as_utc(value: datetime) -> datetime:
    """Treat naive timestamps as UTC."""
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


class EvidenceCollector:
    """Builds and persists evidence bundles.

    Usage:
        collector = EvidenceCollector(artifact_store, record_store)
        bundle = collector.collect(raw_output, run_id="run-1", attempt=1)
    """

    def __init__(self, artifact_store: ArtifactStore, record_store: RecordStore) -> None:
        self._artifacts = artifact_store
        self._records = record_store

    @property
    def artifact_store(self) -> ArtifactStore:
        return self._artifacts

    def collect(self, raw: RawExecutionOutput, run_id: str, attempt: int) -> EvidenceBundle:
        """Normalize raw output into a persisted EvidenceBundle.

        Args:
            raw: Raw execution output from the execution backend
            run_id: Owning run
            attempt: Execution attempt number (1-based)

        Returns:
            The persisted bundle

        Raises:
            MissingOutcomeError: The execution reported no outcome (after the
                failed bundle was persisted)
            ArtifactStorageError: An artifact or the bundle could not be persisted
            RecordExistsError: A bundle already exists for this attempt
        """
        refs = [self._store_artifact(artifact, run_id, attempt) for artifact in raw.artifacts]
        outcome = raw.outcome or ExecutionOutcome(passed=False, error_message=MISSING_OUTCOME_MESSAGE)

        bundle = EvidenceBundle(
            bundle_id=self._bundle_id(run_id, attempt, refs),
            run_id=run_id,
            attempt=attempt,
            execution_kind=raw.execution_kind,
            test_name=raw.test_name,
            artifacts=tuple(refs),
            outcome=outcome,
            claimed_actions=tuple(raw.claimed_actions),
            change_ref=raw.change_ref,
            outcome_missing=raw.outcome is None,
        )

        try:
            self._records.create(
                BUNDLES_COLLECTION,
                record_key(run_id, attempt),
                bundle.model_dump(mode="json"),
            )
        except RecordExistsError:
            raise
        except OSError as e:
            raise ArtifactStorageError(
                f"Failed to persist evidence bundle: {e}", run_id=run_id, attempt=attempt
            ) from e

        if bundle.outcome_missing:
            logger.warning(
                f"Recorded bundle {bundle.bundle_id[:12]} for {run_id} attempt {attempt} "
                f"without an outcome: {len(refs)} artifact(s) kept"
            )
            raise MissingOutcomeError(
                f"Execution for run {run_id} attempt {attempt} produced no determinable outcome",
                run_id=run_id,
                attempt=attempt,
            )

        logger.info(
            f"Collected evidence bundle {bundle.bundle_id[:12]} for {run_id} "
            f"attempt {attempt}: {len(refs)} artifact(s), passed={outcome.passed}"
        )
        return bundle

    def load(self, run_id: str, attempt: int) -> EvidenceBundle | None:
        """Load a persisted bundle, None if it does not exist."""
        data = self._records.get(BUNDLES_COLLECTION, record_key(run_id, attempt))
        if data is None:
            return None
        return EvidenceBundle.model_validate(data)

    def history(
        self,
        run_id: str,
        before_attempt: int | None = None,
        include_missing: bool = False,
    ) -> list[EvidenceBundle]:
        """Bundles of a run in attempt order.

        Args:
            run_id: Run to list
            before_attempt: Only include attempts strictly before this one
            include_missing: Also include bundles recorded without an outcome
        """
        bundles = [
            EvidenceBundle.model_validate(data)
            for data in self._records.run_records(BUNDLES_COLLECTION, run_id)
        ]
        if not include_missing:
            bundles = [b for b in bundles if not b.outcome_missing]
        if before_attempt is not None:
            bundles = [b for b in bundles if b.attempt < before_attempt]
        return sorted(bundles, key=lambda b: b.attempt)

    def read_artifact(self, ref: ArtifactRef) -> bytes:
        """Read the stored bytes of an artifact."""
        return self._artifacts.get(ref.content_hash)

    def _store_artifact(self, artifact: RawArtifact, run_id: str, attempt: int) -> ArtifactRef:
        """Persist one artifact and build its reference."""
        try:
            digest, path = self._artifacts.put(artifact.content)
        except OSError as e:
            raise ArtifactStorageError(
                f"Failed to persist {artifact.detail.kind} artifact: {e}",
                run_id=run_id,
                attempt=attempt,
            ) from e

        return ArtifactRef(
            content_hash=digest,
            path=path,
            captured_at=_as_utc(artifact.captured_at),
            size_bytes=len(artifact.content),
            label=artifact.label,
            detail=self._normalize_detail(artifact),
        )

    def _normalize_detail(self, artifact: RawArtifact) -> ArtifactDetail:
        """Fill in detail fields derivable from the artifact bytes."""
        detail = artifact.detail

        if isinstance(detail, LogDetail) and detail.line_count is None:
            text = artifact.content.decode("utf-8", errors="replace")
            lines = [line for line in text.splitlines() if line.strip()]
            error_lines = detail.error_lines or tuple(
                line for line in lines if ERROR_LINE_PATTERN.search(line)
            )
            return detail.model_copy(
                update={"line_count": len(lines), "error_lines": tuple(error_lines)}
            )

        if isinstance(detail, TraceDetail) and not detail.entries and artifact.content:
            try:
                payload = json.loads(artifact.content)
                items = payload.get("entries", []) if isinstance(payload, dict) else payload
                entries = tuple(TraceEntry.model_validate(item) for item in items)
                exit_code = payload.get("exit_code") if isinstance(payload, dict) else None
            except (ValueError, TypeError, AttributeError, ValidationError) as e:
                logger.debug(f"Trace content is not a parseable entry list: {e}")
                return detail
            return TraceDetail(
                entries=entries,
                exit_code=detail.exit_code if detail.exit_code is not None else exit_code,
            )

        return detail

    @staticmethod
    def _bundle_id(run_id: str, attempt: int, refs: list[ArtifactRef]) -> str:
        """Deterministic bundle id over run, attempt and artifact hashes."""
        digest = hashlib.sha256(f"{run_id}:{attempt}".encode())
        for ref in refs:
            digest.update(ref.content_hash.encode())
        return digest.hexdigest()
