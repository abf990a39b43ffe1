"""
Exception hierarchy for proofgate.

Every error raised by the pipeline derives from ProofgateError so callers
can catch the whole family at the API boundary. The branches follow the
failure taxonomy the orchestrator classifies at each stage boundary:

- EvidenceError: the execution produced no usable evidence
- RecordStoreError: keyed persistence problems (immutability, lookups)
- StatePersistenceError: WorkflowState could not be written (fatal)
- StrategyExhaustedError: no fix strategy left to try
- OrchestratorError: API misuse or service shutdown
- ExecutionBackendError: the external execution service misbehaved
"""

from __future__ import annotations


class ProofgateError(Exception):
    """Base exception for all proofgate errors."""

    pass


# =============================================================================
# Evidence errors
# =============================================================================


class EvidenceError(ProofgateError):
    """Base exception for evidence collection failures."""

    def __init__(self, message: str, run_id: str | None = None, attempt: int | None = None):
        super().__init__(message)
        self.run_id = run_id
        self.attempt = attempt


class MissingOutcomeError(EvidenceError):
    """Raised when an execution did not report a determinable outcome.

    A missing outcome is treated as a failed execution, never dropped.
    """

    pass


class ArtifactStorageError(EvidenceError):
    """Raised when an artifact cannot be durably persisted."""

    pass


# =============================================================================
# Record store errors
# =============================================================================


class RecordStoreError(ProofgateError):
    """Base exception for keyed record store failures."""

    def __init__(self, message: str, collection: str = "", key: str = ""):
        super().__init__(message)
        self.collection = collection
        self.key = key


class RecordExistsError(RecordStoreError):
    """Raised when writing an immutable record that already exists."""

    pass


class RecordNotFoundError(RecordStoreError):
    """Raised when a requested record does not exist."""

    pass


class StatePersistenceError(ProofgateError):
    """Raised when WorkflowState cannot be persisted.

    This is the only error that is fatal to the whole service: without
    reliable state the orchestrator must stop accepting runs.
    """

    pass


# =============================================================================
# Fixing errors
# =============================================================================


class StrategyExhaustedError(ProofgateError):
    """Raised when the selector has no remaining candidate strategy."""

    def __init__(self, message: str = "no more strategies available", failed: list[str] | None = None):
        super().__init__(message)
        self.failed = failed or []


# =============================================================================
# Orchestrator errors
# =============================================================================


class InvalidTransitionError(ProofgateError):
    """Raised on an illegal workflow stage transition."""

    pass


class OrchestratorError(ProofgateError):
    """Base exception for orchestrator API errors."""

    pass


class RunNotFoundError(OrchestratorError):
    """Raised when a run id is unknown."""

    pass


class OrchestratorUnavailableError(OrchestratorError):
    """Raised when the orchestrator stopped accepting new runs."""

    pass


# =============================================================================
# Execution backend errors
# =============================================================================


class ExecutionBackendError(ProofgateError):
    """Base exception for execution backend failures."""

    pass


class BackendUnavailableError(ExecutionBackendError):
    """Raised when the execution service cannot be reached."""

    pass


class BackendResponseError(ExecutionBackendError):
    """Raised when the execution service returns an error response."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
