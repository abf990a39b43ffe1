"""
Proofgate - Orchestrator

Per-run state machine, its persistence and journal, the concurrency
ceiling and the execution backend seam.
"""

from proofgate.orchestrator.backend import (
    ExecutionBackend,
    HttpExecutionBackend,
    parse_execution_output,
)
from proofgate.orchestrator.journal import (
    FixAttemptEvent,
    JournalEvent,
    RunCompleteEvent,
    RunJournal,
    RunStartEvent,
    StageErrorEvent,
    StageTransitionEvent,
)
from proofgate.orchestrator.orchestrator import (
    FIX_ATTEMPTS_COLLECTION,
    RED_FLAGS_COLLECTION,
    ROOT_CAUSE_COLLECTION,
    VERIFICATION_COLLECTION,
    TestOrchestrator,
)
from proofgate.orchestrator.resources import ResourceManager
from proofgate.orchestrator.state import (
    ABORT_STAGES,
    STATES_COLLECTION,
    TRANSITIONS,
    WorkflowStateStore,
    allowed_transitions,
    apply_transition,
    validate_transition,
)

__all__ = [
    # Orchestrator
    "TestOrchestrator",
    "FIX_ATTEMPTS_COLLECTION",
    "RED_FLAGS_COLLECTION",
    "ROOT_CAUSE_COLLECTION",
    "VERIFICATION_COLLECTION",
    # State
    "ABORT_STAGES",
    "STATES_COLLECTION",
    "TRANSITIONS",
    "WorkflowStateStore",
    "allowed_transitions",
    "apply_transition",
    "validate_transition",
    # Journal
    "JournalEvent",
    "RunStartEvent",
    "StageTransitionEvent",
    "StageErrorEvent",
    "FixAttemptEvent",
    "RunCompleteEvent",
    "RunJournal",
    # Resources
    "ResourceManager",
    # Backend
    "ExecutionBackend",
    "HttpExecutionBackend",
    "parse_execution_output",
]
