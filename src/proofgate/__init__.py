"""
Proofgate: Evidence-Based Verification Gate for Automated Tests.

Refuses to trust a test executor's own claim of success. Every run is
executed through an external service, its evidence is collected and
content-addressed, checked for red flags and re-examined by an
independent verifier. Rejected runs are diagnosed and repaired on an
escalating model tier ladder, with outcomes remembered across runs.

Key Features:
- Immutable, content-addressed evidence bundles
- Deterministic red flag detection (missing evidence, timing, consistency)
- Independent verification with a 0-100 confidence score
- Root cause analysis and strategy selection informed by past fixes
- Crash-safe, resumable per-run state machine

Example:
    from proofgate import TestOrchestrator

    orchestrator = TestOrchestrator(backend)
    await orchestrator.start_verification("run-1", "commit:abc123", ["login works"])
    state = await orchestrator.wait("run-1")
"""

from proofgate.orchestrator import TestOrchestrator
from proofgate.version import __version__

__all__ = [
    "__version__",
    "TestOrchestrator",
]
