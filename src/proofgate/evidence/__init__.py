"""
Proofgate - Evidence Collection

Turns raw execution output into immutable, content-addressed evidence
bundles persisted through the storage layer.
"""

from proofgate.evidence.collector import (
    BUNDLES_COLLECTION,
    ERROR_LINE_PATTERN,
    EvidenceCollector,
)

__all__ = [
    "BUNDLES_COLLECTION",
    "ERROR_LINE_PATTERN",
    "EvidenceCollector",
]
