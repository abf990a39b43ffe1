"""
Evidence Integrity Pass.

Verifies that the artifacts a bundle references are present in the
artifact store, byte-identical to what was hashed at collection time,
captured in a plausible order, and of a sane size.

Format problems (e.g. a screenshot without an image signature) are
reported as warnings only: they reduce trust in the artifact but do not
prove tampering.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from proofgate.errors import RecordNotFoundError
from proofgate.models.base import ArtifactKind
from proofgate.models.evidence import ArtifactRef, EvidenceBundle, ScreenshotDetail
from proofgate.storage import ArtifactStore, content_hash

logger = logging.getLogger(__name__)

# Image signatures accepted for screenshots
IMAGE_SIGNATURES: tuple[bytes, ...] = (
    b"\x89PNG\r\n\x1a\n",
    b"\xff\xd8\xff",
)

# Screenshots smaller than this are likely truncated
MIN_SCREENSHOT_BYTES = 1024
MAX_SCREENSHOT_BYTES = 5 * 1024 * 1024

# Allowed clock skew between artifact capture and bundle creation
CLOCK_SKEW = timedelta(seconds=5)


@dataclass
class IntegrityResult:
    """Outcome of the integrity pass.

    Attributes:
        files_exist: Every referenced artifact is stored
        hashes_match: Stored bytes hash to the recorded content hash
        timestamps_sequential: Capture times are in a plausible order
        sizes_reasonable: No artifact is empty or truncated
        errors: Problems that fail the pass
        warnings: Problems that do not fail the pass
    """

    files_exist: bool = True
    hashes_match: bool = True
    timestamps_sequential: bool = True
    sizes_reasonable: bool = True
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return (
            self.files_exist
            and self.hashes_match
            and self.timestamps_sequential
            and self.sizes_reasonable
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "passed": self.passed,
            "files_exist": self.files_exist,
            "hashes_match": self.hashes_match,
            "timestamps_sequential": self.timestamps_sequential,
            "sizes_reasonable": self.sizes_reasonable,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }


class IntegrityChecker:
    """Checks stored artifacts against their bundle references."""

    def __init__(self, artifact_store: ArtifactStore) -> None:
        self._store = artifact_store

    def check(self, bundle: EvidenceBundle) -> IntegrityResult:
        """Run the integrity pass over every artifact in a bundle."""
        result = IntegrityResult()

        for ref in bundle.artifacts:
            content = self._read(ref, result)
            if content is None:
                continue
            self._check_hash(ref, content, result)
            self._check_size(ref, content, result)
            self._check_format(ref, content, result)

        self._check_timestamps(bundle, result)

        if result.errors:
            logger.warning(
                f"Integrity pass failed for {bundle.bundle_id[:12]}: {len(result.errors)} error(s)"
            )
        return result

    def _read(self, ref: ArtifactRef, result: IntegrityResult) -> bytes | None:
        try:
            return self._store.get(ref.content_hash)
        except RecordNotFoundError:
            result.files_exist = False
            result.errors.append(f"Artifact file does not exist: {ref.path}")
            return None

    @staticmethod
    def _check_hash(ref: ArtifactRef, content: bytes, result: IntegrityResult) -> None:
        if content_hash(content) != ref.content_hash:
            result.hashes_match = False
            result.errors.append(f"Artifact content does not match its hash: {ref.path}")
        elif len(content) != ref.size_bytes:
            result.hashes_match = False
            result.errors.append(
                f"Artifact size {len(content)} differs from recorded {ref.size_bytes}: {ref.path}"
            )

    @staticmethod
    def _check_size(ref: ArtifactRef, content: bytes, result: IntegrityResult) -> None:
        size = len(content)
        if size == 0:
            # Empty logs are judged by the red flag detector
            if ref.kind == ArtifactKind.LOG:
                result.warnings.append(f"Log artifact is empty: {ref.path}")
            else:
                result.sizes_reasonable = False
                result.errors.append(f"{ref.kind.value} artifact is empty: {ref.path}")
            return

        if ref.kind == ArtifactKind.SCREENSHOT:
            if size < MIN_SCREENSHOT_BYTES:
                result.warnings.append(f"Screenshot is very small ({size} bytes): {ref.path}")
            elif size > MAX_SCREENSHOT_BYTES:
                result.warnings.append(f"Screenshot is very large ({size} bytes): {ref.path}")

    @staticmethod
    def _check_format(ref: ArtifactRef, content: bytes, result: IntegrityResult) -> None:
        if ref.kind == ArtifactKind.SCREENSHOT:
            if not content.startswith(IMAGE_SIGNATURES):
                result.warnings.append(f"Screenshot is not a PNG or JPEG image: {ref.path}")
        elif ref.kind in (ArtifactKind.TRACE, ArtifactKind.COVERAGE):
            try:
                json.loads(content)
            except ValueError:
                result.warnings.append(f"{ref.kind.value} artifact is not valid JSON: {ref.path}")

    @staticmethod
    def _check_timestamps(bundle: EvidenceBundle, result: IntegrityResult) -> None:
        """Before-screenshots precede after-screenshots; nothing postdates the bundle."""
        latest_allowed = bundle.created_at + CLOCK_SKEW
        for ref in bundle.artifacts:
            if ref.captured_at > latest_allowed:
                result.timestamps_sequential = False
                result.errors.append(
                    f"Artifact captured after its bundle was created: {ref.path} "
                    f"({ref.captured_at.isoformat()})"
                )

        screenshots = [
            (ref, ref.detail)
            for ref in bundle.artifacts
            if isinstance(ref.detail, ScreenshotDetail)
        ]
        befores = [ref for ref, d in screenshots if d.phase == "before"]
        afters = [ref for ref, d in screenshots if d.phase == "after"]
        for before in befores:
            for after in afters:
                if after.captured_at < before.captured_at:
                    result.timestamps_sequential = False
                    result.errors.append(
                        f"Timestamp out of sequence: 'after' screenshot {after.path} "
                        f"precedes 'before' screenshot {before.path}"
                    )
