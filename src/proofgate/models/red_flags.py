"""
Red Flag Data Models.

A RedFlag is a severity-tagged finding that evidence is missing,
inconsistent, or unverified. Flags are never mutated once created; the
RedFlagReport groups all flags raised for one evidence bundle.
"""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field, computed_field

from proofgate.models.base import DetectorVerdict, FlagCategory, Severity


class RedFlag(BaseModel):
    """A single red flag raised against an evidence bundle.

    Attributes:
        severity: How serious the finding is
        category: What kind of deception/incompleteness was found
        check: Identifier of the check that raised the flag
        description: Human-readable explanation
        artifact_hashes: Content hashes of the artifacts that triggered it
        details: Structured check-specific data
    """

    model_config = ConfigDict(frozen=True)

    severity: Severity
    category: FlagCategory
    check: str = Field(..., description="Check identifier, e.g. missing_evidence.claimed_action")
    description: str
    artifact_hashes: tuple[str, ...] = ()
    details: dict[str, str | int | float | bool | None] = Field(default_factory=dict)

    @property
    def is_critical(self) -> bool:
        return self.severity == Severity.CRITICAL


class RedFlagReport(BaseModel):
    """All red flags found for one evidence bundle.

    Attributes:
        run_id: Owning run
        attempt: Execution attempt the bundle belongs to
        bundle_id: Bundle the flags refer to
        flags: Flags in deterministic order (most severe first)
        checks_run: Names of the checks that ran
        detected_at: When detection finished
    """

    model_config = ConfigDict(frozen=True)

    run_id: str
    attempt: int = Field(ge=1)
    bundle_id: str
    flags: tuple[RedFlag, ...] = ()
    checks_run: tuple[str, ...] = ()
    detected_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @computed_field
    @property
    def severity_summary(self) -> dict[str, int]:
        """Count of flags per severity."""
        summary = {s.value: 0 for s in Severity}
        for flag in self.flags:
            summary[flag.severity.value] += 1
        return summary

    @computed_field
    @property
    def verdict(self) -> DetectorVerdict:
        """Detector verdict: any critical fails, any high needs review."""
        if any(f.severity == Severity.CRITICAL for f in self.flags):
            return DetectorVerdict.FAIL
        if any(f.severity == Severity.HIGH for f in self.flags):
            return DetectorVerdict.REVIEW
        return DetectorVerdict.PASS

    @computed_field
    @property
    def recommendation(self) -> str:
        """Short operator-facing recommendation."""
        summary = self.severity_summary
        if self.verdict == DetectorVerdict.FAIL:
            return (
                f"REJECT: {summary['critical']} critical red flag(s) detected. "
                "The evidence does not support the claimed result."
            )
        if self.verdict == DetectorVerdict.REVIEW:
            return (
                f"REVIEW: {summary['high']} high-severity red flag(s) detected. "
                "Independent verification should weigh these heavily."
            )
        if self.flags:
            return f"PROCEED: {len(self.flags)} minor red flag(s) noted."
        return "PROCEED: no red flags detected."

    @property
    def has_critical(self) -> bool:
        return any(f.is_critical for f in self.flags)

    @property
    def max_severity(self) -> Severity | None:
        """Highest severity present, or None when there are no flags."""
        if not self.flags:
            return None
        return max((f.severity for f in self.flags), key=lambda s: s.rank)
