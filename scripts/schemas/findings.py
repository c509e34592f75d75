"""
Finding Schemas - Typed models for plugin output and normalized reports.

Plugins emit ``Finding`` objects (raw, possibly duplicated across
plugins).  The normalizer turns them into ``NormalizedFinding`` records
that carry a deterministic fingerprint id and collapse duplicates.

Hierarchy:
    EvidencePointer     - file / url / log reference attached to a Finding
    Finding             - raw plugin output, immutable once emitted
    NormalizedLocation  - file + line span derived from file evidence
    NormalizedEvidence  - deduplicated evidence pointer strings
    NormalizedFinding   - canonical, fingerprinted record used in reports
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator

# Raw plugin severities, lowest first.
SEVERITIES: Tuple[str, ...] = ("info", "minor", "major", "blocker")

# Normalized severities, lowest first.  ``blocker`` becomes ``critical``.
NORMALIZED_SEVERITIES: Tuple[str, ...] = ("info", "minor", "major", "critical")

PRECISIONS: Tuple[str, ...] = ("file", "line", "range")

EVIDENCE_TYPES = {"file", "url", "log"}


# ---------------------------------------------------------------------------
# Raw plugin output
# ---------------------------------------------------------------------------


class EvidencePointer(BaseModel):
    """Reference to the artefact that backs a finding.

    ``lines`` is an inclusive ``(start, end)`` pair and only meaningful for
    ``file`` evidence.
    """

    type: str
    ref: str
    lines: Optional[Tuple[int, int]] = None

    model_config = {"frozen": True}

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        if v not in EVIDENCE_TYPES:
            raise ValueError(
                f"evidence type must be one of {sorted(EVIDENCE_TYPES)}, got '{v}'"
            )
        return v

    @field_validator("lines")
    @classmethod
    def validate_lines(
        cls, v: Optional[Tuple[int, int]]
    ) -> Optional[Tuple[int, int]]:
        if v is not None and v[0] > v[1]:
            raise ValueError(f"lines start {v[0]} is after end {v[1]}")
        return v

    def to_pointer_string(self) -> str:
        """Render as ``ref`` or ``ref#L<start>-<end>``."""
        if self.lines:
            return f"{self.ref}#L{self.lines[0]}-{self.lines[1]}"
        return self.ref


class Finding(BaseModel):
    """One diagnostic observation emitted by a plugin.

    ``source`` is optional; when a plugin leaves it unset the normalizer
    falls back to the plugin id that produced the finding.
    """

    id: str
    area: str
    severity: str
    title: str
    description: str = ""
    evidence: List[EvidencePointer] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    recommendation: Optional[str] = None
    source: Optional[str] = None

    model_config = {"frozen": True, "extra": "allow"}

    @field_validator("severity")
    @classmethod
    def validate_severity(cls, v: str) -> str:
        """Ensure severity is one of the plugin severity levels."""
        if v not in SEVERITIES:
            raise ValueError(f"severity must be one of {SEVERITIES}, got '{v}'")
        return v


# ---------------------------------------------------------------------------
# Normalized records
# ---------------------------------------------------------------------------


class NormalizedLocation(BaseModel):
    """File plus optional inclusive line span."""

    file: Optional[str] = None
    start: Optional[int] = None
    end: Optional[int] = None

    model_config = {"frozen": True}


class NormalizedEvidence(BaseModel):
    pointers: List[str] = Field(default_factory=list)

    model_config = {"frozen": True}


class NormalizedFinding(BaseModel):
    """Canonical, deduplicated finding.

    ``id`` is the ``nf_<16 hex>`` fingerprint computed by the normalizer;
    the plugin-supplied id survives as ``original_id``.  Instances are
    never mutated after insertion: merges build a new record.
    """

    id: str
    source: str
    rule_id: Optional[str] = None
    title: str
    description: str = ""
    severity: str
    precision: str = "file"
    location: Optional[NormalizedLocation] = None
    tags: List[str] = Field(default_factory=list)
    evidence: Optional[NormalizedEvidence] = None
    recommendation: Optional[str] = None
    original_id: Optional[str] = None
    area: Optional[str] = None
    confidence: Optional[float] = None

    model_config = {"frozen": True}

    @field_validator("severity")
    @classmethod
    def validate_severity(cls, v: str) -> str:
        if v not in NORMALIZED_SEVERITIES:
            raise ValueError(
                f"severity must be one of {NORMALIZED_SEVERITIES}, got '{v}'"
            )
        return v

    @field_validator("precision")
    @classmethod
    def validate_precision(cls, v: str) -> str:
        if v not in PRECISIONS:
            raise ValueError(f"precision must be one of {PRECISIONS}, got '{v}'")
        return v

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")
