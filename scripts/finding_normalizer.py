#!/usr/bin/env python3
"""
Finding Normalizer for the diagnostics engine

Turns heterogeneous raw plugin output into canonical, deduplicated
``NormalizedFinding`` records.

Identity is a deterministic fingerprint, not the plugin-supplied id::

    nf_<first 16 hex chars of sha256(json({source, rule_id, title,
                                           file, start, end}))>

Findings that share a fingerprint are the same logical issue and collapse
into one record:

  - **primary**        : higher severity wins, ties keep the first-seen record
  - **tags**           : union of both tag sets
  - **evidence**       : union of both pointer sets
  - **recommendation** : primary's, falling back to secondary's
  - **location**       : the more precise one (range > line > file > none)

Output is always sorted by fingerprint id so identical input yields
identical output.
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Dict, Iterable, List, Optional, Sequence, Union

from schemas.findings import (
    Finding,
    NormalizedEvidence,
    NormalizedFinding,
    NormalizedLocation,
)

logger = logging.getLogger(__name__)

__all__ = [
    "normalize_findings",
    "normalize_finding",
    "fingerprint_finding",
    "fold_findings",
    "map_severity",
    "severity_rank",
    "derive_location",
    "determine_precision",
]

# ---------------------------------------------------------------------------
# Severity handling
# ---------------------------------------------------------------------------

SEVERITY_MAP: Dict[str, str] = {
    "blocker": "critical",
    "critical": "critical",
    "major": "major",
    "minor": "minor",
    "info": "info",
}

SEVERITY_WEIGHTS: Dict[str, int] = {
    "critical": 3,
    "major": 2,
    "minor": 1,
    "info": 0,
}


def map_severity(severity: str) -> str:
    """Map a plugin severity onto the normalized scale (unknown -> info)."""
    return SEVERITY_MAP.get(str(severity).lower(), "info")


def severity_rank(severity: str) -> int:
    return SEVERITY_WEIGHTS.get(map_severity(severity), 0)


# ---------------------------------------------------------------------------
# Location / precision
# ---------------------------------------------------------------------------


def derive_location(finding: Finding) -> Optional[NormalizedLocation]:
    """Build a location from the first ``file`` evidence pointer.

    A single line (``lines`` absent on one side) yields ``start == end``.
    """
    for pointer in finding.evidence:
        if pointer.type != "file":
            continue
        if pointer.lines:
            start, end = pointer.lines
            return NormalizedLocation(file=pointer.ref, start=start, end=end)
        return NormalizedLocation(file=pointer.ref)
    return None


def determine_precision(location: Optional[NormalizedLocation]) -> str:
    if location is None or (location.start is None and location.end is None):
        return "file"
    if location.start is not None and location.end is not None:
        return "line" if location.start == location.end else "range"
    return "line"


def _location_score(location: Optional[NormalizedLocation]) -> int:
    if location is None:
        return -1
    if location.start is not None and location.end is not None:
        return 3 if location.start != location.end else 2
    if location.start is not None or location.end is not None:
        return 1
    if location.file:
        return 0
    return -1


# ---------------------------------------------------------------------------
# Fingerprinting
# ---------------------------------------------------------------------------


def fingerprint_finding(
    source: str,
    title: str,
    rule_id: Optional[str] = None,
    location: Optional[NormalizedLocation] = None,
) -> str:
    """Return the stable ``nf_<16 hex>`` identity of a finding."""
    payload = {
        "source": source,
        "ruleId": rule_id,
        "title": title,
        "file": location.file if location else None,
        "start": location.start if location else None,
        "end": location.end if location else None,
    }
    encoded = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    digest = hashlib.sha256(encoded.encode("utf-8")).hexdigest()
    return f"nf_{digest[:16]}"


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def _coerce_finding(raw: Union[Finding, dict]) -> Finding:
    if isinstance(raw, Finding):
        return raw
    return Finding.model_validate(raw)


def normalize_finding(
    raw: Union[Finding, dict],
    fallback_source: Optional[str] = None,
) -> NormalizedFinding:
    """Normalize one raw finding without deduplication."""
    finding = _coerce_finding(raw)
    source = finding.source or fallback_source or finding.area or "unknown"
    extras = finding.model_extra or {}
    rule_id = extras.get("rule_id") or extras.get("ruleId")
    location = derive_location(finding)
    pointers = _unique([p.to_pointer_string() for p in finding.evidence])

    return NormalizedFinding(
        id=fingerprint_finding(source, finding.title, rule_id, location),
        source=source,
        rule_id=rule_id,
        title=finding.title,
        description=finding.description,
        severity=map_severity(finding.severity),
        precision=determine_precision(location),
        location=location,
        tags=_unique(finding.tags),
        evidence=NormalizedEvidence(pointers=pointers) if pointers else None,
        recommendation=finding.recommendation,
        original_id=finding.id,
        area=finding.area,
        confidence=finding.confidence,
    )


def normalize_findings(
    raw: Iterable[Union[Finding, dict]],
    fallback_source: Optional[str] = None,
) -> List[NormalizedFinding]:
    """Normalize and deduplicate *raw*, sorted by fingerprint id."""
    merged: Dict[str, NormalizedFinding] = {}
    count = 0
    for item in raw:
        count += 1
        normalized = normalize_finding(item, fallback_source)
        existing = merged.get(normalized.id)
        merged[normalized.id] = (
            normalized if existing is None else merge_findings(existing, normalized)
        )

    if count != len(merged):
        logger.debug(
            "Normalization collapsed %d raw findings into %d", count, len(merged)
        )
    return sorted(merged.values(), key=lambda f: f.id)


def fold_findings(
    existing: Sequence[NormalizedFinding],
    incoming: Iterable[NormalizedFinding],
) -> List[NormalizedFinding]:
    """Merge already-normalized *incoming* records into *existing*.

    Records already present count as first-seen for tie-breaking.
    """
    merged: Dict[str, NormalizedFinding] = {f.id: f for f in existing}
    for finding in incoming:
        current = merged.get(finding.id)
        merged[finding.id] = (
            finding if current is None else merge_findings(current, finding)
        )
    return sorted(merged.values(), key=lambda f: f.id)


# ---------------------------------------------------------------------------
# Merging
# ---------------------------------------------------------------------------


def merge_findings(
    first: NormalizedFinding, second: NormalizedFinding
) -> NormalizedFinding:
    """Collapse two records sharing a fingerprint into a new record."""
    if SEVERITY_WEIGHTS[second.severity] > SEVERITY_WEIGHTS[first.severity]:
        primary, secondary = second, first
    else:
        primary, secondary = first, second

    pointers = _unique(
        (primary.evidence.pointers if primary.evidence else [])
        + (secondary.evidence.pointers if secondary.evidence else [])
    )
    if _location_score(secondary.location) > _location_score(primary.location):
        location = secondary.location
    else:
        location = primary.location

    return primary.model_copy(
        update={
            "tags": _unique(primary.tags + secondary.tags),
            "evidence": NormalizedEvidence(pointers=pointers) if pointers else None,
            "recommendation": primary.recommendation or secondary.recommendation,
            "location": location,
            "precision": determine_precision(location),
        }
    )


def _unique(values: Iterable[str]) -> List[str]:
    seen: Dict[str, None] = {}
    for value in values:
        if value:
            seen.setdefault(value, None)
    return list(seen)
