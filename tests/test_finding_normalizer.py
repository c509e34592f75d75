"""
Tests for the Finding Normalizer

Covers fingerprinting, severity mapping, location/precision derivation,
merge policy for duplicate findings, and deterministic ordering.
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "scripts"))

from finding_normalizer import (
    derive_location,
    determine_precision,
    fingerprint_finding,
    fold_findings,
    map_severity,
    normalize_finding,
    normalize_findings,
    severity_rank,
)
from schemas.findings import EvidencePointer, Finding, NormalizedLocation


def _finding(**overrides):
    base = {
        "id": "sse.1",
        "area": "streaming",
        "severity": "minor",
        "title": "SSE endpoint not streaming",
        "description": "No events within 3s",
    }
    base.update(overrides)
    return Finding(**base)


# ============================================================================
# Fingerprinting
# ============================================================================


class TestFingerprint:
    def test_format(self):
        fp = fingerprint_finding("streaming", "SSE endpoint not streaming")
        assert fp.startswith("nf_")
        assert len(fp) == 19
        int(fp[3:], 16)

    def test_stable_across_calls(self):
        loc = NormalizedLocation(file="server.py", start=3, end=9)
        assert fingerprint_finding("a", "t", "r1", loc) == fingerprint_finding("a", "t", "r1", loc)

    def test_sensitive_to_identity_fields(self):
        base = fingerprint_finding("a", "title")
        assert fingerprint_finding("b", "title") != base
        assert fingerprint_finding("a", "other") != base
        assert fingerprint_finding("a", "title", rule_id="r") != base
        assert fingerprint_finding("a", "title", location=NormalizedLocation(file="x")) != base

    def test_ignores_plugin_supplied_id(self):
        one = normalize_finding(_finding(id="plugin-a.1"), "check")
        two = normalize_finding(_finding(id="plugin-b.7"), "check")
        assert one.id == two.id
        assert one.original_id == "plugin-a.1"


# ============================================================================
# Field derivation
# ============================================================================


class TestDerivation:
    def test_blocker_maps_to_critical(self):
        assert map_severity("blocker") == "critical"
        assert map_severity("major") == "major"
        assert map_severity("nonsense") == "info"

    def test_severity_rank_ordering(self):
        assert severity_rank("blocker") > severity_rank("major") > severity_rank("minor") > severity_rank("info")

    def test_source_precedence(self):
        assert normalize_finding(_finding(source="explicit"), "fallback").source == "explicit"
        assert normalize_finding(_finding(), "fallback").source == "fallback"
        assert normalize_finding(_finding(), None).source == "streaming"

    def test_rule_id_from_extra_field(self):
        nf = normalize_finding(_finding(rule_id="SSE-001", tags=["sse"]), "check")
        assert nf.rule_id == "SSE-001"
        assert normalize_finding(_finding(tags=["sse"]), "check").rule_id is None

    def test_location_from_first_file_pointer(self):
        finding = _finding(
            evidence=[
                EvidencePointer(type="url", ref="http://localhost/sse"),
                EvidencePointer(type="file", ref="src/sse.py", lines=(10, 12)),
                EvidencePointer(type="file", ref="src/other.py"),
            ]
        )
        loc = derive_location(finding)
        assert (loc.file, loc.start, loc.end) == ("src/sse.py", 10, 12)

    def test_no_file_evidence_means_no_location(self):
        assert derive_location(_finding(evidence=[EvidencePointer(type="log", ref="x")])) is None

    def test_precision(self):
        assert determine_precision(None) == "file"
        assert determine_precision(NormalizedLocation(file="a")) == "file"
        assert determine_precision(NormalizedLocation(file="a", start=4, end=4)) == "line"
        assert determine_precision(NormalizedLocation(file="a", start=4, end=9)) == "range"

    def test_evidence_rendered_as_pointer_strings(self):
        nf = normalize_finding(
            _finding(
                evidence=[
                    EvidencePointer(type="file", ref="a.py", lines=(1, 2)),
                    EvidencePointer(type="url", ref="http://x"),
                ]
            ),
            "check",
        )
        assert nf.evidence.pointers == ["a.py#L1-2", "http://x"]

    def test_accepts_plain_dicts(self):
        nf = normalize_finding(
            {"id": "d1", "area": "protocol", "severity": "major", "title": "Bad JSON-RPC"},
            "protocol",
        )
        assert nf.severity == "major"
        assert nf.source == "protocol"

    def test_invalid_severity_rejected(self):
        with pytest.raises(ValueError):
            normalize_finding({"id": "x", "area": "a", "severity": "high", "title": "t"})


# ============================================================================
# Deduplication / merge policy
# ============================================================================


class TestDeduplication:
    def test_same_issue_from_two_plugins_collapses_with_tag_union(self):
        raw = [
            _finding(id="streaming.sse", tags=["sse", "transport"]),
            _finding(id="protocol.sse", area="protocol", tags=["transport", "compat"]),
        ]
        result = normalize_findings(raw, "sse-check")
        assert len(result) == 1
        assert result[0].tags == ["sse", "transport", "compat"]

    def test_higher_severity_becomes_primary(self):
        raw = [
            _finding(severity="minor", description="first"),
            _finding(severity="blocker", description="second"),
        ]
        (merged,) = normalize_findings(raw, "check")
        assert merged.severity == "critical"
        assert merged.description == "second"

    def test_tie_keeps_first_seen(self):
        raw = [
            _finding(description="first", recommendation=None),
            _finding(description="second", recommendation="Enable streaming"),
        ]
        (merged,) = normalize_findings(raw, "check")
        assert merged.description == "first"
        assert merged.recommendation == "Enable streaming"

    def test_evidence_union_is_deduplicated(self):
        raw = [
            _finding(evidence=[EvidencePointer(type="log", ref="run.log")]),
            _finding(
                evidence=[
                    EvidencePointer(type="log", ref="run.log"),
                    EvidencePointer(type="url", ref="http://x/sse"),
                ]
            ),
        ]
        (merged,) = normalize_findings(raw, "check")
        assert merged.evidence.pointers == ["run.log", "http://x/sse"]

    def test_fold_prefers_existing_on_tie(self):
        first = normalize_findings([_finding(description="existing")], "check")
        second = normalize_findings([_finding(description="incoming")], "check")
        folded = fold_findings(first, second)
        assert len(folded) == 1
        assert folded[0].description == "existing"

    def test_distinct_findings_survive(self):
        raw = [_finding(), _finding(title="Missing tools/list"), _finding(title="No auth")]
        assert len(normalize_findings(raw, "check")) == 3


# ============================================================================
# Determinism
# ============================================================================


class TestDeterminism:
    def test_sorted_by_fingerprint(self):
        raw = [_finding(title=f"issue {i}") for i in range(6)]
        ids = [f.id for f in normalize_findings(raw, "check")]
        assert ids == sorted(ids)

    def test_idempotent(self):
        raw = [
            _finding(title="a", tags=["x"]),
            _finding(title="b", severity="major"),
            _finding(title="a", tags=["y"]),
        ]
        first = normalize_findings(raw, "check")
        second = normalize_findings(raw, "check")
        assert [f.model_dump() for f in first] == [f.model_dump() for f in second]

    def test_input_order_does_not_change_ids(self):
        raw = [_finding(title="a"), _finding(title="b"), _finding(title="c")]
        forward = [f.id for f in normalize_findings(raw, "check")]
        backward = [f.id for f in normalize_findings(list(reversed(raw)), "check")]
        assert forward == backward

    def test_empty_input(self):
        assert normalize_findings([], "check") == []
