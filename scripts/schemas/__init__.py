"""
Pydantic schemas for diagnostic findings

This package contains strict Pydantic schemas for the data flowing from
plugins through the workflow engine into reports.  Schemas enforce data
consistency and catch format errors at the plugin boundary.
"""

from .findings import (
    EVIDENCE_TYPES,
    NORMALIZED_SEVERITIES,
    PRECISIONS,
    SEVERITIES,
    EvidencePointer,
    Finding,
    NormalizedEvidence,
    NormalizedFinding,
    NormalizedLocation,
)

__all__ = [
    # Raw plugin output
    "EvidencePointer",
    "Finding",
    # Normalized records
    "NormalizedLocation",
    "NormalizedEvidence",
    "NormalizedFinding",
    # Vocabularies
    "SEVERITIES",
    "NORMALIZED_SEVERITIES",
    "PRECISIONS",
    "EVIDENCE_TYPES",
]
