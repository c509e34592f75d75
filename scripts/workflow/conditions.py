"""
Declarative stage conditions.

Stage pipelines cannot carry arbitrary callables when they are loaded
from YAML, so a stage may instead declare a ``StageCondition``::

    condition:
      type: severity        # severity | finding_count | custom
      operator: gte         # gt | lt | eq | gte | lte | contains
      value: major

Conditions are evaluated against the run's deduplicated findings:

  - **severity**      : true when any finding's severity compares true
                        against ``value`` by severity rank
  - **finding_count** : compares the number of findings against ``value``
  - **custom**        : true when ``field`` of any finding compares true
                        against ``value``; no ``field`` means always true
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, Optional, Union

from pydantic import BaseModel, field_validator

from finding_normalizer import severity_rank
from schemas.findings import NormalizedFinding

logger = logging.getLogger(__name__)

CONDITION_TYPES = {"severity", "finding_count", "custom"}
OPERATORS = {"gt", "lt", "eq", "gte", "lte", "contains"}


class StageCondition(BaseModel):
    """Condition gating a stage's execution."""

    type: str
    operator: str
    value: Union[str, int, float]
    field: Optional[str] = None

    model_config = {"frozen": True}

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        if v not in CONDITION_TYPES:
            raise ValueError(
                f"condition type must be one of {sorted(CONDITION_TYPES)}, got '{v}'"
            )
        return v

    @field_validator("operator")
    @classmethod
    def validate_operator(cls, v: str) -> str:
        if v not in OPERATORS:
            raise ValueError(
                f"operator must be one of {sorted(OPERATORS)}, got '{v}'"
            )
        return v

    def evaluate(self, findings: Iterable[NormalizedFinding]) -> bool:
        findings = list(findings)
        if self.type == "severity":
            threshold = severity_rank(str(self.value))
            if self.operator == "contains":
                return any(
                    severity_rank(f.severity) == threshold for f in findings
                )
            return any(
                compare_values(severity_rank(f.severity), self.operator, threshold)
                for f in findings
            )
        if self.type == "finding_count":
            return compare_values(len(findings), self.operator, self.value)
        if not self.field:
            return True
        return any(
            compare_values(v, self.operator, self.value)
            for v in _field_values(findings, self.field)
        )

    def to_predicate(self) -> Callable[[Any], bool]:
        """Adapt to an edge condition taking a ``WorkflowState``."""

        def predicate(state: Any) -> bool:
            return self.evaluate(state.findings)

        predicate.__name__ = f"{self.type}_{self.operator}_{self.value}"
        return predicate


def compare_values(actual: Any, operator: str, expected: Any) -> bool:
    """Compare with numeric coercion; ``eq``/``contains`` fall back to text."""
    if operator == "contains":
        if isinstance(actual, (list, tuple, set)):
            return expected in actual
        return str(expected) in str(actual)
    if operator == "eq":
        if actual == expected:
            return True
        return _as_number(actual) is not None and _as_number(actual) == _as_number(
            expected
        )

    a, e = _as_number(actual), _as_number(expected)
    if a is None or e is None:
        return False
    if operator == "gt":
        return a > e
    if operator == "lt":
        return a < e
    if operator == "gte":
        return a >= e
    if operator == "lte":
        return a <= e
    logger.warning("Unknown condition operator %r", operator)
    return False


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return float(value)
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _field_values(findings: Iterable[NormalizedFinding], field: str) -> list:
    values = []
    for finding in findings:
        value: Any = finding.model_dump()
        for part in field.split("."):
            value = value.get(part) if isinstance(value, dict) else None
        if value is not None:
            values.append(value)
    return values
