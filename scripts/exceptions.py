#!/usr/bin/env python3
"""
Diagnostics Engine Exceptions Module

Custom exception classes for the workflow engine, the plugin sandbox and
the finding normalizer.  Centralized exception definitions for consistent
error handling.

Only structural misconfiguration is ever raised to the caller of
``WorkflowExecutor.run``.  Plugin-origin failures are raised by the
sandbox and recovered by the executor; ``UnmetDependencyError`` and
``WorkflowTimeoutError`` are recorded in the run state and never raised.
"""

from __future__ import annotations

from typing import Any, List, Optional

__all__ = [
    "DiagnosticsError",
    "GraphValidationError",
    "UnknownWorkflowError",
    "SandboxError",
    "SandboxTimeoutError",
    "SandboxExecutionError",
    "UnmetDependencyError",
    "WorkflowTimeoutError",
    "CheckpointNotFoundError",
]


class DiagnosticsError(Exception):
    """Base exception for all diagnostics-engine errors"""
    pass


class GraphValidationError(DiagnosticsError):
    """Raised when a workflow graph is cyclic or its entry is unreachable"""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = list(errors or [message])


class UnknownWorkflowError(DiagnosticsError, KeyError):
    """Raised when running a workflow id that was never registered"""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "unknown workflow"


class SandboxError(DiagnosticsError):
    """Base for sandbox failures.

    ``findings`` holds the synthetic failure finding(s) the executor folds
    into the run when the failure does not gate a required dependency.
    """

    def __init__(
        self,
        message: str,
        plugin_id: str = "",
        findings: Optional[List[Any]] = None,
    ):
        super().__init__(message)
        self.plugin_id = plugin_id
        self.findings = list(findings or [])


class SandboxTimeoutError(SandboxError):
    """Raised when a plugin exceeds its time budget or is cancelled"""
    pass


class SandboxExecutionError(SandboxError):
    """Raised when a plugin throws, crashes its worker or blows its memory budget"""
    pass


class UnmetDependencyError(DiagnosticsError):
    """Records a node permanently skipped because a required upstream failed"""

    def __init__(self, node_id: str, dependency: str):
        super().__init__(f"{node_id} skipped: unmet dependency {dependency}")
        self.node_id = node_id
        self.dependency = dependency


class WorkflowTimeoutError(DiagnosticsError):
    """Records a run that exceeded its workflow deadline"""

    def __init__(self, workflow_id: str, timeout_ms: int):
        super().__init__(
            f"workflow {workflow_id} exceeded deadline of {timeout_ms}ms"
        )
        self.workflow_id = workflow_id
        self.timeout_ms = timeout_ms


class CheckpointNotFoundError(DiagnosticsError, KeyError):
    """Raised when resuming a run id that has no stored checkpoint"""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "checkpoint not found"
