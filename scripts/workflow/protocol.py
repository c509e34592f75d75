"""
Workflow Protocol - Defines the plugin interface and the run state.

Every diagnostic plugin implements the ``DiagnosticPlugin`` protocol.
Plugins are dispatched by ``WorkflowExecutor`` through the sandbox.

The ``DiagnosticContext`` dataclass is what a plugin sees: the target
endpoint plus the transport adapters supplied by the caller.

The ``WorkflowState`` dataclass holds all mutable state threaded through
one run.  It is owned by exactly one in-flight run and only mutated by
the executor's control flow after a barrier group has joined.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Union,
    runtime_checkable,
)

from schemas.findings import EvidencePointer, Finding, NormalizedFinding

logger = logging.getLogger(__name__)

RUN_RUNNING = "running"
RUN_COMPLETED = "completed"
RUN_TIMEOUT = "timeout"

NODE_COMPLETED = "completed"
NODE_FAILED = "failed"
NODE_SKIPPED = "skipped"


def _default_plugin_logger(*args: Any) -> None:
    logger.info("[plugin] %s", " ".join(str(a) for a in args))


def _default_evidence(pointer: Any) -> None:
    logger.debug("[evidence] %s", pointer)


@dataclass
class DiagnosticContext:
    """What a plugin receives when it runs.

    Attributes
    ----------
    endpoint : str
        Base URL of the server under diagnosis.
    headers : dict
        Extra headers (auth, session ids) for every request.
    deterministic : bool
        Plugins must avoid randomness and wall-clock dependent output.
    data : dict
        Upstream outputs routed along edge ``data_flow`` keys.  An optional
        upstream that produced nothing contributes an empty list.
    request, jsonrpc, sse_probe : callable | None
        Transport adapters owned by the caller.
    logger, evidence : callable
        Observability hooks.  Inside the sandbox these post ``log`` and
        ``evidence`` messages back to the host.
    cancel_event : threading.Event | None
        Abort signal; long-running probes should poll ``aborted()``.
    breakers : CircuitBreakerRegistry | None
        Injected registry for plugins that guard external provider calls.
        Shared directly in thread isolation; in process isolation the
        worker's changes are merged back when it reports a result or error.
    """

    endpoint: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    deterministic: bool = False
    data: Dict[str, Any] = field(default_factory=dict)
    request: Optional[Callable[..., Any]] = None
    jsonrpc: Optional[Callable[..., Any]] = None
    sse_probe: Optional[Callable[..., Any]] = None
    logger: Callable[..., None] = _default_plugin_logger
    evidence: Callable[[Any], None] = _default_evidence
    cancel_event: Optional[threading.Event] = None
    breakers: Any = None

    def aborted(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def with_data(self, data: Dict[str, Any]) -> "DiagnosticContext":
        return dataclasses.replace(self, data={**self.data, **data})

    def to_dict(self) -> Dict[str, Any]:
        """Serializable subset; transport adapters are not persisted."""
        return {
            "endpoint": self.endpoint,
            "headers": dict(self.headers),
            "deterministic": self.deterministic,
            "data": _jsonable(self.data),
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "DiagnosticContext":
        return cls(
            endpoint=raw.get("endpoint", ""),
            headers=dict(raw.get("headers") or {}),
            deterministic=bool(raw.get("deterministic", False)),
            data=dict(raw.get("data") or {}),
        )


@dataclass(frozen=True)
class SandboxBudgets:
    """Per-plugin resource ceiling supplied by the executor at dispatch time."""

    time_ms: int = 30_000
    mem_mb: int = 512


PluginResult = Union[List[Finding], List[dict]]


@runtime_checkable
class DiagnosticPlugin(Protocol):
    """Protocol every diagnostic plugin must implement.

    ``run`` returns (or, for coroutine functions, resolves to) a list of
    findings, or raises.  Anything else about the plugin is its own
    business.

    Example
    -------
    ::

        class DiscoveryPlugin:
            id = "discovery"
            title = "Capability Discovery"
            order = 100

            def run(self, ctx: DiagnosticContext) -> list[Finding]:
                tools = ctx.jsonrpc("tools/list")
                ...
    """

    @property
    def id(self) -> str:
        ...

    @property
    def title(self) -> str:
        ...

    def run(
        self, ctx: DiagnosticContext
    ) -> Union[PluginResult, Awaitable[PluginResult]]:
        ...


@dataclass
class WorkflowState:
    """The single mutable value threaded through one run.

    Attributes
    ----------
    context : DiagnosticContext
        The caller-supplied context shared by every plugin node.
    findings : list[NormalizedFinding]
        Deduplicated findings, sorted by fingerprint id.
    execution_path : list[str]
        Human-readable trace, including skip and timeout lines.
    visited_nodes : list[str]
        Nodes that were dispatched, in dispatch order.
    severity, finding_count, has_blockers, has_major
        Decision data maintained by decision handlers.
    flags : dict
        Custom decision flags set by handlers.
    node_status : dict
        ``completed`` / ``failed`` / ``skipped`` per resolved node.
    node_results : dict
        Normalized findings each node produced, used for data flow and
        for resuming from a checkpoint.
    errors : list[str]
        Non-fatal failures collected during the run.
    """

    workflow_id: str = ""
    run_id: str = ""
    context: DiagnosticContext = field(default_factory=DiagnosticContext)
    status: str = RUN_RUNNING
    findings: List[NormalizedFinding] = field(default_factory=list)
    execution_path: List[str] = field(default_factory=list)
    visited_nodes: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    # -- Decision data --
    severity: Optional[str] = None
    finding_count: int = 0
    has_blockers: bool = False
    has_major: bool = False
    flags: Dict[str, Any] = field(default_factory=dict)

    # -- Progress --
    node_status: Dict[str, str] = field(default_factory=dict)
    node_results: Dict[str, List[NormalizedFinding]] = field(default_factory=dict)
    node_timings: Dict[str, float] = field(default_factory=dict)
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    def snapshot(self) -> "WorkflowState":
        """Copy handed to handlers so concurrent readers never share lists."""
        return dataclasses.replace(
            self,
            findings=list(self.findings),
            execution_path=list(self.execution_path),
            visited_nodes=list(self.visited_nodes),
            errors=list(self.errors),
            flags=dict(self.flags),
            node_status=dict(self.node_status),
            node_results={k: list(v) for k, v in self.node_results.items()},
            node_timings=dict(self.node_timings),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "run_id": self.run_id,
            "context": self.context.to_dict(),
            "status": self.status,
            "findings": [f.model_dump(mode="json") for f in self.findings],
            "execution_path": list(self.execution_path),
            "visited_nodes": list(self.visited_nodes),
            "errors": list(self.errors),
            "severity": self.severity,
            "finding_count": self.finding_count,
            "has_blockers": self.has_blockers,
            "has_major": self.has_major,
            "flags": _jsonable(self.flags),
            "node_status": dict(self.node_status),
            "node_results": {
                node: [f.model_dump(mode="json") for f in results]
                for node, results in self.node_results.items()
            },
            "node_timings": dict(self.node_timings),
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "WorkflowState":
        return cls(
            workflow_id=raw.get("workflow_id", ""),
            run_id=raw.get("run_id", ""),
            context=DiagnosticContext.from_dict(raw.get("context") or {}),
            status=raw.get("status", RUN_RUNNING),
            findings=[
                NormalizedFinding.model_validate(f) for f in raw.get("findings", [])
            ],
            execution_path=list(raw.get("execution_path", [])),
            visited_nodes=list(raw.get("visited_nodes", [])),
            errors=list(raw.get("errors", [])),
            severity=raw.get("severity"),
            finding_count=int(raw.get("finding_count", 0)),
            has_blockers=bool(raw.get("has_blockers", False)),
            has_major=bool(raw.get("has_major", False)),
            flags=dict(raw.get("flags") or {}),
            node_status=dict(raw.get("node_status") or {}),
            node_results={
                node: [NormalizedFinding.model_validate(f) for f in results]
                for node, results in (raw.get("node_results") or {}).items()
            },
            node_timings=dict(raw.get("node_timings") or {}),
            started_at=float(raw.get("started_at") or time.time()),
            finished_at=raw.get("finished_at"),
        )


def _jsonable(value: Any) -> Any:
    """Best-effort conversion of pydantic models nested in dicts/lists."""
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)
