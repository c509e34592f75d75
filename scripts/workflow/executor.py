"""
Workflow Executor - Runs registered workflow graphs.

Walks a ``WorkflowDefinition`` from its entry point, dispatching ready
nodes in barrier groups:

1. A node becomes resolvable once every reachable predecessor has
   resolved (completed, failed or skipped).
2. A ``required`` inbound edge whose source did not complete skips the
   node permanently (``"<node> skipped: unmet dependency <from>"``).
3. Otherwise an inbound edge is live when its source completed (or
   failed on an optional edge).  The node is ready when it has at least
   one live edge and every live edge's condition, if any, holds.  No
   live edge, or any false condition, skips the node.
4. Among ready nodes the lowest ``order`` wins; its ``parallel`` members
   are dispatched together and joined, the rest run one at a time.
5. Results are folded into ``WorkflowState`` only after the group joins,
   so state mutation is single-writer and downstream conditions always
   see deduplicated findings.

A workflow deadline races the whole traversal.  On expiry the in-flight
group is cancelled through the sandbox, the remaining nodes are skipped
and the run resolves with status ``timeout``.  Plugin failures never
escape ``run``; only unknown workflow ids and invalid graphs are raised.
"""

from __future__ import annotations

import asyncio
import dataclasses
import inspect
import logging
import sqlite3
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Union

from checkpoint_store import CheckpointStore
from circuit_breaker import CircuitBreakerRegistry
from exceptions import (
    CheckpointNotFoundError,
    SandboxError,
    UnknownWorkflowError,
    UnmetDependencyError,
    WorkflowTimeoutError,
)
from finding_normalizer import fold_findings, normalize_findings
from plugin_sandbox import PluginRegistry, PluginSandbox
from schemas.findings import EvidencePointer, Finding, NormalizedFinding

from .definition import (
    START_NODE,
    PluginWorkflow,
    WorkflowDefinition,
    WorkflowEdge,
    WorkflowNode,
    compile_plugin_workflow,
)
from .protocol import (
    NODE_COMPLETED,
    NODE_FAILED,
    NODE_SKIPPED,
    RUN_COMPLETED,
    RUN_RUNNING,
    RUN_TIMEOUT,
    DiagnosticContext,
    DiagnosticPlugin,
    SandboxBudgets,
    WorkflowState,
)

logger = logging.getLogger(__name__)

DEFAULT_WORKFLOW_TIMEOUT_MS = 300_000

# Partial-state keys that map onto WorkflowState attributes.
_DECISION_FIELDS = {
    "severity": "severity",
    "finding_count": "finding_count",
    "findingCount": "finding_count",
    "has_blockers": "has_blockers",
    "hasBlockers": "has_blockers",
    "has_major": "has_major",
    "hasMajor": "has_major",
}

# Owned by the executor; handlers may not overwrite them.
_PROTECTED_FIELDS = {
    "workflow_id", "run_id", "context", "status", "visited_nodes",
    "node_status", "node_results", "node_timings", "started_at", "finished_at",
}


@dataclass
class NodeOutcome:
    """What one dispatched node produced, before it is folded into state."""

    node_id: str
    status: str
    findings: List[NormalizedFinding] = field(default_factory=list)
    partial: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    duration_ms: float = 0.0


class WorkflowExecutor:
    """Register workflow graphs and run them.

    Parameters
    ----------
    sandbox : PluginSandbox | None
        Where plugin nodes are dispatched.  A process-isolated sandbox
        with an empty registry is created when omitted.
    checkpoint_store : CheckpointStore | None
        Used by runs whose definition (or this executor) enables
        checkpointing.  An in-memory store is created on demand.
    default_budgets : SandboxBudgets | None
        Budgets for plugin nodes without their own override.
    default_timeout_ms : int
        Workflow deadline when neither ``run`` nor the definition sets one.
    max_parallel_nodes : int
        Upper bound on concurrently running nodes of one barrier group.
    enable_checkpointing : bool
        Checkpoint every run, not only those whose definition asks for it.
    breakers : CircuitBreakerRegistry | None
        Injected into every run's ``DiagnosticContext``.

    Example
    -------
    ::

        executor = WorkflowExecutor()
        executor.register_plugin(DiscoveryPlugin())
        executor.create_workflow(definition)
        state = executor.run("baseline", DiagnosticContext(endpoint=url))
    """

    def __init__(
        self,
        sandbox: Optional[PluginSandbox] = None,
        checkpoint_store: Optional[CheckpointStore] = None,
        default_budgets: Optional[SandboxBudgets] = None,
        default_timeout_ms: int = DEFAULT_WORKFLOW_TIMEOUT_MS,
        max_parallel_nodes: int = 8,
        enable_checkpointing: bool = False,
        breakers: Optional[CircuitBreakerRegistry] = None,
    ):
        self.sandbox = sandbox or PluginSandbox(PluginRegistry())
        self.checkpoint_store = checkpoint_store
        self.default_budgets = default_budgets or SandboxBudgets()
        self.default_timeout_ms = default_timeout_ms
        self.max_parallel_nodes = max(1, max_parallel_nodes)
        self.enable_checkpointing = enable_checkpointing
        self.breakers = breakers or CircuitBreakerRegistry()

        self._workflows: Dict[str, WorkflowDefinition] = {}
        self._history: Dict[str, List[WorkflowState]] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(
        cls,
        config: Dict[str, Any],
        plugins: Optional[Iterable[DiagnosticPlugin]] = None,
    ) -> "WorkflowExecutor":
        """Build sandbox, checkpoint store and executor from a flat config.

        ``config`` is the dict returned by ``config_loader.build_config``.
        Default workflows are registered when ``seed_default_workflows``
        is set.
        """
        sandbox = PluginSandbox(
            PluginRegistry(list(plugins or [])),
            isolation=config.get("sandbox_isolation", "process"),
            poll_interval_ms=int(config.get("sandbox_poll_interval_ms", 50)),
        )
        store = CheckpointStore(config.get("checkpoint_db_path") or None)
        executor = cls(
            sandbox=sandbox,
            checkpoint_store=store,
            default_budgets=SandboxBudgets(
                time_ms=int(config.get("sandbox_time_ms", 30_000)),
                mem_mb=int(config.get("sandbox_mem_mb", 512)),
            ),
            default_timeout_ms=int(
                config.get("workflow_timeout_ms", DEFAULT_WORKFLOW_TIMEOUT_MS)
            ),
            max_parallel_nodes=int(config.get("max_parallel_nodes", 8)),
            enable_checkpointing=bool(config.get("enable_checkpointing", False)),
        )
        if config.get("seed_default_workflows", True):
            from .defaults import ensure_default_workflows

            ensure_default_workflows(executor)
        return executor

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_plugin(self, plugin: DiagnosticPlugin, replace: bool = False) -> None:
        self.sandbox.registry.register(plugin, replace=replace)

    def create_workflow(
        self,
        definition: Union[WorkflowDefinition, PluginWorkflow],
        replace: bool = False,
    ) -> str:
        """Validate and register *definition*; returns its workflow id.

        Registering an id that already exists is a no-op unless
        ``replace`` is set.

        Raises
        ------
        GraphValidationError
            If the graph is cyclic, its entry point is unknown or an edge
            references an unknown node.
        """
        if isinstance(definition, PluginWorkflow):
            definition = compile_plugin_workflow(definition)
        definition.validate()

        workflow_id = definition.workflow_id
        with self._lock:
            if workflow_id in self._workflows and not replace:
                logger.debug("Workflow %s already registered; keeping existing", workflow_id)
                return workflow_id
            self._workflows[workflow_id] = definition
        logger.info(
            "Registered workflow %s (%d nodes, %d edges)",
            workflow_id, len(definition.nodes), len(definition.edges),
        )
        return workflow_id

    def get_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        with self._lock:
            return self._workflows.get(workflow_id)

    def list_workflows(self) -> List[Dict[str, Any]]:
        with self._lock:
            definitions = list(self._workflows.values())
        return [
            {
                "workflow_id": d.workflow_id,
                "name": d.config.name,
                "description": d.config.description,
                "nodes": len([n for n in d.nodes if n.id != START_NODE]),
            }
            for d in sorted(definitions, key=lambda d: d.workflow_id)
        ]

    def delete_workflow(self, workflow_id: str) -> bool:
        with self._lock:
            self._history.pop(workflow_id, None)
            return self._workflows.pop(workflow_id, None) is not None

    def get_execution_history(self, workflow_id: str) -> List[WorkflowState]:
        """Final states of finished runs of *workflow_id*, oldest first."""
        with self._lock:
            return list(self._history.get(workflow_id, []))

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    def run(
        self,
        workflow_id: str,
        context: Optional[DiagnosticContext] = None,
        deadline_ms: Optional[int] = None,
        run_id: Optional[str] = None,
    ) -> WorkflowState:
        """Execute a registered workflow and return its final state.

        Parameters
        ----------
        workflow_id : str
            Id passed to (or returned by) ``create_workflow``.
        context : DiagnosticContext | None
            What plugin nodes receive.  Never shared across runs.
        deadline_ms : int | None
            Overrides the definition's ``timeout_ms`` for this run.
        run_id : str | None
            Checkpoint key; a fresh uuid when omitted.

        Raises
        ------
        UnknownWorkflowError
            If *workflow_id* was never registered.
        """
        definition = self._require(workflow_id)
        state = WorkflowState(
            workflow_id=workflow_id,
            run_id=run_id or uuid.uuid4().hex,
            context=context or DiagnosticContext(),
        )
        return self._execute(definition, state, deadline_ms)

    def resume(
        self,
        run_id: str,
        context: Optional[DiagnosticContext] = None,
        deadline_ms: Optional[int] = None,
    ) -> WorkflowState:
        """Reload a checkpointed run and continue it from its frontier.

        Transport adapters are not checkpointed; pass *context* to supply
        them again.  Runs that already finished are returned unchanged.
        """
        state = self.checkpoint_store.load(run_id) if self.checkpoint_store else None
        if state is None:
            raise CheckpointNotFoundError(f"No checkpoint for run {run_id}")
        definition = self._require(state.workflow_id)
        if state.status != RUN_RUNNING:
            logger.info("Run %s already finished with status %s", run_id, state.status)
            return state
        if context is not None:
            state.context = context.with_data(state.context.data)
        logger.info(
            "Resuming run %s of %s (%d nodes resolved)",
            run_id, state.workflow_id, len(state.node_status),
        )
        return self._execute(definition, state, deadline_ms)

    def _require(self, workflow_id: str) -> WorkflowDefinition:
        definition = self.get_workflow(workflow_id)
        if definition is None:
            raise UnknownWorkflowError(f"Unknown workflow: {workflow_id}")
        return definition

    def _execute(
        self,
        definition: WorkflowDefinition,
        state: WorkflowState,
        deadline_ms: Optional[int],
    ) -> WorkflowState:
        if deadline_ms is not None:
            timeout_ms = deadline_ms
        elif definition.config.timeout_ms is not None:
            timeout_ms = definition.config.timeout_ms
        else:
            timeout_ms = self.default_timeout_ms
        deadline = time.monotonic() + timeout_ms / 1000.0
        cancel = threading.Event()
        if state.context.breakers is None:
            state.context = dataclasses.replace(state.context, breakers=self.breakers)
        run_ctx = dataclasses.replace(state.context, cancel_event=cancel)

        checkpointing = definition.config.enable_checkpointing or self.enable_checkpointing
        if checkpointing and self.checkpoint_store is None:
            self.checkpoint_store = CheckpointStore()
        reachable = definition.reachable()
        verdicts: Dict[int, bool] = {}

        logger.info(
            "Workflow %s run %s starting (deadline %dms)",
            definition.workflow_id, state.run_id, timeout_ms,
        )
        pool = ThreadPoolExecutor(
            max_workers=self.max_parallel_nodes,
            thread_name_prefix=f"wf-{definition.workflow_id}",
        )
        try:
            while state.status == RUN_RUNNING:
                ready = self._resolve_frontier(definition, state, reachable, verdicts)
                if not ready:
                    break
                group = self._next_group(definition, state, ready)
                if not group:
                    continue
                if time.monotonic() >= deadline:
                    self._time_out(definition, state, reachable, [], timeout_ms, cancel)
                    break

                outcomes, unfinished = self._dispatch_group(
                    definition, group, state, run_ctx, cancel, pool, deadline
                )
                self._apply_outcomes(definition, state, group, outcomes)
                if unfinished:
                    self._time_out(
                        definition, state, reachable, unfinished, timeout_ms, cancel
                    )
                if checkpointing:
                    self._checkpoint(state)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        if state.status == RUN_RUNNING:
            state.status = RUN_COMPLETED
        state.finished_at = time.time()
        if checkpointing:
            self._checkpoint(state)
        with self._lock:
            self._history.setdefault(definition.workflow_id, []).append(state)

        logger.info(
            "Workflow %s run %s %s: %d findings, %d nodes visited, %d errors",
            definition.workflow_id, state.run_id, state.status,
            len(state.findings), len(state.visited_nodes), len(state.errors),
        )
        return state

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _resolve_frontier(
        self,
        definition: WorkflowDefinition,
        state: WorkflowState,
        reachable: set,
        verdicts: Dict[int, bool],
    ) -> List[WorkflowNode]:
        """Skip whatever can no longer run and return the ready nodes."""
        while True:
            ready: List[WorkflowNode] = []
            skipped_any = False
            for node in definition.nodes:
                if node.id not in reachable or node.id in state.node_status:
                    continue
                if node.id == definition.entry_point:
                    ready.append(node)
                    continue

                inbound = [e for e in definition.inbound(node.id) if e.source in reachable]
                if any(e.source not in state.node_status for e in inbound):
                    continue

                unmet = [
                    e for e in inbound
                    if e.required and state.node_status[e.source] != NODE_COMPLETED
                ]
                live = [e for e in inbound if self._edge_live(e, state)]
                if unmet:
                    reason = UnmetDependencyError(node.id, unmet[0].source)
                    self._skip(state, node.id, str(reason))
                    skipped_any = True
                elif not live or not all(
                    self._condition_holds(e, state, verdicts) for e in live
                ):
                    self._skip(state, node.id, f"{node.id} skipped: condition not met")
                    skipped_any = True
                else:
                    ready.append(node)
            if not skipped_any:
                return ready

    @staticmethod
    def _edge_live(edge: WorkflowEdge, state: WorkflowState) -> bool:
        """An edge carries control unless its source was skipped or failed it."""
        source_status = state.node_status.get(edge.source)
        if source_status == NODE_SKIPPED:
            return False
        return not (source_status == NODE_FAILED and edge.required)

    def _condition_holds(
        self, edge: WorkflowEdge, state: WorkflowState, verdicts: Dict[int, bool]
    ) -> bool:
        """Evaluate *edge*'s condition at most once per run."""
        if edge.condition is None:
            return True
        key = id(edge)
        if key not in verdicts:
            try:
                verdicts[key] = bool(edge.condition(state))
            except Exception as exc:
                logger.warning(
                    "Condition on %s -> %s raised %s; treating as false",
                    edge.source, edge.target, exc,
                )
                state.errors.append(f"condition {edge.source}->{edge.target}: {exc}")
                verdicts[key] = False
        return verdicts[key]

    def _next_group(
        self,
        definition: WorkflowDefinition,
        state: WorkflowState,
        ready: List[WorkflowNode],
    ) -> List[WorkflowNode]:
        """Pick the next barrier group and apply node guards to it."""
        lowest = min(n.order for n in ready)
        candidates = [n for n in ready if n.order == lowest]
        parallel = [n for n in candidates if n.parallel]
        group = parallel if parallel else candidates[:1]

        admitted = []
        for node in group:
            if node.condition is None or self._guard(node, state):
                admitted.append(node)
            else:
                self._skip(state, node.id, f"{node.id} skipped: condition not met")
        return admitted

    def _guard(self, node: WorkflowNode, state: WorkflowState) -> bool:
        try:
            return bool(node.condition(state))
        except Exception as exc:
            logger.warning("Condition on %s raised %s; skipping", node.id, exc)
            state.errors.append(f"condition {node.id}: {exc}")
            return False

    def _skip(self, state: WorkflowState, node_id: str, reason: str) -> None:
        state.node_status[node_id] = NODE_SKIPPED
        state.node_results[node_id] = []
        state.execution_path.append(reason)
        logger.info("%s", reason)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _dispatch_group(
        self,
        definition: WorkflowDefinition,
        group: List[WorkflowNode],
        state: WorkflowState,
        run_ctx: DiagnosticContext,
        cancel: threading.Event,
        pool: ThreadPoolExecutor,
        deadline: float,
    ):
        """Run *group* concurrently and join it, bounded by *deadline*.

        Returns the outcomes of finished nodes and the nodes still running
        when the deadline fired.
        """
        visible = [n.id for n in group if n.id != START_NODE]
        if visible:
            logger.debug("Dispatching barrier group %s", visible)
        for node_id in visible:
            if node_id not in state.visited_nodes:
                state.visited_nodes.append(node_id)

        snapshot = state.snapshot()
        futures = {
            pool.submit(self._run_node, definition, node, snapshot, run_ctx, cancel): node
            for node in group
        }
        done, not_done = wait(futures, timeout=max(0.0, deadline - time.monotonic()))
        outcomes = [future.result() for future in done]
        unfinished = [n for n in group if any(futures[f] is n for f in not_done)]
        return outcomes, unfinished

    def _run_node(
        self,
        definition: WorkflowDefinition,
        node: WorkflowNode,
        snapshot: WorkflowState,
        run_ctx: DiagnosticContext,
        cancel: threading.Event,
    ) -> NodeOutcome:
        start = time.monotonic()
        if node.type == "plugin":
            outcome = self._run_plugin_node(definition, node, snapshot, run_ctx, cancel)
        else:
            outcome = self._run_handler_node(node, snapshot)
        outcome.duration_ms = (time.monotonic() - start) * 1000
        return outcome

    def _run_plugin_node(
        self,
        definition: WorkflowDefinition,
        node: WorkflowNode,
        snapshot: WorkflowState,
        run_ctx: DiagnosticContext,
        cancel: threading.Event,
    ) -> NodeOutcome:
        ctx = run_ctx.with_data(self._inbound_data(definition, node, snapshot))
        budgets = node.budgets or self.default_budgets
        try:
            raw = self.sandbox.execute(node.plugin_id, ctx, budgets, cancel_event=cancel)
            return NodeOutcome(
                node_id=node.id,
                status=NODE_COMPLETED,
                findings=normalize_findings(raw, fallback_source=node.plugin_id),
            )
        except SandboxError as exc:
            logger.warning("Node %s failed: %s", node.id, exc)
            return NodeOutcome(
                node_id=node.id,
                status=NODE_FAILED,
                findings=normalize_findings(exc.findings, fallback_source=node.plugin_id),
                error=str(exc),
            )

    def _run_handler_node(self, node: WorkflowNode, snapshot: WorkflowState) -> NodeOutcome:
        if node.handler is None:
            return NodeOutcome(node_id=node.id, status=NODE_COMPLETED)
        try:
            partial = node.handler(snapshot)
            if inspect.isawaitable(partial):

                async def _await() -> Any:
                    return await partial

                partial = asyncio.run(_await())
            return NodeOutcome(node_id=node.id, status=NODE_COMPLETED, partial=partial or {})
        except Exception as exc:
            logger.error("Handler for %s failed: %s", node.id, exc, exc_info=True)
            failure = Finding(
                id=f"workflow.{node.id}.error",
                area="framework",
                severity="minor",
                title="handler failed",
                description=f"{node.type} node {node.id} raised {type(exc).__name__}: {exc}",
                evidence=[EvidencePointer(type="log", ref=f"workflow:{node.id}")],
                tags=["workflow", "handler"],
                source=node.id,
            )
            return NodeOutcome(
                node_id=node.id,
                status=NODE_FAILED,
                findings=normalize_findings([failure]),
                error=f"{type(exc).__name__}: {exc}",
            )

    @staticmethod
    def _inbound_data(
        definition: WorkflowDefinition,
        node: WorkflowNode,
        state: WorkflowState,
    ) -> Dict[str, Any]:
        """Route upstream findings along ``data_flow`` keys.

        An upstream that failed, was skipped or produced nothing
        contributes an empty list under each of its keys.
        """
        data: Dict[str, Any] = {}
        for edge in definition.inbound(node.id):
            if not edge.data_flow:
                continue
            if state.node_status.get(edge.source) == NODE_COMPLETED:
                produced = list(state.node_results.get(edge.source, []))
            else:
                produced = []
            for key in edge.data_flow:
                target = node.input_mapping.get(key, key)
                data.setdefault(target, []).extend(produced)
        return data

    # ------------------------------------------------------------------
    # Folding
    # ------------------------------------------------------------------

    def _apply_outcomes(
        self,
        definition: WorkflowDefinition,
        state: WorkflowState,
        group: List[WorkflowNode],
        outcomes: List[NodeOutcome],
    ) -> None:
        """Fold a joined group into state in declaration order."""
        by_id = {o.node_id: o for o in outcomes}
        for node in group:
            outcome = by_id.get(node.id)
            if outcome is None:
                continue
            state.node_timings[node.id] = round(outcome.duration_ms, 3)
            state.node_status[node.id] = outcome.status

            if outcome.status == NODE_COMPLETED:
                state.node_results[node.id] = outcome.findings
                state.findings = fold_findings(state.findings, outcome.findings)
                if outcome.partial:
                    self._merge_partial(state, node, outcome.partial)
                if node.id != START_NODE:
                    state.execution_path.append(node.id)
                continue

            state.node_results[node.id] = []
            state.errors.append(f"{node.id}: {outcome.error}")
            state.execution_path.append(f"{node.id} failed: {outcome.error}")
            gates = any(e.required for e in definition.outbound(node.id))
            if not gates:
                # Optional failures surface as findings; required ones as skips.
                state.findings = fold_findings(state.findings, outcome.findings)

    def _merge_partial(
        self, state: WorkflowState, node: WorkflowNode, partial: Dict[str, Any]
    ) -> None:
        if not isinstance(partial, dict):
            logger.warning(
                "Handler for %s returned %s, expected a dict; ignored",
                node.id, type(partial).__name__,
            )
            return
        for key, value in partial.items():
            if key == "findings":
                state.findings = fold_findings(
                    state.findings, self._coerce_findings(value, node.id)
                )
            elif key in ("execution_path", "executionPath"):
                state.execution_path.extend(str(v) for v in value)
            elif key == "errors":
                state.errors.extend(str(v) for v in value)
            elif key in _DECISION_FIELDS:
                setattr(state, _DECISION_FIELDS[key], value)
            elif key == "flags":
                state.flags.update(value)
            elif key in _PROTECTED_FIELDS:
                logger.warning("Handler for %s tried to set %s; ignored", node.id, key)
            else:
                state.flags[key] = value

    @staticmethod
    def _coerce_findings(value: Any, source: str) -> List[NormalizedFinding]:
        items = list(value or [])
        normalized = [f for f in items if isinstance(f, NormalizedFinding)]
        raw = [f for f in items if not isinstance(f, NormalizedFinding)]
        return normalized + normalize_findings(raw, fallback_source=source)

    # ------------------------------------------------------------------
    # Deadline / persistence
    # ------------------------------------------------------------------

    def _time_out(
        self,
        definition: WorkflowDefinition,
        state: WorkflowState,
        reachable: set,
        unfinished: List[WorkflowNode],
        timeout_ms: int,
        cancel: threading.Event,
    ) -> None:
        cancel.set()
        error = WorkflowTimeoutError(definition.workflow_id, timeout_ms)
        logger.warning("%s; cancelling %d in-flight nodes", error, len(unfinished))

        for node in unfinished:
            self._skip(state, node.id, f"{node.id} skipped: workflow timeout")
        for node in definition.nodes:
            if (
                node.id in reachable
                and node.id not in state.node_status
                and node.id != START_NODE
            ):
                self._skip(state, node.id, f"{node.id} skipped: workflow timeout")
        state.errors.append(str(error))
        state.status = RUN_TIMEOUT

    def _checkpoint(self, state: WorkflowState) -> None:
        try:
            self.checkpoint_store.save(state.run_id, state)
        except (sqlite3.Error, OSError) as exc:
            logger.error("Checkpoint for run %s failed: %s", state.run_id, exc)
            state.errors.append(f"checkpoint: {exc}")
