"""
Workflow definitions - nodes, edges, stage pipelines and graph validation.

Two authoring flavors share one engine:

  - **Node graphs** (``WorkflowDefinition``): plugin / decision /
    aggregation nodes connected by edges with optional conditions.
  - **Stage pipelines** (``PluginWorkflow``): stages with an ``order`` and
    a ``parallel`` flag plus explicit dependencies.  They are compiled
    into a node graph at registration time by ``compile_plugin_workflow``.

Definitions are immutable once built; many runs may share one.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
    Tuple,
    Union,
)

import yaml
from pydantic import BaseModel, Field

from exceptions import GraphValidationError

from .conditions import StageCondition
from .protocol import SandboxBudgets, WorkflowState

logger = logging.getLogger(__name__)

NODE_TYPES = ("plugin", "decision", "aggregation")

# Synthetic entry node of compiled stage pipelines.  Never shown in traces.
START_NODE = "__start__"

PartialState = Dict[str, Any]
Handler = Callable[[WorkflowState], Union[Optional[PartialState], Awaitable[Optional[PartialState]]]]
EdgeCondition = Callable[[WorkflowState], bool]


# ---------------------------------------------------------------------------
# Node graph
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WorkflowNode:
    """One vertex of a workflow graph.

    Attributes
    ----------
    type : str
        ``plugin`` nodes are dispatched to the sandbox with ``plugin_id``.
        ``decision`` and ``aggregation`` nodes run ``handler`` inline and
        merge the partial state it returns.
    order : int
        Barrier ordering: among ready nodes only the lowest order runs.
    parallel : bool
        Ready nodes of the same order with ``parallel=True`` form one
        barrier group; the others run one at a time.
    budgets : SandboxBudgets | None
        Overrides the executor's default sandbox budgets.
    condition : callable | None
        Guard evaluated when the node's barrier group is formed.
    input_mapping : dict
        Renames inbound ``data_flow`` keys before they reach the plugin.
    """

    id: str
    name: str = ""
    type: str = "plugin"
    plugin_id: Optional[str] = None
    handler: Optional[Handler] = None
    order: int = 0
    parallel: bool = True
    budgets: Optional[SandboxBudgets] = None
    condition: Optional[EdgeCondition] = None
    input_mapping: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.type not in NODE_TYPES:
            raise ValueError(
                f"node {self.id!r}: type must be one of {NODE_TYPES}, got '{self.type}'"
            )
        if self.type == "plugin" and not self.plugin_id:
            raise ValueError(f"plugin node {self.id!r} needs a plugin_id")

    @property
    def label(self) -> str:
        return self.name or self.id


@dataclass(frozen=True)
class WorkflowEdge:
    """Directed edge ``source -> target``.

    No ``condition`` means unconditional traversal.  A ``required`` edge
    whose source failed permanently blocks the target.
    """

    source: str
    target: str
    condition: Optional[EdgeCondition] = None
    required: bool = False
    data_flow: Tuple[str, ...] = ()
    label: str = ""


@dataclass(frozen=True)
class WorkflowConfig:
    workflow_id: str
    name: str = ""
    description: str = ""
    timeout_ms: Optional[int] = None
    enable_checkpointing: bool = False


@dataclass(frozen=True)
class WorkflowDefinition:
    """Registered, immutable workflow graph."""

    config: WorkflowConfig
    entry_point: str
    nodes: Tuple[WorkflowNode, ...]
    edges: Tuple[WorkflowEdge, ...] = ()

    @property
    def workflow_id(self) -> str:
        return self.config.workflow_id

    def node(self, node_id: str) -> WorkflowNode:
        for node in self.nodes:
            if node.id == node_id:
                return node
        raise KeyError(node_id)

    def node_ids(self) -> List[str]:
        return [n.id for n in self.nodes]

    def inbound(self, node_id: str) -> List[WorkflowEdge]:
        return [e for e in self.edges if e.target == node_id]

    def outbound(self, node_id: str) -> List[WorkflowEdge]:
        return [e for e in self.edges if e.source == node_id]

    def reachable(self) -> set:
        """Ids of nodes reachable from the entry point."""
        return _reachable(self.entry_point, self.edges)

    def validate(self) -> "ValidationResult":
        """Raise ``GraphValidationError`` on structural errors."""
        result = validate_graph(self)
        for warning in result.warnings:
            logger.warning("Workflow %s: %s", self.workflow_id, warning)
        if not result.valid:
            raise GraphValidationError(
                f"Invalid workflow {self.workflow_id}: {'; '.join(result.errors)}",
                errors=result.errors,
            )
        return result


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def validate_graph(definition: WorkflowDefinition) -> ValidationResult:
    """Check ids, edge endpoints, entry point and acyclicity.

    Nodes unreachable from the entry point are only a warning; they are
    never scheduled.
    """
    errors: List[str] = []
    warnings: List[str] = []

    ids: Dict[str, int] = {}
    for node in definition.nodes:
        if node.id in ids:
            errors.append(f"Duplicate node ID: {node.id}")
        ids[node.id] = ids.get(node.id, 0) + 1

    if definition.entry_point not in ids:
        errors.append(f"Entry point references unknown node: {definition.entry_point}")

    for edge in definition.edges:
        for end in (edge.source, edge.target):
            if end not in ids:
                errors.append(f"Edge references unknown node: {end}")

    cycle = find_cycle(ids.keys(), definition.edges)
    if cycle:
        errors.append(f"Cycle detected: {' -> '.join(cycle)}")

    if definition.entry_point in ids:
        reachable = _reachable(definition.entry_point, definition.edges)
        for node_id in ids:
            if node_id not in reachable:
                warnings.append(f"Node {node_id} is unreachable from {definition.entry_point}")

    return ValidationResult(valid=not errors, errors=errors, warnings=warnings)


def find_cycle(
    node_ids: Sequence[str], edges: Sequence[WorkflowEdge]
) -> Optional[List[str]]:
    """Return one cycle as a node list (first node repeated at the end)."""
    adjacency: Dict[str, List[str]] = {n: [] for n in node_ids}
    for edge in edges:
        adjacency.setdefault(edge.source, []).append(edge.target)

    white, grey, black = 0, 1, 2
    color = {n: white for n in adjacency}
    stack: List[str] = []

    def visit(node: str) -> Optional[List[str]]:
        color[node] = grey
        stack.append(node)
        for succ in adjacency.get(node, []):
            state = color.get(succ, white)
            if state == grey:
                return stack[stack.index(succ):] + [succ]
            if state == white:
                found = visit(succ)
                if found:
                    return found
        stack.pop()
        color[node] = black
        return None

    for node in list(adjacency):
        if color[node] == white:
            found = visit(node)
            if found:
                return found
    return None


def _reachable(entry: str, edges: Sequence[WorkflowEdge]) -> set:
    seen = {entry}
    frontier = [entry]
    while frontier:
        current = frontier.pop()
        for edge in edges:
            if edge.source == current and edge.target not in seen:
                seen.add(edge.target)
                frontier.append(edge.target)
    return seen


# ---------------------------------------------------------------------------
# Stage pipelines
# ---------------------------------------------------------------------------


class WorkflowStage(BaseModel):
    """One plugin invocation in a stage pipeline."""

    id: str
    plugin_id: str = Field(alias="pluginId")
    order: int = 0
    parallel: bool = False
    input_mapping: Dict[str, str] = Field(default_factory=dict, alias="inputMapping")
    condition: Optional[StageCondition] = None
    timeout_ms: Optional[int] = Field(default=None, alias="timeout", gt=0)

    model_config = {"frozen": True, "populate_by_name": True}


class WorkflowDependency(BaseModel):
    from_stage: str = Field(alias="fromStage")
    to_stage: str = Field(alias="toStage")
    data_flow: List[str] = Field(default_factory=list, alias="dataFlow")
    required: bool = False

    model_config = {"frozen": True, "populate_by_name": True}


class PluginWorkflow(BaseModel):
    """Restricted DAG of stages, compiled into a ``WorkflowDefinition``."""

    id: str
    name: str = ""
    description: str = ""
    stages: List[WorkflowStage]
    dependencies: List[WorkflowDependency] = Field(default_factory=list)
    timeout_ms: Optional[int] = Field(default=None, alias="timeout", gt=0)

    model_config = {"frozen": True, "populate_by_name": True}


def validate_plugin_workflow(
    workflow: PluginWorkflow,
    known_plugins: Optional[Sequence[str]] = None,
) -> ValidationResult:
    """Stage-level checks run before compilation.

    A dependency that does not go from a lower to a higher ``order`` is
    only a warning.
    """
    errors: List[str] = []
    warnings: List[str] = []

    stage_ids = set()
    for stage in workflow.stages:
        if stage.id in stage_ids:
            errors.append(f"Duplicate stage ID: {stage.id}")
        stage_ids.add(stage.id)
        if stage.id == START_NODE:
            errors.append(f"Stage ID {START_NODE} is reserved")
        if known_plugins is not None and stage.plugin_id not in known_plugins:
            errors.append(f"Plugin not found: {stage.plugin_id}")

    for dep in workflow.dependencies:
        for end in (dep.from_stage, dep.to_stage):
            if end not in stage_ids:
                errors.append(f"Dependency references unknown stage: {end}")

    edges = [WorkflowEdge(d.from_stage, d.to_stage) for d in workflow.dependencies]
    cycle = find_cycle(sorted(stage_ids), edges)
    if cycle:
        errors.append(f"Circular dependency detected: {' -> '.join(cycle)}")

    orders = {s.id: s.order for s in workflow.stages}
    for dep in workflow.dependencies:
        src, dst = orders.get(dep.from_stage), orders.get(dep.to_stage)
        if src is not None and dst is not None and src >= dst:
            warnings.append(
                f"Dependency {dep.from_stage} -> {dep.to_stage} has invalid order ({src} >= {dst})"
            )

    return ValidationResult(valid=not errors, errors=errors, warnings=warnings)


def compile_plugin_workflow(workflow: PluginWorkflow) -> WorkflowDefinition:
    """Compile a stage pipeline into the node/edge model.

    Every stage becomes a plugin node carrying its ``order``, ``parallel``
    flag, budget override, input mapping and condition guard.  Each
    dependency becomes an edge; stages without dependencies hang off a
    synthetic ``__start__`` entry node.
    """
    result = validate_plugin_workflow(workflow)
    for warning in result.warnings:
        logger.warning("Workflow %s: %s", workflow.id, warning)
    if not result.valid:
        raise GraphValidationError(
            f"Invalid workflow {workflow.id}: {'; '.join(result.errors)}",
            errors=result.errors,
        )

    nodes: List[WorkflowNode] = [
        WorkflowNode(
            id=START_NODE,
            name="start",
            type="decision",
            order=min((s.order for s in workflow.stages), default=0) - 1,
        )
    ]
    for stage in workflow.stages:
        nodes.append(
            WorkflowNode(
                id=stage.id,
                name=stage.id,
                type="plugin",
                plugin_id=stage.plugin_id,
                order=stage.order,
                parallel=stage.parallel,
                budgets=(
                    SandboxBudgets(time_ms=stage.timeout_ms)
                    if stage.timeout_ms
                    else None
                ),
                condition=stage.condition.to_predicate() if stage.condition else None,
                input_mapping=dict(stage.input_mapping),
            )
        )

    targets = {d.to_stage for d in workflow.dependencies}
    edges: List[WorkflowEdge] = [
        WorkflowEdge(START_NODE, stage.id)
        for stage in workflow.stages
        if stage.id not in targets
    ]
    for dep in workflow.dependencies:
        edges.append(
            WorkflowEdge(
                dep.from_stage,
                dep.to_stage,
                required=dep.required,
                data_flow=tuple(dep.data_flow),
                label="required" if dep.required else "",
            )
        )

    definition = WorkflowDefinition(
        config=WorkflowConfig(
            workflow_id=workflow.id,
            name=workflow.name,
            description=workflow.description,
            timeout_ms=workflow.timeout_ms,
        ),
        entry_point=START_NODE,
        nodes=tuple(nodes),
        edges=tuple(edges),
    )
    definition.validate()
    return definition


def load_plugin_workflow(path: Union[str, Path]) -> PluginWorkflow:
    """Read a stage pipeline from a YAML file."""
    with open(path, "r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"Workflow file {path} must contain a mapping")
    return PluginWorkflow.model_validate(raw)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

_MERMAID_SAFE = re.compile(r"[^A-Za-z0-9_]")


def render_mermaid(definition: WorkflowDefinition) -> str:
    """Render *definition* as a Mermaid flowchart.

    Plugin nodes are boxes, decisions are rhombi and aggregations are
    subroutine boxes.  Conditional edges are dotted, required edges are
    labelled.
    """
    lines = ["flowchart TD"]
    for node in definition.nodes:
        key = _MERMAID_SAFE.sub("_", node.id)
        text = node.label.replace('"', "'")
        if node.type == "plugin":
            lines.append(f'    {key}["{text}"]')
        elif node.type == "decision":
            lines.append(f'    {key}{{"{text}"}}')
        else:
            lines.append(f'    {key}[["{text}"]]')

    for edge in definition.edges:
        src = _MERMAID_SAFE.sub("_", edge.source)
        dst = _MERMAID_SAFE.sub("_", edge.target)
        label = edge.label or ("conditional" if edge.condition else "")
        arrow = "-.->" if edge.condition else "-->"
        if label:
            lines.append(f"    {src} {arrow}|{label}| {dst}")
        else:
            lines.append(f"    {src} {arrow} {dst}")
    return "\n".join(lines)
