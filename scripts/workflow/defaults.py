"""
Built-in workflows and the decision/aggregation handlers they use.

``build_default_workflows`` returns fresh definitions every call:

  - ``workflow.baseline``        : discovery -> protocol -> streaming -> governance
  - ``workflow.security-sprint`` : auth, then ratelimit + permissioning in
                                   parallel, threat model, dependency scan
  - ``graph.baseline``           : node graph with a severity gate and report
  - ``graph.security``           : security sweep whose dependency scanner
                                   only runs when major/blocker findings exist
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Union

from .definition import (
    PluginWorkflow,
    WorkflowConfig,
    WorkflowDefinition,
    WorkflowDependency,
    WorkflowEdge,
    WorkflowNode,
    WorkflowStage,
)
from .protocol import WorkflowState

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


def summarize_severity(state: WorkflowState) -> Dict[str, Any]:
    """Decision handler: derive severity flags from accumulated findings."""
    counts: Dict[str, int] = {}
    for finding in state.findings:
        counts[finding.severity] = counts.get(finding.severity, 0) + 1

    if counts.get("critical"):
        severity = "critical"
    elif counts.get("major"):
        severity = "major"
    elif counts.get("minor"):
        severity = "minor"
    else:
        severity = "info"

    return {
        "has_blockers": counts.get("critical", 0) > 0,
        "has_major": counts.get("major", 0) > 0,
        "finding_count": len(state.findings),
        "severity": severity,
    }


def annotate_summary(state: WorkflowState) -> Dict[str, Any]:
    """Aggregation handler: append a one-line summary to the trace."""
    blockers = sum(1 for f in state.findings if f.severity == "critical")
    majors = sum(1 for f in state.findings if f.severity == "major")
    summary = f"Findings: {len(state.findings)}; blockers={blockers}; majors={majors}"
    logger.info("[%s] %s", state.workflow_id, summary)
    return {"execution_path": [summary]}


def init_context(state: WorkflowState) -> Dict[str, Any]:
    """Aggregation handler: record the diagnosed target."""
    return {"target": state.context.endpoint, "deterministic": state.context.deterministic}


def needs_dependency_scan(state: WorkflowState) -> bool:
    return bool(state.has_major or state.has_blockers)


# ---------------------------------------------------------------------------
# Definitions
# ---------------------------------------------------------------------------


def _baseline_pipeline() -> PluginWorkflow:
    return PluginWorkflow(
        id="workflow.baseline",
        name="Baseline Regression",
        description="Runs discovery, protocol and streaming checks with governance gating.",
        stages=[
            WorkflowStage(id="discovery", plugin_id="discovery", order=1),
            WorkflowStage(id="protocol", plugin_id="protocol", order=2),
            WorkflowStage(id="streaming", plugin_id="streaming", order=3),
            WorkflowStage(id="governance", plugin_id="governance", order=4),
        ],
        dependencies=[
            WorkflowDependency(
                from_stage="discovery", to_stage="protocol",
                data_flow=["artifacts"], required=True,
            ),
            WorkflowDependency(
                from_stage="protocol", to_stage="streaming",
                data_flow=["findings"], required=True,
            ),
            WorkflowDependency(
                from_stage="streaming", to_stage="governance",
                data_flow=["findings"], required=False,
            ),
        ],
        timeout_ms=300_000,
    )


def _security_pipeline() -> PluginWorkflow:
    return PluginWorkflow(
        id="workflow.security-sprint",
        name="Security Sprint",
        description="Parallel auth, rate limit, threat-model and dependency scanning.",
        stages=[
            WorkflowStage(id="auth", plugin_id="auth", order=1),
            WorkflowStage(id="ratelimit", plugin_id="ratelimit", order=2, parallel=True),
            WorkflowStage(id="permissioning", plugin_id="permissioning", order=2, parallel=True),
            WorkflowStage(id="threat", plugin_id="threat-model", order=3),
            WorkflowStage(id="dependencies", plugin_id="dependency-scanner", order=4),
        ],
        dependencies=[
            WorkflowDependency(
                from_stage="auth", to_stage="ratelimit",
                data_flow=["headers"], required=True,
            ),
            WorkflowDependency(
                from_stage="auth", to_stage="permissioning",
                data_flow=["tokens"], required=True,
            ),
            WorkflowDependency(
                from_stage="ratelimit", to_stage="threat", data_flow=["findings"],
            ),
            WorkflowDependency(
                from_stage="permissioning", to_stage="threat", data_flow=["findings"],
            ),
            WorkflowDependency(
                from_stage="threat", to_stage="dependencies", data_flow=["findings"],
            ),
        ],
        timeout_ms=420_000,
    )


def _baseline_graph() -> WorkflowDefinition:
    return WorkflowDefinition(
        config=WorkflowConfig(
            workflow_id="graph.baseline",
            name="Baseline Diagnostic Graph",
            description="Discovery, protocol and streaming nodes with a severity gate.",
            timeout_ms=600_000,
            enable_checkpointing=True,
        ),
        entry_point="context-init",
        nodes=(
            WorkflowNode("context-init", "Context Builder", "aggregation", handler=init_context),
            WorkflowNode("discovery", "Discovery Probe", plugin_id="discovery"),
            WorkflowNode("protocol", "Protocol Compliance", plugin_id="protocol"),
            WorkflowNode("streaming", "Streaming Health", plugin_id="streaming"),
            WorkflowNode("severity-gate", "Severity Gate", "decision", handler=summarize_severity),
            WorkflowNode("report", "Report Synthesizer", "aggregation", handler=annotate_summary),
        ),
        edges=(
            WorkflowEdge("context-init", "discovery"),
            WorkflowEdge("discovery", "protocol"),
            WorkflowEdge("protocol", "streaming"),
            WorkflowEdge("streaming", "severity-gate"),
            WorkflowEdge("severity-gate", "report"),
        ),
    )


def _security_graph() -> WorkflowDefinition:
    return WorkflowDefinition(
        config=WorkflowConfig(
            workflow_id="graph.security",
            name="Security Sweep Graph",
            description="Auth, permissioning and threat model with a conditional dependency scanner.",
            timeout_ms=900_000,
            enable_checkpointing=True,
        ),
        entry_point="auth",
        nodes=(
            WorkflowNode("auth", "Authentication Audit", plugin_id="auth"),
            WorkflowNode("permissioning", "Permissioning Review", plugin_id="permissioning"),
            WorkflowNode("ratelimit", "Rate Limit Probe", plugin_id="ratelimit"),
            WorkflowNode("threat", "Threat Model", plugin_id="threat-model"),
            WorkflowNode("decision-security", "Security Branch", "decision", handler=summarize_severity),
            WorkflowNode("dependencies", "Dependency Scanner", plugin_id="dependency-scanner"),
            WorkflowNode("security-report", "Security Summary", "aggregation", handler=annotate_summary),
        ),
        edges=(
            WorkflowEdge("auth", "permissioning"),
            WorkflowEdge("permissioning", "ratelimit"),
            WorkflowEdge("ratelimit", "threat"),
            WorkflowEdge("threat", "decision-security"),
            WorkflowEdge(
                "decision-security", "dependencies",
                condition=needs_dependency_scan, label="major or blocker",
            ),
            WorkflowEdge("decision-security", "security-report"),
            WorkflowEdge("dependencies", "security-report"),
        ),
    )


def build_default_workflows() -> List[Union[PluginWorkflow, WorkflowDefinition]]:
    return [
        _baseline_pipeline(),
        _security_pipeline(),
        _baseline_graph(),
        _security_graph(),
    ]


def ensure_default_workflows(executor: Any) -> List[str]:
    """Register the built-in workflows on *executor* once.

    Stage pipelines are skipped while any of their plugins is missing
    from the executor's registry; node graphs resolve plugins at dispatch
    time and are always registered.  Returns the ids registered now.
    """
    registered: List[str] = []
    registry = executor.sandbox.registry
    for workflow in build_default_workflows():
        workflow_id = workflow.id if isinstance(workflow, PluginWorkflow) else workflow.workflow_id
        if executor.get_workflow(workflow_id) is not None:
            continue
        if isinstance(workflow, PluginWorkflow):
            missing = sorted({s.plugin_id for s in workflow.stages if s.plugin_id not in registry})
            if missing:
                logger.warning(
                    "Skipping default workflow %s because plugins are missing: %s",
                    workflow_id, ", ".join(missing),
                )
                continue
        registered.append(executor.create_workflow(workflow))
    return registered
