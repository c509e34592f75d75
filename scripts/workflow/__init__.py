"""
Workflow engine for diagnostic plugins.

Key components:
- ``DiagnosticPlugin`` -- Protocol every plugin implements
- ``DiagnosticContext`` -- What a plugin sees when it runs
- ``WorkflowState`` -- Mutable state threaded through one run
- ``WorkflowDefinition`` / ``PluginWorkflow`` -- Node graphs and stage pipelines
- ``BasePlugin`` -- Convenience ABC for implementing plugins
- ``build_default_workflows`` -- Factory for the built-in workflows

``WorkflowExecutor`` lives in ``workflow.executor``; it depends on the
sandbox, which itself imports this package's protocol module.
"""

from .protocol import (
    DiagnosticContext,
    DiagnosticPlugin,
    SandboxBudgets,
    WorkflowState,
)
from .conditions import StageCondition
from .definition import (
    START_NODE,
    PluginWorkflow,
    ValidationResult,
    WorkflowConfig,
    WorkflowDefinition,
    WorkflowDependency,
    WorkflowEdge,
    WorkflowNode,
    WorkflowStage,
    compile_plugin_workflow,
    load_plugin_workflow,
    render_mermaid,
    validate_graph,
    validate_plugin_workflow,
)
from .base_plugin import BasePlugin, PluginAborted
from .defaults import (
    annotate_summary,
    build_default_workflows,
    ensure_default_workflows,
    summarize_severity,
)

__all__ = [
    # Core protocol
    "DiagnosticPlugin",
    "DiagnosticContext",
    "SandboxBudgets",
    "WorkflowState",
    # Definitions
    "START_NODE",
    "WorkflowNode",
    "WorkflowEdge",
    "WorkflowConfig",
    "WorkflowDefinition",
    "WorkflowStage",
    "WorkflowDependency",
    "PluginWorkflow",
    "StageCondition",
    "ValidationResult",
    "compile_plugin_workflow",
    "load_plugin_workflow",
    "validate_graph",
    "validate_plugin_workflow",
    "render_mermaid",
    # Base class
    "BasePlugin",
    "PluginAborted",
    # Defaults
    "summarize_severity",
    "annotate_summary",
    "build_default_workflows",
    "ensure_default_workflows",
]
