"""
Tests for workflow definitions

Covers graph validation, stage-pipeline compilation and loading, stage
conditions and Mermaid rendering.
"""

import sys
from pathlib import Path

import pytest
from pydantic import ValidationError

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "scripts"))

from exceptions import GraphValidationError
from finding_normalizer import normalize_findings
from workflow.conditions import StageCondition, compare_values
from workflow.defaults import build_default_workflows
from workflow.definition import (
    START_NODE,
    PluginWorkflow,
    WorkflowConfig,
    WorkflowDefinition,
    WorkflowDependency,
    WorkflowEdge,
    WorkflowNode,
    WorkflowStage,
    compile_plugin_workflow,
    find_cycle,
    load_plugin_workflow,
    render_mermaid,
    validate_graph,
    validate_plugin_workflow,
)
from workflow.protocol import WorkflowState


def _definition(nodes, edges, entry="a"):
    return WorkflowDefinition(
        config=WorkflowConfig(workflow_id="test"),
        entry_point=entry,
        nodes=tuple(nodes),
        edges=tuple(edges),
    )


def _findings(*severities):
    return normalize_findings(
        [
            {"id": f"f{i}", "area": "test", "severity": sev, "title": f"finding {i}"}
            for i, sev in enumerate(severities)
        ],
        "check",
    )


# ============================================================================
# Nodes
# ============================================================================


class TestWorkflowNode:
    def test_plugin_node_needs_plugin_id(self):
        with pytest.raises(ValueError, match="needs a plugin_id"):
            WorkflowNode("a")

    def test_unknown_type_rejected(self):
        with pytest.raises(ValueError):
            WorkflowNode("a", type="loop")

    def test_label_falls_back_to_id(self):
        assert WorkflowNode("a", plugin_id="p").label == "a"
        assert WorkflowNode("a", "Check", plugin_id="p").label == "Check"


# ============================================================================
# Graph validation
# ============================================================================


class TestValidateGraph:
    def test_valid_graph(self):
        result = validate_graph(
            _definition(
                [WorkflowNode("a", plugin_id="p"), WorkflowNode("b", plugin_id="q")],
                [WorkflowEdge("a", "b")],
            )
        )
        assert result.valid
        assert result.errors == []

    def test_cycle_reported(self):
        result = validate_graph(
            _definition(
                [WorkflowNode(n, plugin_id=n) for n in "abc"],
                [WorkflowEdge("a", "b"), WorkflowEdge("b", "c"), WorkflowEdge("c", "b")],
            )
        )
        assert not result.valid
        assert "Cycle detected: b -> c -> b" in result.errors

    def test_unknown_references(self):
        result = validate_graph(
            _definition([WorkflowNode("a", plugin_id="p")], [WorkflowEdge("a", "ghost")], entry="nope")
        )
        assert "Entry point references unknown node: nope" in result.errors
        assert "Edge references unknown node: ghost" in result.errors

    def test_duplicate_ids(self):
        result = validate_graph(
            _definition([WorkflowNode("a", plugin_id="p"), WorkflowNode("a", plugin_id="q")], [])
        )
        assert "Duplicate node ID: a" in result.errors

    def test_unreachable_is_warning(self):
        result = validate_graph(
            _definition([WorkflowNode("a", plugin_id="p"), WorkflowNode("b", plugin_id="q")], [])
        )
        assert result.valid
        assert result.warnings == ["Node b is unreachable from a"]

    def test_validate_raises_with_errors(self):
        definition = _definition(
            [WorkflowNode("a", plugin_id="p"), WorkflowNode("b", plugin_id="q")],
            [WorkflowEdge("a", "b"), WorkflowEdge("b", "a")],
        )
        with pytest.raises(GraphValidationError) as exc_info:
            definition.validate()
        assert exc_info.value.errors == ["Cycle detected: a -> b -> a"]

    def test_find_cycle_none_for_dag(self):
        assert find_cycle(["a", "b", "c"], [WorkflowEdge("a", "b"), WorkflowEdge("a", "c")]) is None

    def test_adjacency_helpers(self):
        definition = _definition(
            [WorkflowNode(n, plugin_id=n) for n in "abc"],
            [WorkflowEdge("a", "b"), WorkflowEdge("a", "c"), WorkflowEdge("b", "c")],
        )
        assert [e.target for e in definition.outbound("a")] == ["b", "c"]
        assert [e.source for e in definition.inbound("c")] == ["a", "b"]
        assert definition.reachable() == {"a", "b", "c"}
        with pytest.raises(KeyError):
            definition.node("z")


# ============================================================================
# Stage pipelines
# ============================================================================


class TestPluginWorkflow:
    def test_aliases_accepted(self):
        workflow = PluginWorkflow.model_validate(
            {
                "id": "wf",
                "timeout": 1000,
                "stages": [{"id": "s", "pluginId": "p", "inputMapping": {"findings": "prior"}, "timeout": 500}],
                "dependencies": [],
            }
        )
        assert workflow.timeout_ms == 1000
        assert workflow.stages[0].plugin_id == "p"
        assert workflow.stages[0].input_mapping == {"findings": "prior"}
        assert workflow.stages[0].timeout_ms == 500

    def test_validation_errors(self):
        workflow = PluginWorkflow(
            id="wf",
            stages=[
                WorkflowStage(id="a", plugin_id="p", order=1),
                WorkflowStage(id="a", plugin_id="q", order=2),
            ],
            dependencies=[WorkflowDependency(from_stage="a", to_stage="missing")],
        )
        result = validate_plugin_workflow(workflow, known_plugins=["p"])
        assert "Duplicate stage ID: a" in result.errors
        assert "Plugin not found: q" in result.errors
        assert "Dependency references unknown stage: missing" in result.errors

    def test_circular_dependency(self):
        workflow = PluginWorkflow(
            id="wf",
            stages=[WorkflowStage(id="a", plugin_id="p", order=1), WorkflowStage(id="b", plugin_id="q", order=2)],
            dependencies=[
                WorkflowDependency(from_stage="a", to_stage="b"),
                WorkflowDependency(from_stage="b", to_stage="a"),
            ],
        )
        result = validate_plugin_workflow(workflow)
        assert any(e.startswith("Circular dependency detected") for e in result.errors)
        with pytest.raises(GraphValidationError):
            compile_plugin_workflow(workflow)

    def test_order_inversion_is_warning(self):
        workflow = PluginWorkflow(
            id="wf",
            stages=[WorkflowStage(id="a", plugin_id="p", order=2), WorkflowStage(id="b", plugin_id="q", order=1)],
            dependencies=[WorkflowDependency(from_stage="a", to_stage="b")],
        )
        result = validate_plugin_workflow(workflow)
        assert result.valid
        assert result.warnings == ["Dependency a -> b has invalid order (2 >= 1)"]

    def test_reserved_stage_id(self):
        workflow = PluginWorkflow(id="wf", stages=[WorkflowStage(id=START_NODE, plugin_id="p")])
        assert f"Stage ID {START_NODE} is reserved" in validate_plugin_workflow(workflow).errors

    def test_compile_baseline(self):
        baseline = build_default_workflows()[0]
        definition = compile_plugin_workflow(baseline)

        assert definition.entry_point == START_NODE
        assert definition.workflow_id == "workflow.baseline"
        assert definition.config.timeout_ms == 300_000
        start = definition.node(START_NODE)
        assert start.type == "decision"
        assert start.order == 0
        assert [e.target for e in definition.outbound(START_NODE)] == ["discovery"]

        (edge,) = definition.inbound("protocol")
        assert edge.source == "discovery"
        assert edge.required is True
        assert edge.data_flow == ("artifacts",)
        assert definition.node("protocol").order == 2

    def test_compile_carries_budgets_and_guards(self):
        workflow = PluginWorkflow(
            id="wf",
            stages=[
                WorkflowStage(id="a", plugin_id="p", order=1, timeout_ms=750),
                WorkflowStage(
                    id="b",
                    plugin_id="q",
                    order=2,
                    condition=StageCondition(type="severity", operator="gte", value="major"),
                ),
            ],
        )
        definition = compile_plugin_workflow(workflow)
        assert definition.node("a").budgets.time_ms == 750
        assert definition.node("b").budgets is None

        guard = definition.node("b").condition
        assert guard(WorkflowState(findings=_findings("major"))) is True
        assert guard(WorkflowState(findings=_findings("minor", "info"))) is False
        # both roots hang off the start node
        assert sorted(e.target for e in definition.outbound(START_NODE)) == ["a", "b"]

    def test_load_from_yaml(self, tmp_path):
        path = tmp_path / "workflow.yml"
        path.write_text(
            "id: yaml-flow\n"
            "name: From YAML\n"
            "timeout: 60000\n"
            "stages:\n"
            "  - id: discovery\n"
            "    pluginId: discovery\n"
            "    order: 1\n"
            "  - id: protocol\n"
            "    pluginId: protocol\n"
            "    order: 2\n"
            "    condition:\n"
            "      type: finding_count\n"
            "      operator: gt\n"
            "      value: 0\n"
            "dependencies:\n"
            "  - fromStage: discovery\n"
            "    toStage: protocol\n"
            "    dataFlow: [artifacts]\n"
            "    required: true\n"
        )
        workflow = load_plugin_workflow(path)
        assert workflow.id == "yaml-flow"
        assert workflow.timeout_ms == 60000
        assert workflow.stages[1].condition.type == "finding_count"
        assert workflow.dependencies[0].required is True

    def test_load_rejects_non_mapping(self, tmp_path):
        path = tmp_path / "list.yml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ValueError, match="must contain a mapping"):
            load_plugin_workflow(path)


# ============================================================================
# Stage conditions
# ============================================================================


class TestStageCondition:
    def test_invalid_type_and_operator(self):
        with pytest.raises(ValidationError):
            StageCondition(type="regex", operator="eq", value="x")
        with pytest.raises(ValidationError):
            StageCondition(type="severity", operator="approx", value="x")

    def test_severity_thresholds(self):
        cond = StageCondition(type="severity", operator="gte", value="major")
        assert cond.evaluate(_findings("blocker"))
        assert cond.evaluate(_findings("minor", "major"))
        assert not cond.evaluate(_findings("minor", "info"))
        assert not cond.evaluate([])

    def test_severity_contains_means_equal_rank(self):
        cond = StageCondition(type="severity", operator="contains", value="blocker")
        assert cond.evaluate(_findings("blocker"))
        assert not cond.evaluate(_findings("major"))

    def test_finding_count(self):
        cond = StageCondition(type="finding_count", operator="gt", value=1)
        assert cond.evaluate(_findings("info", "minor"))
        assert not cond.evaluate(_findings("info"))

    def test_custom_field(self):
        cond = StageCondition(type="custom", operator="eq", field="source", value="check")
        assert cond.evaluate(_findings("info"))
        assert not StageCondition(type="custom", operator="eq", field="source", value="other").evaluate(
            _findings("info")
        )

    def test_custom_without_field_is_true(self):
        assert StageCondition(type="custom", operator="eq", value=1).evaluate([])

    def test_compare_values(self):
        assert compare_values("10", "gt", 2)
        assert compare_values(["a", "b"], "contains", "a")
        assert compare_values("3", "eq", 3)
        assert not compare_values("abc", "lt", 5)


# ============================================================================
# Rendering
# ============================================================================


class TestRenderMermaid:
    def test_shapes_and_edges(self):
        definition = _definition(
            [
                WorkflowNode("check", "Check", plugin_id="p"),
                WorkflowNode("gate", "Severity Gate", "decision"),
                WorkflowNode("report", "Report", "aggregation"),
            ],
            [
                WorkflowEdge("check", "gate", required=True, label="required"),
                WorkflowEdge("gate", "report", condition=lambda s: True),
            ],
            entry="check",
        )
        lines = render_mermaid(definition).splitlines()
        assert lines[0] == "flowchart TD"
        assert '    check["Check"]' in lines
        assert '    gate{"Severity Gate"}' in lines
        assert '    report[["Report"]]' in lines
        assert "    check -->|required| gate" in lines
        assert "    gate -.->|conditional| report" in lines

    def test_ids_are_sanitized(self):
        definition = _definition(
            [WorkflowNode("severity-gate", type="decision")], [], entry="severity-gate"
        )
        assert '    severity_gate{"severity-gate"}' in render_mermaid(definition)
