"""Tests for the graph builder / planner.

Covers dependency ordering, cycle detection, missing references, unknown
outputs, plan levels and the rendered plan records.
"""

from __future__ import annotations

import random

import pytest
import yaml

from stackgraph.composite import Stack
from stackgraph.errors import CyclicDependencyError, UnknownOutputError, UnresolvedReferenceError
from stackgraph.kinds import NodeKind
from stackgraph.planner import plan
from stackgraph.policy import PolicyStatement, Principal
from stackgraph.references import Reference

# ---------------------------------------------------------------------------
# Helper factories
# ---------------------------------------------------------------------------


def _make_role(scope, node_id: str = "R"):
    return scope.add_node(NodeKind.ROLE, node_id, {"assumed_by": Principal.service("ecs-tasks.amazonaws.com")})


def _make_table(scope, node_id: str = "T"):
    return scope.add_node(NodeKind.TABLE, node_id, {"hash_key": "id", "attributes": [{"name": "id", "type": "S"}]})


def _make_group(scope, node_id: str, **properties):
    return scope.add_node(NodeKind.LOG_GROUP, node_id, properties)


def _assert_respects_edges(ordered_plan) -> None:
    for step in ordered_plan:
        for dep in step.depends_on:
            assert ordered_plan.index_of(dep) < ordered_plan.index_of(step.node_id)


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------


class TestOrdering:
    def test_reference_orders_source_first(self, stack: Stack) -> None:
        _make_group(stack, "consumer", kms_key_id=Reference("producer", "arn"))
        _make_group(stack, "producer")
        ordered = plan(stack)
        assert ordered.order == ["producer", "consumer"]
        assert ordered.step("consumer").depends_on == ("producer",)

    def test_explicit_depends_on(self, stack: Stack) -> None:
        _make_group(stack, "a")
        b = _make_group(stack, "b")
        a = stack.node("a")
        a.add_dependency(b)
        assert plan(stack).order == ["b", "a"]

    def test_grant_places_table_before_role(self, stack: Stack) -> None:
        role = _make_role(stack, "R")
        table = _make_table(stack, "T")
        table.grant_read_write_data(role)
        ordered = plan(stack)
        assert ordered.order.index("T") < ordered.order.index("R")
        assert ordered.step("R").depends_on == ("T",)

    def test_random_acyclic_graphs_are_fully_ordered(self, stack: Stack) -> None:
        rng = random.Random(1234)
        count = 60
        for i in range(count):
            deps = [f"n{j}" for j in range(i) if rng.random() < 0.1]
            _make_group(stack, f"n{i}", data={"refs": [Reference(d, "arn") for d in deps]})
        # One node in a nested scope pointing back at the root ones.
        scope = stack.add_composite("nested").add_composite("deeper")
        _make_group(scope, "leaf", kms_key_id=Reference("n59", "arn"))
        ordered = plan(stack)
        assert len(ordered) == count + 1
        assert sorted(ordered.order) == sorted([f"n{i}" for i in range(count)] + ["nested/deeper/leaf"])
        _assert_respects_edges(ordered)

    def test_long_chain_does_not_recurse(self, stack: Stack) -> None:
        length = 3000
        _make_group(stack, "c0")
        for i in range(1, length):
            _make_group(stack, f"c{i}", kms_key_id=Reference(f"c{i - 1}", "arn"))
        ordered = plan(stack)
        assert ordered.order[0] == "c0"
        assert ordered.order[-1] == f"c{length - 1}"

    def test_independent_nodes_keep_declaration_order(self, stack: Stack) -> None:
        for name in ("x", "y", "z"):
            _make_group(stack, name)
        assert plan(stack).order == ["x", "y", "z"]

    def test_levels_group_independent_nodes(self, stack: Stack) -> None:
        _make_group(stack, "a")
        _make_group(stack, "b")
        _make_group(stack, "c", kms_key_id=Reference("a", "arn"))
        _make_group(stack, "d", kms_key_id=Reference("c", "arn"), name=Reference("b", "name"))
        ordered = plan(stack)
        assert ordered.levels() == [["a", "b"], ["c"], ["d"]]

    def test_teardown_order_is_reversed(self, stack: Stack) -> None:
        _make_group(stack, "a")
        _make_group(stack, "b", kms_key_id=Reference("a", "arn"))
        assert plan(stack).teardown_order() == ["b", "a"]

    def test_empty_stack_plans_nothing(self, stack: Stack) -> None:
        ordered = plan(stack)
        assert len(ordered) == 0
        assert ordered.levels() == []


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    def test_mutual_depends_on_reports_cycle(self, stack: Stack) -> None:
        x = _make_group(stack, "X")
        y = _make_group(stack, "Y")
        x.add_dependency(y)
        y.add_dependency(x)
        with pytest.raises(CyclicDependencyError) as exc_info:
            plan(stack)
        assert exc_info.value.cycle == ["X", "Y", "X"]

    def test_cycle_through_references(self, stack: Stack) -> None:
        _make_group(stack, "a", kms_key_id=Reference("c", "arn"))
        _make_group(stack, "b", kms_key_id=Reference("a", "arn"))
        _make_group(stack, "c", kms_key_id=Reference("b", "arn"))
        with pytest.raises(CyclicDependencyError) as exc_info:
            plan(stack)
        assert exc_info.value.cycle == ["a", "c", "b", "a"]

    def test_self_reference_is_a_cycle(self, stack: Stack) -> None:
        _make_group(stack, "a", kms_key_id=Reference("a", "arn"))
        with pytest.raises(CyclicDependencyError) as exc_info:
            plan(stack)
        assert exc_info.value.cycle == ["a", "a"]

    def test_cycle_does_not_touch_outputs(self, stack: Stack) -> None:
        x = _make_group(stack, "X")
        y = _make_group(stack, "Y")
        x.add_dependency(y)
        y.add_dependency(x)
        with pytest.raises(CyclicDependencyError):
            plan(stack)
        assert not x.node.realized
        assert not y.node.realized

    def test_missing_reference_names_target(self, stack: Stack) -> None:
        _make_group(stack, "A", kms_key_id=Reference("B", "arn"))
        with pytest.raises(UnresolvedReferenceError) as exc_info:
            plan(stack)
        assert exc_info.value.source == "B"
        assert exc_info.value.referrer == "A"
        assert "B" in str(exc_info.value)

    def test_missing_depends_on_target(self, stack: Stack) -> None:
        a = _make_group(stack, "A")
        a.add_dependency("ghost")
        with pytest.raises(UnresolvedReferenceError) as exc_info:
            plan(stack)
        assert exc_info.value.source == "ghost"

    def test_unknown_output_is_rejected(self, stack: Stack) -> None:
        _make_group(stack, "logs")
        _make_group(stack, "other", kms_key_id=Reference("logs", "dns_name"))
        with pytest.raises(UnknownOutputError) as exc_info:
            plan(stack)
        assert exc_info.value.output == "dns_name"

    def test_reference_inside_policy_is_validated(self, stack: Stack) -> None:
        role = _make_role(stack)
        role.add_policy_statement(PolicyStatement(actions=["s3:GetObject"], resources=[Reference("nowhere", "arn")]))
        with pytest.raises(UnresolvedReferenceError):
            plan(stack)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class TestRecords:
    def test_records_render_references(self, stack: Stack) -> None:
        role = _make_role(stack, "R")
        table = _make_table(stack, "T")
        table.grant_read_data(role)
        records = plan(stack).to_records()
        assert [r["nodeId"] for r in records] == ["T", "R"]
        role_record = records[1]
        assert role_record["kind"] == "iam.Role"
        assert role_record["dependsOn"] == ["T"]
        assert role_record["resolvedProperties"]["assumed_by"] == {"Service": "ecs-tasks.amazonaws.com"}
        assert role_record["policyStatements"][0]["Resource"] == ["${T.arn}"]

    def test_plan_renders_as_yaml(self, stack: Stack) -> None:
        _make_group(stack, "a")
        _make_group(stack, "b", kms_key_id=Reference("a", "arn"))
        loaded = yaml.safe_load(plan(stack).to_yaml())
        assert loaded[1] == {
            "nodeId": "b",
            "kind": "cloudwatch.LogGroup",
            "resolvedProperties": {"kms_key_id": "${a.arn}"},
            "dependsOn": ["a"],
        }
