"""Tests for resource nodes, handles and the composite tree.

Covers id uniqueness per scope, required-property validation, paths,
lookups and realization of outputs.
"""

from __future__ import annotations

import pytest

from stackgraph.composite import Composite, Stack
from stackgraph.errors import DuplicateIdError, InvalidPropertyError, UnknownOutputError
from stackgraph.kinds import NodeKind
from stackgraph.policy import PolicyStatement, Principal
from stackgraph.references import UNRESOLVED, Reference

# ---------------------------------------------------------------------------
# Helper factories
# ---------------------------------------------------------------------------


def _make_role(scope, node_id: str = "R"):
    return scope.add_node(NodeKind.ROLE, node_id, {"assumed_by": Principal.service("ecs-tasks.amazonaws.com")})


def _make_table(scope, node_id: str = "T"):
    return scope.add_node(NodeKind.TABLE, node_id, {"hash_key": "id", "attributes": [{"name": "id", "type": "S"}]})


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


class TestCreate:
    def test_duplicate_id_in_same_scope_fails(self, stack: Stack) -> None:
        _make_table(stack, "T")
        with pytest.raises(DuplicateIdError) as exc_info:
            _make_table(stack, "T")
        assert exc_info.value.node_id == "T"

    def test_same_id_in_different_scopes_succeeds(self, stack: Stack) -> None:
        first = stack.add_composite("first")
        second = stack.add_composite("second")
        a = _make_table(first, "T")
        b = _make_table(second, "T")
        assert a.path == "first/T"
        assert b.path == "second/T"

    def test_node_and_composite_share_the_id_namespace(self, stack: Stack) -> None:
        stack.add_composite("shared")
        with pytest.raises(DuplicateIdError):
            _make_table(stack, "shared")

    def test_role_requires_assumed_by(self, stack: Stack) -> None:
        with pytest.raises(InvalidPropertyError) as exc_info:
            stack.add_node(NodeKind.ROLE, "R", {"name": "no-trust"})
        assert "assumed_by" in str(exc_info.value)

    def test_table_requires_partition_key(self, stack: Stack) -> None:
        with pytest.raises(InvalidPropertyError) as exc_info:
            stack.add_node(NodeKind.TABLE, "T", {"attributes": []})
        assert "hash_key" in str(exc_info.value)

    def test_failed_create_leaves_scope_untouched(self, stack: Stack) -> None:
        with pytest.raises(InvalidPropertyError):
            stack.add_node(NodeKind.ROLE, "R", {})
        _make_role(stack, "R")
        assert [child.id for child in stack.children] == ["R"]

    def test_kind_accepts_type_token(self, stack: Stack) -> None:
        handle = stack.add_node("cloudwatch.LogGroup", "logs")
        assert handle.kind is NodeKind.LOG_GROUP

    def test_unknown_kind_token_fails(self, stack: Stack) -> None:
        with pytest.raises(InvalidPropertyError):
            stack.add_node("s3.NotAThing", "x")

    def test_id_with_separator_fails(self, stack: Stack) -> None:
        with pytest.raises(InvalidPropertyError):
            stack.add_node(NodeKind.LOG_GROUP, "a/b")

    def test_id_with_output_separator_fails(self, stack: Stack) -> None:
        with pytest.raises(InvalidPropertyError):
            stack.add_node(NodeKind.LOG_GROUP, "my.table")


# ---------------------------------------------------------------------------
# Handles
# ---------------------------------------------------------------------------


class TestHandle:
    def test_output_is_a_reference_by_path(self, stack: Stack) -> None:
        scope = stack.add_composite("Dynamodb")
        table = _make_table(scope, "patients")
        assert table.output("arn") == Reference("Dynamodb/patients", "arn")
        assert table.arn == Reference("Dynamodb/patients", "arn")
        assert table.ref == Reference("Dynamodb/patients", "id")

    def test_output_is_checked_lazily(self, stack: Stack) -> None:
        table = _make_table(stack)
        assert table.output("no_such_output") == Reference("T", "no_such_output")

    def test_outputs_start_unresolved(self, stack: Stack) -> None:
        table = _make_table(stack)
        assert all(value is UNRESOLVED for value in table.node.outputs.values())
        assert not table.node.realized

    def test_policy_statement_is_deduplicated(self, stack: Stack) -> None:
        role = _make_role(stack)
        stmt = PolicyStatement(actions=["logs:PutLogEvents"], resources=["*"])
        assert role.add_policy_statement(stmt) is True
        assert role.add_policy_statement(PolicyStatement(actions={"logs:PutLogEvents"}, resources="*")) is False
        assert role.node.policy_statements == [stmt]

    def test_policy_statement_on_unsupported_kind_fails(self, stack: Stack) -> None:
        table = _make_table(stack)
        with pytest.raises(InvalidPropertyError):
            table.add_policy_statement(PolicyStatement(actions=["s3:GetObject"]))

    def test_add_dependency_accepts_handles_and_paths(self, stack: Stack) -> None:
        a = _make_table(stack, "A")
        b = _make_table(stack, "B")
        c = _make_table(stack, "C")
        c.add_dependency(a, "B", b)
        assert c.node.depends_on == ["A", "B"]


# ---------------------------------------------------------------------------
# Realization
# ---------------------------------------------------------------------------


class TestRealize:
    def test_realize_fills_outputs(self, stack: Stack) -> None:
        table = _make_table(stack)
        table.node.realize({"arn": "arn:aws:dynamodb:::table/T", "id": "T"})
        assert table.node.outputs["arn"] == "arn:aws:dynamodb:::table/T"
        assert table.node.realized

    def test_realize_rejects_unknown_output(self, stack: Stack) -> None:
        table = _make_table(stack)
        with pytest.raises(UnknownOutputError):
            table.node.realize({"dns_name": "x"})


# ---------------------------------------------------------------------------
# Composite tree
# ---------------------------------------------------------------------------


class _Tables(Composite):
    def __init__(self, scope: Composite, id: str):
        super().__init__(scope, id)
        self.table = _make_table(self, "table")


class TestComposite:
    def test_subclass_registers_with_parent(self, stack: Stack) -> None:
        tables = _Tables(stack, "Tables")
        assert tables.parent is stack
        assert tables.root is stack
        assert tables.path == "Tables"
        assert tables.table.path == "Tables/table"

    def test_parent_cannot_be_reassigned(self, stack: Stack) -> None:
        child = stack.add_composite("child")
        with pytest.raises(AttributeError):
            child.parent = None

    def test_nested_lookup(self, stack: Stack) -> None:
        outer = stack.add_composite("outer")
        inner = outer.add_composite("inner")
        _make_table(inner, "T")
        assert stack.node("outer/inner/T").path == "outer/inner/T"
        assert outer.node("inner/T").id == "T"
        with pytest.raises(KeyError):
            stack.node("outer/missing")

    def test_walk_is_depth_first_in_declaration_order(self, stack: Stack) -> None:
        _make_table(stack, "a")
        scope = stack.add_composite("b")
        _make_table(scope, "c")
        _make_table(stack, "d")
        assert [node.path for node in stack.walk()] == ["a", "b/c", "d"]

    def test_config_is_read_from_root(self, stack: Stack) -> None:
        scope = stack.add_composite("x").add_composite("y")
        assert scope.config is stack.config
        assert stack.resource_name("queue") == "test-dev-use1-queue"

    def test_duplicate_export_fails(self, stack: Stack) -> None:
        table = _make_table(stack)
        stack.export("tableArn", table.arn)
        with pytest.raises(DuplicateIdError):
            stack.export("tableArn", table.arn)
