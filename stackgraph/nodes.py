"""
Resource nodes and the handles callers use to wire them together.
"""

from typing import Any, Dict, Iterator, List, Mapping, Optional, Union

from stackgraph import policy
from stackgraph.errors import InvalidPropertyError, UnknownOutputError
from stackgraph.kinds import KindSpec, NodeKind, PolicyHost, spec_for
from stackgraph.policy import Capability, PolicyStatement
from stackgraph.references import UNRESOLVED, Reference, iter_references


class Node:
    """A declared resource. Outputs stay UNRESOLVED until realize() is called."""

    def __init__(self, kind: NodeKind, node_id: str, properties: Optional[Mapping[str, Any]], scope_path: str):
        self.kind = kind
        self.id = node_id
        self.path = f"{scope_path}/{node_id}" if scope_path else node_id
        self.spec: KindSpec = spec_for(kind)
        self.properties: Dict[str, Any] = dict(properties or {})
        self.outputs: Dict[str, Any] = {name: UNRESOLVED for name in sorted(self.spec.outputs)}
        self.policy_statements: List[PolicyStatement] = []
        self.depends_on: List[str] = []
        self.realized = False

        missing = sorted(p for p in self.spec.required if self.properties.get(p) is None)
        if missing:
            raise InvalidPropertyError(
                self.path, f"{kind.value} requires {', '.join(repr(p) for p in missing)}"
            )

    def add_policy_statement(self, statement: PolicyStatement) -> bool:
        if self.spec.policy_host is PolicyHost.NONE:
            raise InvalidPropertyError(self.path, f"{self.kind.value} does not support attached policy")
        if statement in self.policy_statements:
            return False
        self.policy_statements.append(statement)
        return True

    def add_dependency(self, path: str) -> None:
        if path not in self.depends_on:
            self.depends_on.append(path)

    def references(self) -> Iterator[Reference]:
        yield from iter_references(self.properties)
        for ref in iter_references(self.policy_statements):
            # A resource policy naming its own resource is attached after creation.
            if ref.source == self.path and self.spec.policy_host is PolicyHost.RESOURCE:
                continue
            yield ref

    def realize(self, outputs: Mapping[str, Any]) -> None:
        for name, value in outputs.items():
            if name not in self.spec.outputs:
                raise UnknownOutputError(self.path, name, self.kind)
            self.outputs[name] = value
        self.realized = True

    def __repr__(self) -> str:
        return f"Node({self.kind.value}, {self.path!r})"


class NodeHandle:
    """What add_node() hands back: outputs, policy and dependency wiring."""

    def __init__(self, node: Node, scope: Any):
        self.node = node
        self._scope = scope

    @property
    def id(self) -> str:
        return self.node.id

    @property
    def path(self) -> str:
        return self.node.path

    @property
    def kind(self) -> NodeKind:
        return self.node.kind

    @property
    def spec(self) -> KindSpec:
        return self.node.spec

    @property
    def root(self) -> Any:
        return self._scope.root

    def output(self, name: str) -> Reference:
        return Reference(self.node.path, name)

    @property
    def arn(self) -> Reference:
        return self.output("arn")

    @property
    def ref(self) -> Reference:
        return self.output("id")

    def add_policy_statement(self, statement: PolicyStatement) -> bool:
        return self.node.add_policy_statement(statement)

    def add_dependency(self, *others: Union["NodeHandle", str]) -> None:
        for other in others:
            self.node.add_dependency(other if isinstance(other, str) else other.path)

    def grant(self, capability: Capability, principal: Any) -> PolicyStatement:
        return policy.grant(capability, self, principal)

    def grant_read_data(self, principal: Any) -> PolicyStatement:
        return self.grant(policy.TABLE_READ, principal)

    def grant_read_write_data(self, principal: Any) -> PolicyStatement:
        return self.grant(policy.TABLE_READ_WRITE, principal)

    def grant_read(self, principal: Any) -> PolicyStatement:
        return self.grant(policy.BUCKET_READ, principal)

    def grant_put(self, principal: Any) -> PolicyStatement:
        return self.grant(policy.BUCKET_PUT, principal)

    def grant_pull(self, principal: Any) -> PolicyStatement:
        return self.grant(policy.REPOSITORY_PULL, principal)

    def grant_push(self, principal: Any) -> PolicyStatement:
        return self.grant(policy.REPOSITORY_PUSH, principal)

    def grant_pass_role(self, principal: Any) -> PolicyStatement:
        return self.grant(policy.PASS_ROLE, principal)

    def grant_invoke(self, principal: Any) -> PolicyStatement:
        return self.grant(policy.FUNCTION_INVOKE, principal)

    def __eq__(self, other: Any) -> bool:
        return isinstance(other, NodeHandle) and other.node is self.node

    def __hash__(self) -> int:
        return hash(self.node.path)

    def __repr__(self) -> str:
        return f"NodeHandle({self.kind.value}, {self.path!r})"
