"""
Composites group nodes into a tree. A composite's parent is fixed when it is
constructed, so the tree cannot grow a cycle. The root of every tree is a
Stack, which carries the configuration and the grant ledger.
"""

from typing import Any, Dict, Iterator, List, Mapping, Optional, Union

from stackgraph import log
from stackgraph.config import StackConfig
from stackgraph.errors import DuplicateIdError, InvalidPropertyError, StackGraphError
from stackgraph.kinds import NodeKind, parse_kind
from stackgraph.nodes import Node, NodeHandle
from stackgraph.policy import Grant
from stackgraph.references import parse_value

PATH_SEPARATOR = "/"
OUTPUT_SEPARATOR = "."


def _validate_id(node_id: str) -> None:
    if not isinstance(node_id, str) or not node_id:
        raise InvalidPropertyError(str(node_id), "id must be a non-empty string")
    for separator in (PATH_SEPARATOR, OUTPUT_SEPARATOR):
        if separator in node_id:
            raise InvalidPropertyError(node_id, f"id must not contain '{separator}'")


class Composite:
    def __init__(self, scope: Optional["Composite"], id: str):
        _validate_id(id)
        self._id = id
        self._parent = scope
        self._children: Dict[str, Union["Composite", Node]] = {}
        if scope is not None:
            scope._attach(id, self)

    @property
    def id(self) -> str:
        return self._id

    @property
    def parent(self) -> Optional["Composite"]:
        return self._parent

    @property
    def path(self) -> str:
        """Slash-joined ids below the root; the root's own path is empty."""
        if self._parent is None:
            return ""
        parent_path = self._parent.path
        return f"{parent_path}{PATH_SEPARATOR}{self._id}" if parent_path else self._id

    @property
    def root(self) -> "Stack":
        scope = self
        while scope._parent is not None:
            scope = scope._parent
        if not isinstance(scope, Stack):
            raise StackGraphError(f"Composite '{self._id}' is not attached to a Stack")
        return scope

    @property
    def config(self) -> StackConfig:
        return self.root.config

    def _attach(self, child_id: str, child: Union["Composite", Node]) -> None:
        if child_id in self._children:
            raise DuplicateIdError(child_id, self.path)
        self._children[child_id] = child

    def add_node(
        self,
        kind: Union[NodeKind, str],
        id: str,
        properties: Optional[Mapping[str, Any]] = None,
        depends_on: Optional[List[Union[NodeHandle, str]]] = None,
    ) -> NodeHandle:
        _validate_id(id)
        if id in self._children:
            raise DuplicateIdError(id, self.path)
        node = Node(parse_kind(kind, id), id, properties, self.path)
        self._attach(id, node)
        handle = NodeHandle(node, self)
        if depends_on:
            handle.add_dependency(*depends_on)
        return handle

    def add_composite(self, id: str) -> "Composite":
        return Composite(self, id)

    def export(self, name: str, value: Any) -> None:
        """Publish a value (usually a Reference) as a stack output."""
        self.root.record_export(name, value)

    @property
    def children(self) -> List[Union["Composite", NodeHandle]]:
        return [
            NodeHandle(child, self) if isinstance(child, Node) else child
            for child in self._children.values()
        ]

    def node(self, path: str) -> NodeHandle:
        """Look up a node by a path relative to this composite."""
        head, _, rest = path.partition(PATH_SEPARATOR)
        child = self._children.get(head)
        if rest and isinstance(child, Composite):
            return child.node(rest)
        if not rest and isinstance(child, Node):
            return NodeHandle(child, self)
        raise KeyError(path)

    def walk(self) -> Iterator[Node]:
        """Depth-first, in declaration order."""
        for child in self._children.values():
            if isinstance(child, Node):
                yield child
            else:
                yield from child.walk()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.path or self._id!r})"


class Stack(Composite):
    def __init__(self, id: str, config: Optional[StackConfig] = None):
        super().__init__(None, id)
        self._config = config or StackConfig(environment="dev", prefix=id, region="us-east-1")
        self._grants: Dict[Grant, None] = {}
        self._exports: Dict[str, Any] = {}

    @property
    def config(self) -> StackConfig:
        return self._config

    @property
    def exports(self) -> Dict[str, Any]:
        return dict(self._exports)

    def record_export(self, name: str, value: Any) -> None:
        if name in self._exports:
            raise DuplicateIdError(name, "exports")
        self._exports[name] = value

    @property
    def grants(self) -> List[Grant]:
        return list(self._grants)

    def record_grant(self, grant: Grant) -> bool:
        if grant in self._grants:
            return False
        self._grants[grant] = None
        return True

    def resource_name(self, base_name: str) -> str:
        return self._config.resource_name(base_name)

    def add_declared_resources(self) -> List[NodeHandle]:
        """Add the resources listed under ``resources`` in the config."""
        added = []
        for declared in self._config.resources:
            properties = parse_value(declared.args)
            if declared.custom_name:
                properties["custom_name"] = declared.custom_name
            if declared.existing:
                properties["existing"] = True
            handle = self.add_node(declared.type, declared.name, properties, depends_on=declared.depends_on)
            log.debug(f"Declared resource '{declared.name}' ({declared.type})", "stack")
            added.append(handle)
        return added
