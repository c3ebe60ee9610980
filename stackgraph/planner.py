"""
Turns a composite tree into an ordered plan.

Planning is pure: it reads the tree, derives dependency edges from
references and explicit depends_on, and sorts the nodes. Any problem
aborts the whole plan before a provider sees a single node.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Mapping, Tuple

import yaml

from stackgraph import log
from stackgraph.errors import CyclicDependencyError, UnknownOutputError, UnresolvedReferenceError
from stackgraph.kinds import NodeKind
from stackgraph.nodes import Node
from stackgraph.policy import PolicyStatement
from stackgraph.references import render_value

WHITE, GRAY, BLACK = 0, 1, 2


@dataclass(frozen=True)
class PlanStep:
    node_id: str
    kind: NodeKind
    properties: Mapping[str, Any]
    policy_statements: Tuple[PolicyStatement, ...]
    depends_on: Tuple[str, ...]
    scope: str

    def to_record(self) -> Dict[str, Any]:
        record = {
            "nodeId": self.node_id,
            "kind": self.kind.value,
            "resolvedProperties": render_value(dict(self.properties)),
            "dependsOn": list(self.depends_on),
        }
        if self.policy_statements:
            record["policyStatements"] = render_value(list(self.policy_statements))
        return record


class OrderedPlan:
    """
    Steps in dependency order. Only the partial order matters: steps that do
    not depend on each other may be realized in any order or in parallel.
    """

    def __init__(self, steps: List[PlanStep], graph: Dict[str, Node]):
        self.steps = steps
        self.graph = graph
        self._index = {step.node_id: i for i, step in enumerate(steps)}

    @property
    def order(self) -> List[str]:
        return [step.node_id for step in self.steps]

    def index_of(self, node_id: str) -> int:
        return self._index[node_id]

    def step(self, node_id: str) -> PlanStep:
        return self.steps[self._index[node_id]]

    def dependents(self) -> Dict[str, List[str]]:
        result: Dict[str, List[str]] = {step.node_id: [] for step in self.steps}
        for step in self.steps:
            for dep in step.depends_on:
                result[dep].append(step.node_id)
        return result

    def levels(self) -> List[List[str]]:
        """Group steps into waves; a wave only depends on earlier waves."""
        depth: Dict[str, int] = {}
        for step in self.steps:
            depth[step.node_id] = max((depth[d] + 1 for d in step.depends_on), default=0)
        waves: List[List[str]] = [[] for _ in range(max(depth.values(), default=-1) + 1)]
        for step in self.steps:
            waves[depth[step.node_id]].append(step.node_id)
        return waves

    def teardown_order(self) -> List[str]:
        return list(reversed(self.order))

    def to_records(self) -> List[Dict[str, Any]]:
        return [step.to_record() for step in self.steps]

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_records(), sort_keys=False)

    def __len__(self) -> int:
        return len(self.steps)

    def __iter__(self) -> Iterator[PlanStep]:
        return iter(self.steps)


def _dependencies(node: Node, graph: Mapping[str, Node]) -> List[str]:
    deps: List[str] = []
    for ref in node.references():
        source = graph.get(ref.source)
        if source is None:
            raise UnresolvedReferenceError(ref.source, referrer=node.path)
        if ref.output not in source.spec.outputs:
            raise UnknownOutputError(ref.source, ref.output, source.kind)
        if ref.source not in deps:
            deps.append(ref.source)
    for path in node.depends_on:
        if path not in graph:
            raise UnresolvedReferenceError(path, referrer=node.path)
        if path not in deps:
            deps.append(path)
    return deps


def _topological_order(nodes: List[Node], edges: Mapping[str, List[str]]) -> List[str]:
    color = {node.path: WHITE for node in nodes}
    order: List[str] = []
    for start in nodes:
        if color[start.path] != WHITE:
            continue
        color[start.path] = GRAY
        stack = [(start.path, iter(edges[start.path]))]
        while stack:
            path, deps = stack[-1]
            for dep in deps:
                if color[dep] == WHITE:
                    color[dep] = GRAY
                    stack.append((dep, iter(edges[dep])))
                    break
                if color[dep] == GRAY:
                    trail = [p for p, _ in stack]
                    raise CyclicDependencyError(trail[trail.index(dep):] + [dep])
            else:
                stack.pop()
                color[path] = BLACK
                order.append(path)
    return order


def plan(root: Any) -> OrderedPlan:
    nodes = list(root.walk())
    graph = {node.path: node for node in nodes}
    edges = {node.path: _dependencies(node, graph) for node in nodes}
    order = _topological_order(nodes, edges)

    steps = []
    for path in order:
        node = graph[path]
        scope = path.rsplit("/", 1)[0] if "/" in path else ""
        steps.append(
            PlanStep(
                node_id=path,
                kind=node.kind,
                properties=dict(node.properties),
                policy_statements=tuple(node.policy_statements),
                depends_on=tuple(sorted(edges[path])),
                scope=scope,
            )
        )
    log.debug(f"Planned {len(steps)} resources", "planner")
    return OrderedPlan(steps, graph)
