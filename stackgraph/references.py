"""
Deferred references between nodes and their resolution.

A Reference names another node by path and one of its outputs. It never
holds the node itself, so nodes can be declared in any order and the graph
stays serializable. Resolution happens only after the source node has been
realized.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Mapping, Optional

from stackgraph.errors import UnknownOutputError, UnresolvedReferenceError


class _Unresolved:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNRESOLVED"

    def __bool__(self) -> bool:
        return False


UNRESOLVED = _Unresolved()


@dataclass(frozen=True)
class Reference:
    source: str
    output: str = "id"

    def __str__(self) -> str:
        return f"${{{self.source}.{self.output}}}"


@dataclass(frozen=True)
class SecretValue:
    """A value stored as a Pulumi config secret, fetched by the provider."""

    key: str

    def __str__(self) -> str:
        return f"<secret:{self.key}>"


class DocumentValue:
    """A value built from other values that renders to a JSON-ready dict."""

    def to_document(self, convert: Callable[[Any], Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def __references__(self) -> Iterator[Reference]:
        raise NotImplementedError


def parse_value(value: Any) -> Any:
    """Turn ``ref:`` and ``secret:`` strings from YAML into typed values."""
    if isinstance(value, dict):
        return {k: parse_value(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [parse_value(item) for item in value]
    elif isinstance(value, str):
        if value.startswith("secret:"):
            return SecretValue(value[len("secret:"):])
        elif value.startswith("ref:"):
            ref_text = value[4:]
            if "." in ref_text:
                ref_res, ref_attr = ref_text.rsplit(".", 1)
            else:
                ref_res, ref_attr = ref_text, "id"
            return Reference(ref_res, ref_attr)
        return value
    return value


def iter_references(value: Any) -> Iterator[Reference]:
    """Yield every Reference nested anywhere inside ``value``."""
    if isinstance(value, Reference):
        yield value
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, (list, tuple, set, frozenset)):
        for item in value:
            yield from iter_references(item)
    elif isinstance(value, DocumentValue):
        yield from value.__references__()


def resolve(graph: Mapping[str, Any], reference: Reference) -> Any:
    """Return the realized output a reference points at."""
    node = graph.get(reference.source)
    if node is None:
        raise UnresolvedReferenceError(reference.source)
    if reference.output not in node.spec.outputs:
        raise UnknownOutputError(reference.source, reference.output, node.kind)
    value = node.outputs.get(reference.output, UNRESOLVED)
    if value is UNRESOLVED:
        raise UnresolvedReferenceError(
            reference.source,
            f"Resource '{reference.source}' has not been realized, "
            f"output '{reference.output}' is unavailable",
        )
    return value


def map_references(value: Any, convert: Callable[[Reference], Any]) -> Any:
    """Rebuild ``value`` with every Reference replaced by ``convert(ref)``."""
    if isinstance(value, Reference):
        return convert(value)
    elif isinstance(value, dict):
        return {k: map_references(v, convert) for k, v in value.items()}
    elif isinstance(value, list):
        return [map_references(item, convert) for item in value]
    elif isinstance(value, tuple):
        return tuple(map_references(item, convert) for item in value)
    elif isinstance(value, DocumentValue):
        return value.to_document(lambda v: map_references(v, convert))
    return value


def resolve_value(value: Any, graph: Mapping[str, Any], defer: Optional[str] = None) -> Any:
    """
    Replace references with realized outputs. References to ``defer`` are
    left in place; bind_outputs() fills them in once that node exists.
    """

    def lookup(ref: Reference) -> Any:
        if defer is not None and ref.source == defer:
            return ref
        return resolve(graph, ref)

    return map_references(value, lookup)


def bind_outputs(value: Any, source: str, outputs: Mapping[str, Any]) -> Any:
    """Fill in references to ``source`` from its freshly realized outputs."""

    def lookup(ref: Reference) -> Any:
        if ref.source != source:
            return ref
        if ref.output not in outputs:
            raise UnknownOutputError(source, ref.output)
        return outputs[ref.output]

    return map_references(value, lookup)


def render_value(value: Any) -> Any:
    """Like resolve_value, but leaves references as ``${path.output}`` text."""
    if isinstance(value, (Reference, SecretValue)):
        return str(value)
    elif isinstance(value, dict):
        return {k: render_value(v) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [render_value(item) for item in value]
    elif isinstance(value, (set, frozenset)):
        return sorted((render_value(item) for item in value), key=str)
    elif isinstance(value, DocumentValue):
        return value.to_document(render_value)
    return value
