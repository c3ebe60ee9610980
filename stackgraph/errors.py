"""
Error taxonomy for the resource graph.

Planning errors (duplicate ids, invalid properties, unresolved or unknown
references, cycles) are raised before any provider is called. Realization
errors are raised by the executor and always end up in the execution report.
"""

from typing import Any, List, Optional


class StackGraphError(Exception):
    """Base class for all stackgraph errors."""


class DuplicateIdError(StackGraphError):
    def __init__(self, node_id: str, scope: str):
        self.node_id = node_id
        self.scope = scope
        where = f"scope '{scope}'" if scope else "the root scope"
        super().__init__(f"Duplicate id '{node_id}' in {where}")


class InvalidPropertyError(StackGraphError):
    def __init__(self, node_id: str, message: str):
        self.node_id = node_id
        super().__init__(f"Invalid properties for '{node_id}': {message}")


class UnresolvedReferenceError(StackGraphError):
    def __init__(self, source: str, message: Optional[str] = None, referrer: Optional[str] = None):
        self.source = source
        self.referrer = referrer
        if message is None:
            message = f"Referenced resource '{source}' not found"
            if referrer:
                message += f" (referenced from '{referrer}')"
        super().__init__(message)


class UnknownOutputError(StackGraphError):
    def __init__(self, source: str, output: str, kind: Any = None):
        self.source = source
        self.output = output
        self.kind = kind
        kind_text = f" of kind '{kind}'" if kind is not None else ""
        super().__init__(f"Output '{output}' is not produced by '{source}'{kind_text}")


class CyclicDependencyError(StackGraphError):
    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__(f"Cyclic dependency: {' -> '.join(self.cycle)}")


class RealizationError(StackGraphError):
    """A provider failed to realize a node."""

    def __init__(self, node_id: str, cause: BaseException):
        self.node_id = node_id
        self.cause = cause
        super().__init__(f"Failed to realize '{node_id}': {cause}")


class ConfigError(StackGraphError, ValueError):
    pass


class AlertDeliveryError(StackGraphError):
    def __init__(self, status_code: int, body: str = ""):
        self.status_code = status_code
        self.body = body
        super().__init__(f"Error: {status_code}")
