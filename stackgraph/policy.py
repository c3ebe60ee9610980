"""
Policy statements and the grant mechanism.

A grant is declared once and lands on whichever side natively hosts it:
identity-based statements go to a role's attached policy, resource-based
statements go to the resource's own policy (buckets, repositories).
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterable, Iterator, List, Optional, Tuple, Union

from stackgraph.errors import InvalidPropertyError
from stackgraph.kinds import PolicyHost
from stackgraph.references import DocumentValue, Reference, iter_references

POLICY_VERSION = "2012-10-17"


class Effect(Enum):
    ALLOW = "Allow"
    DENY = "Deny"


class PrincipalKind(Enum):
    SERVICE = "Service"
    AWS = "AWS"
    FEDERATED = "Federated"
    ANY = "*"


def _sort_key(value: Any) -> str:
    return str(value)


def _frozen(values: Union[str, Iterable[Any], None]) -> FrozenSet[Any]:
    if values is None:
        return frozenset()
    if isinstance(values, (str, Reference, Join)):
        return frozenset({values})
    return frozenset(values)


def _freeze_conditions(conditions: Any) -> Tuple:
    if not conditions:
        return ()
    if isinstance(conditions, tuple):
        return conditions
    frozen = []
    for operator, entries in conditions.items():
        inner = []
        for key, value in entries.items():
            inner.append((key, tuple(value) if isinstance(value, list) else value))
        frozen.append((operator, tuple(sorted(inner, key=lambda kv: kv[0]))))
    return tuple(sorted(frozen, key=lambda kv: kv[0]))


@dataclass(frozen=True)
class Join(DocumentValue):
    """String concatenation whose parts may include references."""

    parts: Tuple[Any, ...]

    def to_document(self, convert: Callable[[Any], Any]) -> Any:
        parts = tuple(convert(part) for part in self.parts)
        if all(isinstance(part, str) for part in parts):
            return "".join(parts)
        return Join(parts)

    def __references__(self) -> Iterator[Reference]:
        return iter_references(self.parts)

    def __str__(self) -> str:
        return "".join(str(part) for part in self.parts)


@dataclass(frozen=True)
class Principal(DocumentValue):
    kind: PrincipalKind
    identifier: Any = "*"

    def __post_init__(self):
        if isinstance(self.identifier, list):
            object.__setattr__(self, "identifier", tuple(self.identifier))

    @classmethod
    def service(cls, name: str) -> "Principal":
        return cls(PrincipalKind.SERVICE, name)

    @classmethod
    def aws(cls, arn: Any) -> "Principal":
        return cls(PrincipalKind.AWS, arn)

    @classmethod
    def federated(cls, arn: Any) -> "Principal":
        return cls(PrincipalKind.FEDERATED, arn)

    @classmethod
    def any(cls) -> "Principal":
        return cls(PrincipalKind.ANY, "*")

    def to_document(self, convert: Callable[[Any], Any]) -> Any:
        if self.kind is PrincipalKind.ANY:
            return "*"
        return {self.kind.value: convert(self.identifier)}

    def __references__(self) -> Iterator[Reference]:
        return iter_references(self.identifier)

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.identifier}"


@dataclass(frozen=True)
class PolicyStatement(DocumentValue):
    """
    One IAM statement. Actions, resources and principals are sets, so two
    statements listing the same members in a different order are equal.
    """

    actions: FrozenSet[str]
    resources: FrozenSet[Any] = frozenset()
    principals: FrozenSet[Principal] = frozenset()
    effect: Effect = Effect.ALLOW
    sid: Optional[str] = None
    conditions: Tuple = ()

    def __post_init__(self):
        object.__setattr__(self, "actions", _frozen(self.actions))
        object.__setattr__(self, "resources", _frozen(self.resources))
        principals = self.principals
        if isinstance(principals, Principal):
            principals = [principals]
        object.__setattr__(self, "principals", _frozen(principals))
        object.__setattr__(self, "conditions", _freeze_conditions(self.conditions))
        if not self.actions:
            raise ValueError("A policy statement needs at least one action")

    def to_document(self, convert: Callable[[Any], Any]) -> Dict[str, Any]:
        doc: Dict[str, Any] = {"Effect": self.effect.value}
        if self.sid:
            doc["Sid"] = self.sid
        if self.principals:
            principals = sorted(self.principals, key=lambda p: (p.kind.value, _sort_key(p.identifier)))
            if any(p.kind is PrincipalKind.ANY for p in principals):
                doc["Principal"] = "*"
            else:
                merged: Dict[str, List[Any]] = {}
                for principal in principals:
                    merged.setdefault(principal.kind.value, []).append(convert(principal.identifier))
                doc["Principal"] = {k: v[0] if len(v) == 1 else v for k, v in merged.items()}
        doc["Action"] = sorted(self.actions)
        if self.resources:
            doc["Resource"] = [convert(r) for r in sorted(self.resources, key=_sort_key)]
        if self.conditions:
            doc["Condition"] = {
                operator: {
                    key: [convert(v) for v in value] if isinstance(value, tuple) else convert(value)
                    for key, value in entries
                }
                for operator, entries in self.conditions
            }
        return doc

    def __references__(self) -> Iterator[Reference]:
        yield from iter_references(list(self.resources))
        yield from iter_references(list(self.principals))
        for _, entries in self.conditions:
            for _, value in entries:
                yield from iter_references(value)


def policy_document(statements: Iterable[PolicyStatement], convert: Callable[[Any], Any]) -> Dict[str, Any]:
    return {
        "Version": POLICY_VERSION,
        "Statement": [statement.to_document(convert) for statement in statements],
    }


@dataclass(frozen=True)
class Capability:
    """A named set of actions granted on one output of a resource."""

    name: str
    actions: FrozenSet[str]
    resource_output: str = "arn"
    resource_suffixes: Tuple[str, ...] = ("",)

    def __post_init__(self):
        object.__setattr__(self, "actions", _frozen(self.actions))

    def resources_for(self, node: Any) -> FrozenSet[Any]:
        ref = node.output(self.resource_output)
        return frozenset(ref if not suffix else Join((ref, suffix)) for suffix in self.resource_suffixes)


@dataclass(frozen=True)
class Grant:
    capability: str
    resource: str
    principal: str


TABLE_READ = Capability(
    "table-read",
    {
        "dynamodb:BatchGetItem",
        "dynamodb:ConditionCheckItem",
        "dynamodb:DescribeTable",
        "dynamodb:GetItem",
        "dynamodb:GetRecords",
        "dynamodb:GetShardIterator",
        "dynamodb:Query",
        "dynamodb:Scan",
    },
)
TABLE_READ_WRITE = Capability(
    "table-read-write",
    TABLE_READ.actions
    | {
        "dynamodb:BatchWriteItem",
        "dynamodb:DeleteItem",
        "dynamodb:PutItem",
        "dynamodb:UpdateItem",
    },
)
BUCKET_READ = Capability(
    "bucket-read",
    {"s3:GetBucket*", "s3:GetObject*", "s3:List*"},
    resource_suffixes=("", "/*"),
)
BUCKET_PUT = Capability(
    "bucket-put",
    {
        "s3:Abort*",
        "s3:PutObject",
        "s3:PutObjectLegalHold",
        "s3:PutObjectRetention",
        "s3:PutObjectTagging",
        "s3:PutObjectVersionTagging",
    },
    resource_suffixes=("/*",),
)
REPOSITORY_PULL = Capability(
    "repository-pull",
    {"ecr:BatchCheckLayerAvailability", "ecr:BatchGetImage", "ecr:GetDownloadUrlForLayer"},
)
REPOSITORY_PUSH = Capability(
    "repository-push",
    REPOSITORY_PULL.actions
    | {
        "ecr:CompleteLayerUpload",
        "ecr:InitiateLayerUpload",
        "ecr:PutImage",
        "ecr:UploadLayerPart",
    },
)
PASS_ROLE = Capability("pass-role", {"iam:PassRole"})
SERVICE_DEPLOY = Capability(
    "service-deploy",
    {"ecs:DescribeServices", "ecs:UpdateService"},
    resource_output="id",
)
FUNCTION_INVOKE = Capability("function-invoke", {"lambda:InvokeFunction"})


def _hosts(target: Any, host: PolicyHost) -> bool:
    spec = getattr(target, "spec", None)
    return spec is not None and spec.policy_host is host


def grant(capability: Capability, on_node: Any, to_principal: Any) -> PolicyStatement:
    """
    Let ``to_principal`` perform ``capability`` on ``on_node``.

    Identity-based when the principal is a role node, resource-based when the
    target hosts its own policy. Granting the same triple twice is a no-op.
    """
    resources = capability.resources_for(on_node)
    if _hosts(to_principal, PolicyHost.IDENTITY):
        statement = PolicyStatement(actions=capability.actions, resources=resources)
        to_principal.add_policy_statement(statement)
        principal_key = to_principal.path
    elif _hosts(on_node, PolicyHost.RESOURCE):
        if isinstance(to_principal, Principal):
            principal = to_principal
        else:
            principal = Principal.aws(to_principal.arn)
        statement = PolicyStatement(actions=capability.actions, resources=resources, principals=principal)
        on_node.add_policy_statement(statement)
        principal_key = str(principal)
    else:
        raise InvalidPropertyError(
            on_node.path,
            f"cannot grant '{capability.name}': neither the principal nor the resource hosts a policy",
        )
    on_node.root.record_grant(Grant(capability.name, on_node.path, principal_key))
    return statement
