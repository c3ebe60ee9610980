"""
Resource kinds known to the graph.

Each kind's value is the "module.Class" token of the matching pulumi_aws
resource class, the same format used for the ``type`` field of declared
resources in config.yaml.
"""

from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Union

from stackgraph.errors import InvalidPropertyError


class NodeKind(Enum):
    CLUSTER = "ecs.Cluster"
    TASK_DEFINITION = "ecs.TaskDefinition"
    SERVICE = "ecs.Service"
    LOAD_BALANCER = "lb.LoadBalancer"
    TARGET_GROUP = "lb.TargetGroup"
    LISTENER = "lb.Listener"
    SECURITY_GROUP = "ec2.SecurityGroup"
    DEFAULT_VPC = "ec2.DefaultVpc"
    DEFAULT_SUBNET = "ec2.DefaultSubnet"
    LAUNCH_TEMPLATE = "ec2.LaunchTemplate"
    AUTOSCALING_GROUP = "autoscaling.Group"
    INSTANCE = "ec2.Instance"
    ROLE = "iam.Role"
    INSTANCE_PROFILE = "iam.InstanceProfile"
    OIDC_PROVIDER = "iam.OpenIdConnectProvider"
    TABLE = "dynamodb.Table"
    BUCKET = "s3.Bucket"
    REPOSITORY = "ecr.Repository"
    LOG_GROUP = "cloudwatch.LogGroup"
    LOG_SUBSCRIPTION = "cloudwatch.LogSubscriptionFilter"
    FUNCTION = "lambda_.Function"
    FUNCTION_PERMISSION = "lambda_.Permission"
    CONFIG_RULE = "cfg.Rule"

    def __str__(self) -> str:
        return self.value


class PolicyHost(Enum):
    NONE = "none"
    IDENTITY = "identity"
    RESOURCE = "resource"


@dataclass(frozen=True)
class KindSpec:
    required: FrozenSet[str] = frozenset()
    outputs: FrozenSet[str] = frozenset({"id"})
    policy_host: PolicyHost = PolicyHost.NONE


def _spec(required=(), outputs=("id", "arn"), policy_host=PolicyHost.NONE) -> KindSpec:
    return KindSpec(frozenset(required), frozenset(outputs), policy_host)


KIND_SPECS = {
    NodeKind.CLUSTER: _spec(outputs=("id", "arn", "name")),
    NodeKind.TASK_DEFINITION: _spec(
        required=("family", "container_definitions"),
        outputs=("id", "arn", "family", "revision"),
    ),
    NodeKind.SERVICE: _spec(required=("cluster",), outputs=("id", "name", "cluster")),
    NodeKind.LOAD_BALANCER: _spec(outputs=("id", "arn", "name", "dns_name", "zone_id")),
    NodeKind.TARGET_GROUP: _spec(required=("port", "protocol"), outputs=("id", "arn", "name")),
    NodeKind.LISTENER: _spec(required=("load_balancer_arn", "default_actions")),
    NodeKind.SECURITY_GROUP: _spec(outputs=("id", "arn", "name")),
    NodeKind.DEFAULT_VPC: _spec(outputs=("id", "arn", "cidr_block")),
    NodeKind.DEFAULT_SUBNET: _spec(required=("availability_zone",), outputs=("id", "arn", "availability_zone")),
    NodeKind.LAUNCH_TEMPLATE: _spec(required=("image_id", "instance_type"), outputs=("id", "arn", "latest_version")),
    NodeKind.AUTOSCALING_GROUP: _spec(required=("max_size", "min_size"), outputs=("id", "arn", "name")),
    NodeKind.INSTANCE: _spec(
        required=("ami", "instance_type"),
        outputs=("id", "arn", "public_ip", "public_dns", "private_ip"),
    ),
    NodeKind.ROLE: _spec(
        required=("assumed_by",),
        outputs=("id", "arn", "name"),
        policy_host=PolicyHost.IDENTITY,
    ),
    NodeKind.INSTANCE_PROFILE: _spec(required=("role",), outputs=("id", "arn", "name")),
    NodeKind.OIDC_PROVIDER: _spec(required=("url", "client_id_lists"), outputs=("id", "arn", "url")),
    NodeKind.TABLE: _spec(
        required=("hash_key", "attributes"),
        outputs=("id", "arn", "name", "stream_arn"),
    ),
    NodeKind.BUCKET: _spec(
        outputs=("id", "arn", "bucket", "bucket_regional_domain_name"),
        policy_host=PolicyHost.RESOURCE,
    ),
    NodeKind.REPOSITORY: _spec(
        outputs=("id", "arn", "name", "repository_url"),
        policy_host=PolicyHost.RESOURCE,
    ),
    NodeKind.LOG_GROUP: _spec(outputs=("id", "arn", "name")),
    NodeKind.LOG_SUBSCRIPTION: _spec(
        required=("log_group", "filter_pattern", "destination_arn"),
        outputs=("id", "name"),
    ),
    NodeKind.FUNCTION: _spec(
        required=("role", "runtime", "handler"),
        outputs=("id", "arn", "name", "invoke_arn"),
    ),
    NodeKind.FUNCTION_PERMISSION: _spec(required=("action", "function", "principal"), outputs=("id",)),
    NodeKind.CONFIG_RULE: _spec(required=("source",), outputs=("id", "arn", "name", "rule_id")),
}


def parse_kind(kind: Union[NodeKind, str], node_id: str = "") -> NodeKind:
    """Accept a NodeKind or its "module.Class" token."""
    if isinstance(kind, NodeKind):
        return kind
    try:
        return NodeKind(kind)
    except ValueError:
        raise InvalidPropertyError(node_id, f"unknown resource kind '{kind}'") from None


def spec_for(kind: NodeKind) -> KindSpec:
    return KIND_SPECS[kind]
