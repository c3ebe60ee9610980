"""
The backend infrastructure, declared as composites.

Each composite builds its nodes in __init__ and exposes the handles other
composites need. Cross-composite wiring happens in build_infra_stack through
references and grants, never by handing lists of statements down.
"""

import base64
import json
from typing import Optional

from stackgraph.composite import Composite, Stack
from stackgraph.config import StackConfig
from stackgraph.errors import ConfigError
from stackgraph.kinds import NodeKind
from stackgraph.nodes import NodeHandle
from stackgraph.policy import SERVICE_DEPLOY, PASS_ROLE, Join, PolicyStatement, Principal, grant
from stackgraph.references import parse_value

ANYWHERE = ["0.0.0.0/0"]
ALL_EGRESS = [{"protocol": "-1", "from_port": 0, "to_port": 0, "cidr_blocks": ANYWHERE}]

GITHUB_OIDC_URL = "https://token.actions.githubusercontent.com"
GITHUB_OIDC_HOST = "token.actions.githubusercontent.com"
GITHUB_OIDC_THUMBPRINT = "6938fd4d98bab03faadb97b34396831e3780aea1"
STS_AUDIENCE = "sts.amazonaws.com"

ECS_AMI = "resolve:ssm:/aws/service/ecs/optimized-ami/amazon-linux-2023/recommended/image_id"
AL2023_AMI = "resolve:ssm:/aws/service/ami-amazon-linux-latest/al2023-ami-kernel-default-x86_64"

ECR_PULL_ACTIONS = [
    "ecr:GetAuthorizationToken",
    "ecr:BatchCheckLayerAvailability",
    "ecr:GetDownloadUrlForLayer",
    "ecr:BatchGetImage",
]
LOGGING_ACTIONS = ["logs:CreateLogGroup", "logs:CreateLogStream", "logs:PutLogEvents"]

JENKINS_USER_DATA = """#!/bin/bash
yum update -y
wget -O /etc/yum.repos.d/jenkins.repo https://pkg.jenkins.io/redhat-stable/jenkins.repo
rpm --import https://pkg.jenkins.io/redhat-stable/jenkins.io-2023.key
yum upgrade -y
dnf install java-17-amazon-corretto -y
yum install jenkins -y
systemctl enable jenkins
systemctl start jenkins
yum install -y docker git
systemctl enable docker
systemctl start docker
usermod -aG docker $USER
mkdir -p /var/lib/jenkins/.ssh
ssh-keyscan -t ed25519 github.com >> /var/lib/jenkins/.ssh/known_hosts
chown -R jenkins:jenkins /var/lib/jenkins/.ssh
aws ssm put-parameter --name /jenkins/initialAdminPassword --value $(cat /var/lib/jenkins/secrets/initialAdminPassword) --type String --overwrite"""


def _ingress(port: int, description: str):
    return {"protocol": "tcp", "from_port": port, "to_port": port, "cidr_blocks": ANYWHERE, "description": description}


class Network(Composite):
    """The account's default VPC and one default subnet per zone."""

    def __init__(self, scope: Composite, id: str):
        super().__init__(scope, id)
        self.vpc = self.add_node(NodeKind.DEFAULT_VPC, "Vpc")
        self.subnets = [
            self.add_node(NodeKind.DEFAULT_SUBNET, f"Subnet-{zone}", {"availability_zone": zone})
            for zone in self.config.zones
        ]

    @property
    def subnet_ids(self):
        return [subnet.ref for subnet in self.subnets]


class Dynamodb(Composite):
    def __init__(self, scope: Composite, id: str, rcu: Optional[int] = None, wcu: Optional[int] = None):
        super().__init__(scope, id)
        config = self.config
        common = {
            "billing_mode": "PROVISIONED",
            "read_capacity": rcu or config.table_read_capacity,
            "write_capacity": wcu or config.table_write_capacity,
            "retain_on_delete": config.is_production,
        }

        self.patients_table = self.add_node(NodeKind.TABLE, "patientsTable", {
            "name": "Patients",
            "hash_key": "id",
            "attributes": [{"name": "id", "type": "S"}],
            **common,
        })
        self.records_table = self.add_node(NodeKind.TABLE, "recordsTable", {
            "name": "Records",
            "hash_key": "id",
            "range_key": "patientId",
            "attributes": [{"name": "id", "type": "S"}, {"name": "patientId", "type": "S"}],
            **common,
        })

        self.export("patientsTableArn", self.patients_table.arn)
        self.export("recordsTableArn", self.records_table.arn)


class Backend(Composite):
    """ECS cluster on EC2 capacity, served through a network load balancer."""

    def __init__(self, scope: Composite, id: str, network: Network):
        super().__init__(scope, id)
        config = self.config
        prefix = config.prefix
        cluster_name = f"{prefix}-cluster"
        log_group_name = f"{prefix}-backend-logs"
        ecs_tasks = Principal.service("ecs-tasks.amazonaws.com")
        logging_statement = PolicyStatement(actions=LOGGING_ACTIONS, resources=["*"])

        self.log_group = self.add_node(NodeKind.LOG_GROUP, "BackendLogGroup", {"name": log_group_name})

        self.execution_role = self.add_node(NodeKind.ROLE, "TaskExecutionRole", {
            "name": f"{prefix}-task-execution-role",
            "assumed_by": ecs_tasks,
        })
        self.execution_role.add_policy_statement(logging_statement)
        self.execution_role.add_policy_statement(PolicyStatement(actions=ECR_PULL_ACTIONS, resources=["*"]))

        self.task_role = self.add_node(NodeKind.ROLE, "TaskRole", {
            "name": f"{prefix}-task-role",
            "assumed_by": ecs_tasks,
        })
        self.task_role.add_policy_statement(logging_statement)

        container = {
            "name": "backend",
            "image": "amazon/amazon-ecs-sample",
            "memory": 128,
            "essential": True,
            "portMappings": [{"containerPort": 80, "hostPort": 80, "protocol": "tcp"}],
            "logConfiguration": {
                "logDriver": "awslogs",
                "options": {
                    "awslogs-group": log_group_name,
                    "awslogs-region": config.region,
                    "awslogs-stream-prefix": prefix,
                },
            },
        }
        self.task_definition = self.add_node(NodeKind.TASK_DEFINITION, "TaskDef", {
            "family": f"{prefix}-task",
            "network_mode": "bridge",
            "requires_compatibilities": ["EC2"],
            "execution_role_arn": self.execution_role.arn,
            "task_role_arn": self.task_role.arn,
            "container_definitions": json.dumps([container]),
        }, depends_on=[self.log_group])

        self.cluster = self.add_node(NodeKind.CLUSTER, "Cluster", {"name": cluster_name})

        self.load_balancer_security_group = self.add_node(NodeKind.SECURITY_GROUP, "AllowTraffic", {
            "vpc_id": network.vpc.ref,
            "ingress": [
                _ingress(80, "allow HTTP traffic from anywhere"),
                _ingress(443, "allow HTTPS traffic from anywhere"),
            ],
            "egress": ALL_EGRESS,
            "tags": {"Name": f"{prefix}-load-balancer-sg"},
        })
        self.instance_security_group = self.add_node(NodeKind.SECURITY_GROUP, "ClusterInstances", {
            "vpc_id": network.vpc.ref,
            "ingress": [{
                "protocol": "tcp",
                "from_port": 0,
                "to_port": 65535,
                "security_groups": [self.load_balancer_security_group.ref],
                "description": "Allow inbound HTTP traffic from load balancer",
            }],
            "egress": ALL_EGRESS,
        })

        self._add_capacity(network, cluster_name)

        self.target_group = self.add_node(NodeKind.TARGET_GROUP, "TargetGroup", {
            "port": 80,
            "protocol": "TCP",
            "target_type": "instance",
            "vpc_id": network.vpc.ref,
            "deregistration_delay": 5,
            "health_check": {
                "interval": 5,
                "timeout": 5,
                "healthy_threshold": 2,
                "unhealthy_threshold": 5,
            },
        })
        self.load_balancer = self.add_node(NodeKind.LOAD_BALANCER, "LoadBalancer", {
            "load_balancer_type": "network",
            "internal": False,
            "subnets": network.subnet_ids,
            "security_groups": [self.load_balancer_security_group.ref],
        })
        forward = [{"type": "forward", "target_group_arn": self.target_group.arn}]
        listeners = [self.add_node(NodeKind.LISTENER, "Listener", {
            "load_balancer_arn": self.load_balancer.arn,
            "port": 80,
            "protocol": "TCP",
            "default_actions": forward,
        })]
        if config.certificate_arn:
            listeners.append(self.add_node(NodeKind.LISTENER, "HTTSListener", {
                "load_balancer_arn": self.load_balancer.arn,
                "port": 443,
                "protocol": "TLS",
                "certificate_arn": config.certificate_arn,
                "default_actions": forward,
            }))

        self.service = self.add_node(NodeKind.SERVICE, "Service", {
            "name": f"{prefix}-backend-service",
            "cluster": self.cluster.arn,
            "task_definition": self.task_definition.arn,
            "desired_count": 1,
            "launch_type": "EC2",
            "health_check_grace_period_seconds": 5,
            "load_balancers": [{
                "target_group_arn": self.target_group.arn,
                "container_name": "backend",
                "container_port": 80,
            }],
        }, depends_on=listeners)

        self.export("LoadBalancerDNS", self.load_balancer.output("dns_name"))
        self.export("ClusterName", self.cluster.output("name"))
        self.export("ServiceName", self.service.output("name"))

    def _add_capacity(self, network: Network, cluster_name: str) -> None:
        config = self.config
        role = self.add_node(NodeKind.ROLE, "InstanceRole", {
            "assumed_by": Principal.service("ec2.amazonaws.com"),
            "managed_policy_arns": [
                "arn:aws:iam::aws:policy/service-role/AmazonEC2ContainerServiceforEC2Role",
                "arn:aws:iam::aws:policy/AmazonSSMManagedInstanceCore",
            ],
        })
        profile = self.add_node(NodeKind.INSTANCE_PROFILE, "InstanceProfile", {"role": role.output("name")})
        user_data = f"#!/bin/bash\necho ECS_CLUSTER={cluster_name} >> /etc/ecs/ecs.config\n"
        template = self.add_node(NodeKind.LAUNCH_TEMPLATE, "LaunchTemplate", {
            "image_id": ECS_AMI,
            "instance_type": config.instance_type,
            "iam_instance_profile": {"arn": profile.arn},
            "vpc_security_group_ids": [self.instance_security_group.ref],
            "user_data": base64.b64encode(user_data.encode("utf-8")).decode("ascii"),
        })
        self.capacity = self.add_node(NodeKind.AUTOSCALING_GROUP, "DefaultAutoScalingGroupCapacity", {
            "min_size": 0,
            "max_size": config.desired_capacity,
            "desired_capacity": config.desired_capacity,
            "vpc_zone_identifiers": network.subnet_ids,
            "launch_template": {"id": template.ref, "version": "$Latest"},
        }, depends_on=[self.cluster])

    def grant_deployment(self, principal: NodeHandle) -> None:
        """Let a CI/CD role roll out new task definitions to this service."""
        principal.add_policy_statement(PolicyStatement(
            sid="RegisterTaskDefinition",
            actions=["ecs:RegisterTaskDefinition"],
            resources=["*"],
        ))
        grant(PASS_ROLE, self.task_role, principal)
        grant(PASS_ROLE, self.execution_role, principal)
        grant(SERVICE_DEPLOY, self.service, principal)
        principal.add_policy_statement(PolicyStatement(
            sid="DescribeTaskDefinition",
            actions=[
                "ecs:DescribeTaskDefinition",
                "ecs:ListTasks",
                "ecs:DescribeTasks",
                "ecs:DescribeContainerInstances",
                "ec2:DescribeInstances",
            ],
            resources=["*"],
        ))
        principal.add_policy_statement(PolicyStatement(
            sid="PushImageToECR",
            actions=ECR_PULL_ACTIONS + [
                "ecr:InitiateLayerUpload",
                "ecr:UploadLayerPart",
                "ecr:CompleteLayerUpload",
                "ecr:PutImage",
            ],
            resources=["*"],
        ))


class PipelineRoles(Composite):
    """GitHub Actions roles, trusted through the account's OIDC provider."""

    def __init__(self, scope: Composite, id: str, frontend_bucket: NodeHandle):
        super().__init__(scope, id)
        config = self.config
        if not config.backend_repo_path or not config.frontend_repo_path:
            raise ConfigError("backend_repo_path and frontend_repo_path are required")

        self.github_provider = self.add_node(NodeKind.OIDC_PROVIDER, "gitHubProvider", {
            "url": GITHUB_OIDC_URL,
            "client_id_lists": [STS_AUDIENCE],
            "thumbprint_lists": [GITHUB_OIDC_THUMBPRINT],
        })

        self.backend_pipeline_role = self._github_role(
            "backendPipelineRole", f"{config.prefix}-sam-pipeline-role", config.backend_repo_path
        )
        self.frontend_pipeline_role = self._github_role(
            "frontendPipelineRole", f"{config.prefix}-database-migration-pipeline-role", config.frontend_repo_path
        )
        frontend_bucket.grant_put(self.frontend_pipeline_role)

        self.export("backendPipelineRoleArn", self.backend_pipeline_role.arn)
        self.export("frontendPipelineRoleArn", self.frontend_pipeline_role.arn)

    def _github_role(self, id: str, name: str, repo_path: str) -> NodeHandle:
        return self.add_node(NodeKind.ROLE, id, {
            "name": name,
            "assumed_by": Principal.federated(self.github_provider.arn),
            "assume_action": "sts:AssumeRoleWithWebIdentity",
            "assume_conditions": {
                "StringLike": {f"{GITHUB_OIDC_HOST}:sub": f"repo:{repo_path}:*"},
                "StringEquals": {f"{GITHUB_OIDC_HOST}:aud": STS_AUDIENCE},
            },
        })


class Jenkins(Composite):
    def __init__(self, scope: Composite, id: str, network: Network):
        super().__init__(scope, id)
        config = self.config
        prefix = config.prefix

        self.security_group = self.add_node(NodeKind.SECURITY_GROUP, "JenkinsSecurityGroup", {
            "name": f"{prefix}-jenkins-sg",
            "vpc_id": network.vpc.ref,
            "ingress": [_ingress(8080, "Allow http 8080 access from anywhere")],
            "egress": ALL_EGRESS,
            "tags": {"Name": f"{prefix}-jenkins-sg"},
        })

        self.role = self.add_node(NodeKind.ROLE, "JenkinsInstanceRole", {
            "assumed_by": Principal.service("ec2.amazonaws.com"),
            "managed_policy_arns": ["arn:aws:iam::aws:policy/AmazonSSMManagedInstanceCore"],
        })
        self.role.add_policy_statement(PolicyStatement(actions=["ssm:PutParameter"], resources=["*"]))

        profile = self.add_node(NodeKind.INSTANCE_PROFILE, "JenkinsInstanceProfile", {"role": self.role.output("name")})

        properties = {
            "ami": AL2023_AMI,
            "instance_type": "t2.micro",
            "subnet_id": network.subnets[0].ref,
            "associate_public_ip_address": True,
            "vpc_security_group_ids": [self.security_group.ref],
            "iam_instance_profile": profile.output("name"),
            "user_data": JENKINS_USER_DATA,
            "tags": {"Name": f"{prefix}-jenkins-instance"},
        }
        if config.key_pair_name:
            properties["key_name"] = config.key_pair_name
        self.instance = self.add_node(NodeKind.INSTANCE, "JenkinsInstance", properties)


class SlackNotification(Composite):
    """Forwards error lines from a log group to a Slack webhook."""

    def __init__(self, scope: Composite, id: str, source_log_group: NodeHandle, name: str = "slackNotification"):
        super().__init__(scope, id)
        config = self.config
        prefix = config.prefix
        function_name = f"{prefix}-{name}"

        self.role = self.add_node(NodeKind.ROLE, f"{name}ExecutionRole", {
            "name": f"{prefix}-{name}ExecutionRole",
            "assumed_by": Principal.service("lambda.amazonaws.com"),
            "managed_policy_arns": ["arn:aws:iam::aws:policy/service-role/AWSLambdaBasicExecutionRole"],
        })
        log_group = self.add_node(NodeKind.LOG_GROUP, f"{name}LogGroup", {
            "name": f"/aws/lambda/{function_name}",
            "retention_in_days": 7,
        })
        self.function = self.add_node(NodeKind.FUNCTION, name, {
            "name": function_name,
            "runtime": "python3.12",
            "handler": "stackgraph.alerts.handler",
            "role": self.role.arn,
            "code_path": config.alert_code_path,
            "timeout": 10,
            "environment": {"variables": {"SLACK_WEBHOOK_URL": parse_value(config.slack_webhook_url)}},
        }, depends_on=[log_group])

        permission = self.add_node(NodeKind.FUNCTION_PERMISSION, "InvokeFromLogs", {
            "action": "lambda:InvokeFunction",
            "function": self.function.output("name"),
            "principal": f"logs.{config.region}.amazonaws.com",
            "source_arn": Join((source_log_group.arn, ":*")),
        })
        self.add_node(NodeKind.LOG_SUBSCRIPTION, "ErrorSubscription", {
            "log_group": source_log_group.output("name"),
            "filter_pattern": "",
            "destination_arn": self.function.arn,
        }, depends_on=[permission])


MANAGED_RULES = [
    ("SecurityGroupPort22Open", "INCOMING_SSH_DISABLED", "security-group-port-22-open"),
    ("DynamoDBBackupEnabled", "DYNAMODB_AUTOSCALING_ENABLED", "dynamodb-backup-enabled"),
    ("CloudTrailEnabled", "CLOUD_TRAIL_ENABLED", "cloudtrail-enabled"),
    ("CloudTrailLogValidation", "CLOUD_TRAIL_LOG_FILE_VALIDATION_ENABLED", "cloudtrail-log-validation"),
    ("CloudTrailLogCloudWatch", "CLOUD_TRAIL_CLOUD_WATCH_LOGS_ENABLED", "cloudtrail-log-cloudwatch"),
    ("S3BucketPublicReadProhibited", "S3_BUCKET_PUBLIC_READ_PROHIBITED", "s3-bucket-public-read-prohibited"),
    ("CloudWatchLogGroupRetention", "CLOUDWATCH_LOG_GROUP_ENCRYPTED", "cloudwatch-log-group-encrypted"),
]


class ConfigRules(Composite):
    def __init__(self, scope: Composite, id: str):
        super().__init__(scope, id)
        prefix = self.config.prefix
        self.add_node(NodeKind.CONFIG_RULE, "AccessKeysRotated", {
            "name": f"{prefix}-access-keys-rotated",
            "source": {"owner": "AWS", "source_identifier": "ACCESS_KEYS_ROTATED"},
            "input_parameters": json.dumps({"maxAccessKeyAge": "60"}),
            "maximum_execution_frequency": "Twelve_Hours",
        })
        for rule_id, identifier, suffix in MANAGED_RULES:
            self.add_node(NodeKind.CONFIG_RULE, rule_id, {
                "name": f"{prefix}-{suffix}",
                "source": {"owner": "AWS", "source_identifier": identifier},
            })


def build_infra_stack(config: StackConfig, id: str = "InfraStack") -> Stack:
    stack = Stack(id, config)
    prefix = config.prefix

    network = Network(stack, "Network")
    tables = Dynamodb(stack, "Dynamodb")
    backend = Backend(stack, "backend", network)

    tables.patients_table.grant_read_write_data(backend.task_role)
    tables.records_table.grant_read_write_data(backend.task_role)

    repository = stack.add_node(NodeKind.REPOSITORY, "backendRepository", {
        "name": f"{prefix}-backend",
        "force_delete": not config.is_production,
    })
    stack.export("repositoryUri", repository.output("repository_url"))

    frontend_bucket = stack.add_node(NodeKind.BUCKET, "frontendBucket", {
        "bucket": f"{prefix}-frontend",
        "force_destroy": not config.is_production,
        "retain_on_delete": config.is_production,
    })

    pipeline_roles = PipelineRoles(stack, "PipelineRoles", frontend_bucket)
    jenkins = Jenkins(stack, "Jenkins", network)
    backend.grant_deployment(pipeline_roles.backend_pipeline_role)
    backend.grant_deployment(jenkins.role)

    if config.slack_webhook_url:
        SlackNotification(stack, "SlackNotification", backend.log_group)

    ConfigRules(stack, "ConfigRules")
    stack.add_declared_resources()
    return stack
