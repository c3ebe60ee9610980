"""
This module defines the data structures for our configuration and loads
them from YAML. The config is built once and handed to the Stack; nothing
below the root reads process state.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml

from stackgraph.errors import ConfigError

ENVIRONMENTS = ("dev", "prod")
REQUIRED_KEYS = ("environment", "prefix", "region")

AWS_REGION_ABBREVIATIONS = {
    "us-east-1": "use1",
    "us-east-2": "use2",
    "us-west-1": "usw1",
    "us-west-2": "usw2",
    "af-south-1": "afs1",
    "ap-east-1": "ape1",
    "ap-south-1": "aps1",
    "ap-northeast-1": "apne1",
    "ap-northeast-2": "apne2",
    "ap-northeast-3": "apne3",
    "ap-southeast-1": "apse1",
    "ap-southeast-2": "apse2",
    "ca-central-1": "cac1",
    "eu-central-1": "euc1",
    "eu-west-1": "euw1",
    "eu-west-2": "euw2",
    "eu-west-3": "euw3",
    "eu-north-1": "eun1",
    "eu-south-1": "eus1",
    "me-south-1": "mes1",
    "sa-east-1": "sae1",
    "us-gov-east-1": "usge1",
    "us-gov-west-1": "usgw1",
    "cn-north-1": "cnn1",
    "cn-northwest-1": "cnnw1",
}


def get_abbreviation(region: str) -> str:
    return AWS_REGION_ABBREVIATIONS.get(region.lower(), region.split("-")[0].lower())


@dataclass
class DeclaredResource:
    """An extra resource declared in config.yaml rather than in the blueprint."""

    name: str
    type: str
    args: Dict[str, Any] = field(default_factory=dict)
    custom_name: Optional[str] = None
    existing: bool = False
    depends_on: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeclaredResource":
        for key in ("name", "type"):
            if key not in data:
                raise ConfigError(f"Declared resource is missing '{key}': {data}")
        args = dict(data.get("args") or {})
        existing = bool(args.pop("existing", data.get("existing", False)))
        return cls(
            name=data["name"],
            type=data["type"],
            args=args,
            custom_name=data.get("custom_name"),
            existing=existing,
            depends_on=list(data.get("depends_on") or []),
        )


@dataclass
class StackConfig:
    environment: str
    prefix: str
    region: str
    tags: Dict[str, str] = field(default_factory=dict)
    team: Optional[str] = None
    service: Optional[str] = None
    certificate_arn: str = ""
    backend_repo_path: str = ""
    frontend_repo_path: str = ""
    slack_webhook_url: str = ""
    key_pair_name: Optional[str] = None
    availability_zones: List[str] = field(default_factory=list)
    alert_code_path: str = "build/alerts"
    instance_type: str = "t2.micro"
    desired_capacity: int = 1
    table_read_capacity: int = 2
    table_write_capacity: int = 2
    resources: List[DeclaredResource] = field(default_factory=list)

    def __post_init__(self):
        self.environment = str(self.environment).strip().lower()
        if self.environment not in ENVIRONMENTS:
            raise ConfigError(
                f"Unsupported environment '{self.environment}', expected one of {', '.join(ENVIRONMENTS)}"
            )
        self.prefix = str(self.prefix).strip()
        if not self.prefix:
            raise ConfigError("Configuration key 'prefix' must not be empty")
        if not isinstance(self.tags, dict):
            raise ConfigError("Configuration key 'tags' must be a mapping")

    @property
    def is_production(self) -> bool:
        return self.environment == "prod"

    @property
    def zones(self) -> List[str]:
        return self.availability_zones or [f"{self.region}a", f"{self.region}b"]

    @property
    def region_abbreviation(self) -> str:
        return get_abbreviation(self.region)

    def resource_name(self, base_name: str) -> str:
        parts = [self.prefix, self.team, self.service, self.environment, self.region_abbreviation, base_name]
        return "-".join(p.strip() for p in parts if p).lower()

    @classmethod
    def from_dict(cls, config_data: Dict[str, Any]) -> "StackConfig":
        if not isinstance(config_data, dict):
            raise ConfigError("Configuration must be a mapping")
        # Ensure required keys exist
        for key in REQUIRED_KEYS:
            if key not in config_data:
                raise ConfigError(f"Missing required configuration key: {key}")

        data = dict(config_data)
        declared = data.pop("resources", None) or data.pop("aws_resources", None) or []
        data.pop("aws_resources", None)
        known = set(cls.__dataclass_fields__) - {"resources"}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}")
        data["tags"] = data.get("tags") or {}
        return cls(resources=[DeclaredResource.from_dict(r) for r in declared], **data)


def load_config(file_path: str) -> StackConfig:
    """Load and validate YAML configuration from the given file path."""
    with open(file_path, "r") as file:
        config_data = yaml.safe_load(file)
    return StackConfig.from_dict(config_data)
