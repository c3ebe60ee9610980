"""
Providers turn a planned node into a real (or pretend) resource.

PulumiProvider looks the node's kind up as a pulumi_aws class, applies the
stack's naming, tags and region, and hands back the resource's outputs.
DryRunProvider only records what it was asked to realize.
"""

import inspect
import re
import threading
from typing import Any, Dict, List, Optional, Tuple

import pulumi
import pulumi_aws as aws

from stackgraph import log
from stackgraph.config import StackConfig
from stackgraph.kinds import NodeKind, spec_for
from stackgraph.planner import PlanStep
from stackgraph.policy import POLICY_VERSION, Join
from stackgraph.references import SecretValue, bind_outputs


def to_snake_case(name: str) -> str:
    return re.sub(r'(?<!^)(?=[A-Z])', '_', name).lower()


def get_lookup_params(required_params: set, resolved_args: dict) -> dict:
    lookup_params = {}
    for param in required_params:
        snake_key = to_snake_case(param)
        if snake_key in resolved_args:
            lookup_params[param] = resolved_args[snake_key]
        elif param in resolved_args:
            lookup_params[param] = resolved_args[param]
    return lookup_params


class Provider:
    def realize(self, step: PlanStep, properties: Dict[str, Any], policies: List[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Create the resource for ``step`` and return its outputs by name.

        ``policies`` may still reference the node itself; bind them with
        bind_outputs() once the resource exists.
        """
        raise NotImplementedError


class DryRunProvider(Provider):
    def __init__(self):
        self.realized: List[Tuple[str, Dict[str, Any]]] = []
        self.policies: Dict[str, List[Any]] = {}
        self._lock = threading.Lock()

    def realize(self, step, properties, policies):
        outputs = {name: f"dry-run://{step.node_id}/{name}" for name in sorted(spec_for(step.kind).outputs)}
        with self._lock:
            self.realized.append((step.node_id, properties))
            if policies:
                self.policies[step.node_id] = bind_outputs(policies, step.node_id, outputs)
        log.info(f"Would create {step.node_id} ({step.kind.value})", "dry-run")
        return outputs


class PulumiProvider(Provider):
    def __init__(self, config: StackConfig):
        self.config = config
        self.resources: Dict[str, Any] = {}

    def finalize_value(self, value: Any) -> Any:
        if isinstance(value, SecretValue):
            # Fetch secret from Pulumi config
            return pulumi.Config().require_secret(value.key)
        elif isinstance(value, Join):
            return pulumi.Output.concat(*[self.finalize_value(part) for part in value.parts])
        elif isinstance(value, dict):
            return {k: self.finalize_value(v) for k, v in value.items()}
        elif isinstance(value, (list, tuple)):
            return [self.finalize_value(item) for item in value]
        return value

    def resource_class(self, kind: NodeKind):
        module_name, class_name = kind.value.rsplit(".", 1)
        module = getattr(aws, module_name, None)
        if not module:
            raise ValueError(f"AWS module '{module_name}' not found")
        try:
            return module, class_name, getattr(module, class_name)
        except AttributeError:
            raise ValueError(f"Resource class '{class_name}' not found in module '{module_name}'") from None

    def _apply_common_parameters(self, resolved_args: dict, init_sig: inspect.Signature) -> dict:
        if "tags" in init_sig.parameters:
            resource_tags = self.config.tags
            if resource_tags:
                resolved_args.setdefault("tags", resource_tags)
        else:
            resolved_args.pop("tags", None)
        if "region" in init_sig.parameters:
            if "region" not in resolved_args:
                resolved_args["region"] = self.config.region
        else:
            resolved_args.pop("region", None)
        return resolved_args

    def _policy_json(self, statements: List[Dict[str, Any]]):
        return pulumi.Output.json_dumps({"Version": POLICY_VERSION, "Statement": statements})

    def _shape_role(self, args: dict, policies: list) -> dict:
        assumed_by = args.pop("assumed_by")
        conditions = args.pop("assume_conditions", None)
        action = args.pop("assume_action", None)
        if action is None:
            federated = isinstance(assumed_by, dict) and "Federated" in assumed_by
            action = "sts:AssumeRoleWithWebIdentity" if federated else "sts:AssumeRole"
        trust = {"Effect": "Allow", "Principal": assumed_by, "Action": action}
        if conditions:
            trust["Condition"] = conditions
        args["assume_role_policy"] = self._policy_json([trust])
        if policies:
            args["inline_policies"] = [
                aws.iam.RoleInlinePolicyArgs(name="attached-policy", policy=self._policy_json(policies))
            ]
        return args

    def _attach_resource_policy(self, step: PlanStep, name: str, resource: Any, policies: list) -> None:
        opts = pulumi.ResourceOptions(parent=resource)
        if step.kind is NodeKind.BUCKET:
            aws.s3.BucketPolicy(f"{name}-policy", bucket=resource.id, policy=self._policy_json(policies), opts=opts)
        elif step.kind is NodeKind.REPOSITORY:
            aws.ecr.RepositoryPolicy(
                f"{name}-policy", repository=resource.name, policy=self._policy_json(policies), opts=opts
            )

    def _lookup_existing(self, step: PlanStep, module: Any, class_name: str, resolved_args: dict) -> Optional[Any]:
        get_func_name = f"get_{to_snake_case(class_name)}"
        try:
            get_func = getattr(module, get_func_name)
            sig = inspect.signature(get_func)
            get_required = {k for k, param in sig.parameters.items() if k not in {"opts"} and param.default == param.empty}
            get_params = get_lookup_params(get_required, resolved_args)
            missing = get_required - set(get_params.keys())
            if missing:
                log.warn(f"Missing required params {missing} for existing resource '{step.node_id}'. Skipping the lookup attempt.", "pulumi")
                return None
            existing_resource = get_func(**get_params)
            log.info(f"Fetched existing resource '{step.node_id}' via '{get_func_name}' with {get_params}", "pulumi")
            return existing_resource
        except AttributeError:
            log.warn(f"Function '{get_func_name}' not found for '{step.kind.value}'. Proceeding to create new resource '{step.node_id}'.", "pulumi")
        except Exception as e:
            log.warn(f"Failed to retrieve existing resource '{step.node_id}': {e}. Proceeding with creation.", "pulumi")
        return None

    def realize(self, step, properties, policies):
        resolved_args = self.finalize_value(dict(properties))
        custom_name = resolved_args.pop("custom_name", None)
        is_existing = resolved_args.pop("existing", False)
        retain = bool(resolved_args.pop("retain_on_delete", False))
        module, class_name, ResourceClass = self.resource_class(step.kind)
        pulumi_name = custom_name if custom_name else self.config.resource_name(step.node_id.replace("/", "-"))

        resource = None
        created = False
        if is_existing:
            resource = self._lookup_existing(step, module, class_name, resolved_args)

        if resource is None:
            init_sig = inspect.signature(getattr(ResourceClass, "_internal_init", ResourceClass.__init__))
            if step.kind is NodeKind.ROLE:
                resolved_args = self._shape_role(resolved_args, self.finalize_value(policies))
            if step.kind is NodeKind.FUNCTION and "code_path" in resolved_args:
                resolved_args["code"] = pulumi.FileArchive(resolved_args.pop("code_path"))
            resolved_args = self._apply_common_parameters(resolved_args, init_sig)
            depends_on = [
                self.resources[d] for d in step.depends_on if isinstance(self.resources.get(d), pulumi.Resource)
            ]
            opts = pulumi.ResourceOptions(retain_on_delete=retain, depends_on=depends_on)
            log.debug(f"Final resolved args for '{step.node_id}': {resolved_args}", "pulumi")
            resource = ResourceClass(pulumi_name, opts=opts, **resolved_args)
            created = True
            log.info(f"Created resource: {pulumi_name} ({step.kind.value})", "pulumi")

        self.resources[step.node_id] = resource
        outputs = {
            name: getattr(resource, name)
            for name in sorted(spec_for(step.kind).outputs)
            if getattr(resource, name, None) is not None
        }
        if created and policies and step.kind is not NodeKind.ROLE:
            bound = self.finalize_value(bind_outputs(policies, step.node_id, outputs))
            self._attach_resource_policy(step, pulumi_name, resource, bound)
        return outputs
