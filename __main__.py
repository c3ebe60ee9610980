import pulumi
from stackgraph.blueprint import build_infra_stack
from stackgraph.config import load_config
from stackgraph.executor import PlanExecutor
from stackgraph.planner import plan
from stackgraph.providers import PulumiProvider
from stackgraph.references import resolve_value


def main():
    # Load YAML configuration
    config = load_config("config.yaml")

    try:
        stack = build_infra_stack(config)
        ordered_plan = plan(stack)
    except Exception as e:
        pulumi.log.error(f"Failed to plan infrastructure: {e}")
        raise

    provider = PulumiProvider(config)
    # Pulumi registers resources on its own event loop, so realize inline.
    report = PlanExecutor(provider, max_workers=1).execute(ordered_plan)
    report.raise_for_failures()

    # Export stack outputs
    for name, value in stack.exports.items():
        try:
            pulumi.export(name, resolve_value(value, ordered_plan.graph))
        except Exception as e:
            pulumi.log.warn(f"Failed to export output '{name}': {e}")


if __name__ == "__main__":
    main()
