import pulumi
import pulumi_aws as aws
from awsbuilder import AWSResourceBuilder
from bootstrap import ignored_failure_steps
from config import Placement, ResourceGraph, load_config
from graph import build_resource_graph


def current_placement() -> Placement:
    """Look up the region of the AWS provider and its available zones."""
    region = aws.get_region()
    zones = aws.get_availability_zones(state="available")
    return Placement(region=region.name, zones=tuple(zones.names))


def report_bootstrap_policy(graph: ResourceGraph):
    # Failed steps do not fail the deployment; keep that visible on every run.
    ignored = ignored_failure_steps(graph.bootstrap)
    if ignored:
        pulumi.log.warn(
            f"{len(ignored)} bootstrap steps ignore failures: a partially provisioned "
            "instance still counts as deployed. Check /var/log/cloud-init-output.log on the instances."
        )


def main():
    # Read configuration before anything is declared.
    config = load_config()

    try:
        graph = build_resource_graph(config, current_placement())
    except Exception as e:
        pulumi.log.error(f"Failed to build the resource graph: {e}")
        raise

    report_bootstrap_policy(graph)

    builder = AWSResourceBuilder(config)
    try:
        builder.build(graph)
    except Exception as e:
        pulumi.log.error(f"Failed during resource build: {e}")
        raise

    builder.export(graph)


if __name__ == "__main__":
    main()
