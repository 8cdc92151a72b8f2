import base64
import json

import pytest
import yaml

from config import DeploymentConfig, Json, Placement
from bootstrap import bootstrap_sequence, render_cloud_config
from graph import build_resource_graph


@pytest.fixture
def graph(demo_config, placement):
    return build_resource_graph(demo_config, placement)


@pytest.mark.parametrize("identity", [
    ("demo", "demo-bucket", "demo-repo"),
    ("prod", "artifacts.example.com", "team/web"),
    ("x", "y", "z"),
])
def test_exactly_one_fleet(identity, placement):
    graph = build_resource_graph(DeploymentConfig(*identity), placement)
    fleets = graph.of_type("autoscaling.Group")

    assert len(fleets) == 1
    assert fleets[0].args["min_size"] == 2
    assert fleets[0].args["max_size"] == 3
    assert "desired_capacity" not in fleets[0].args


def test_fleet_update_policy(graph):
    fleet = graph.get("fleet").args

    assert fleet["instance_refresh"]["strategy"] == "Rolling"
    assert fleet["wait_for_capacity_timeout"] == "5m"
    assert fleet["wait_for_elb_capacity"] == fleet["min_size"]
    assert fleet["target_group_arns"] == ["ref:target-group.arn"]
    assert fleet["vpc_zone_identifiers"] == ["ref:public-subnet-0", "ref:public-subnet-1", "ref:public-subnet-2"]


def test_launch_template(graph):
    template = graph.get("launch-template").args

    assert template["instance_type"] == "t4g.nano"
    assert "al2023" in template["image_id"] and template["image_id"].endswith("arm64")
    assert template["iam_instance_profile"] == {"arn": "ref:instance-profile.arn"}
    assert template["vpc_security_group_ids"] == ["ref:security-group"]

    user_data = base64.b64decode(template["user_data"]).decode("utf-8")
    assert user_data.startswith("#cloud-config\n")
    assert "s3://demo-bucket/docker-compose.yml" in "\n".join(yaml.safe_load(user_data)["runcmd"])


def test_web_acl_only_observes(graph):
    acls = graph.of_type("wafv2.WebAcl")
    assert len(acls) == 1
    acl = acls[0].args

    assert acl["default_action"] == {"allow": {}}
    assert acl["scope"] == "REGIONAL"
    assert len(acl["rules"]) == 1
    rule = acl["rules"][0]
    assert rule["override_action"] == {"none": {}}
    assert rule["statement"]["managed_rule_group_statement"] == {
        "name": "AWSManagedRulesCommonRuleSet",
        "vendor_name": "AWS",
    }

    association = graph.get("web-acl-association").args
    assert association == {"resource_arn": "ref:load-balancer.arn", "web_acl_arn": "ref:web-acl.arn"}


def test_single_http_listener(graph):
    listeners = graph.of_type("lb.Listener")
    assert len(listeners) == 1
    listener = listeners[0].args

    assert listener["port"] == 80
    assert listener["protocol"] == "HTTP"
    assert listener["default_actions"] == [{"type": "forward", "target_group_arn": "ref:target-group.arn"}]

    health_check = graph.get("target-group").args["health_check"]
    assert health_check["path"] == "/"
    assert health_check["matcher"] == "200-299"


def test_https_listener_with_certificate(placement):
    config = DeploymentConfig("demo", "demo-bucket", "demo-repo",
                              certificate_arn="arn:aws:acm:us-east-1:123456789012:certificate/abc")
    listeners = build_resource_graph(config, placement).of_type("lb.Listener")

    assert [(l.args["port"], l.args["protocol"]) for l in listeners] == [(80, "HTTP"), (443, "HTTPS")]
    assert listeners[1].args["certificate_arn"] == config.certificate_arn


def test_load_balancer_is_internet_facing(graph):
    balancers = graph.of_type("lb.LoadBalancer")
    assert len(balancers) == 1
    assert balancers[0].args["internal"] is False
    assert balancers[0].args["load_balancer_type"] == "application"


def test_security_group_allows_web_traffic(graph):
    groups = graph.of_type("ec2.SecurityGroup")
    assert len(groups) == 1
    ingress = groups[0].args["ingress"]

    assert sorted(rule["from_port"] for rule in ingress) == [80, 443]
    assert all(rule["cidr_blocks"] == ["0.0.0.0/0"] for rule in ingress)


@pytest.mark.parametrize("zones, expected", [(("a",), 1), (("a", "b"), 2), (("a", "b", "c", "d"), 3)])
def test_subnets_per_zone(demo_config, zones, expected):
    graph = build_resource_graph(demo_config, Placement("us-east-1", zones))
    subnets = graph.of_type("ec2.Subnet")

    assert len(subnets) == expected
    assert [s.args["availability_zone"] for s in subnets] == list(zones[:expected])
    assert all(s.args["map_public_ip_on_launch"] for s in subnets)
    assert graph.get("fleet").args["vpc_zone_identifiers"] == [f"ref:{s.name}" for s in subnets]


def test_no_zones(demo_config):
    with pytest.raises(ValueError, match="eu-west-9"):
        build_resource_graph(demo_config, Placement("eu-west-9", ()))


def test_public_network_without_nat(graph):
    assert graph.of_type("ec2.NatGateway") == ()
    endpoint = graph.get("s3-endpoint").args
    assert endpoint["service_name"] == "com.amazonaws.us-east-1.s3"
    assert endpoint["vpc_endpoint_type"] == "Gateway"


def test_role_is_for_ec2_only(graph):
    policy = graph.get("role").args["assume_role_policy"]
    assert isinstance(policy, Json)
    assert json.dumps(policy.document["Statement"]) == json.dumps([{
        "Effect": "Allow",
        "Principal": {"Service": "ec2.amazonaws.com"},
        "Action": "sts:AssumeRole",
    }])


def test_role_reads_bucket_and_pulls_images(graph):
    assert graph.get("artifact-bucket").existing
    assert graph.get("artifact-bucket").args == {"bucket": "demo-bucket"}
    assert graph.get("registry").existing
    assert graph.get("registry").args == {"name": "demo-repo"}

    bucket_policy = graph.get("artifact-read").args["policy"].document["Statement"][0]
    assert bucket_policy["Resource"] == ["ref:artifact-bucket.arn", "${artifact-bucket.arn}/*"]

    pull_policy = graph.get("registry-pull").args["policy"].document["Statement"]
    assert "ecr:BatchGetImage" in pull_policy[0]["Action"]
    assert pull_policy[0]["Resource"] == "ref:registry.arn"
    assert pull_policy[1]["Action"] == "ecr:GetAuthorizationToken"


def test_outputs(graph):
    assert [(o.name, o.ref) for o in graph.outputs] == [
        ("repository-url", "ref:registry.repository_url"),
        ("load-balancer-url", "ref:load-balancer.dns_name"),
    ]


def test_references_point_backwards(graph):
    seen = set()
    for resource in graph.resources:
        for ref in _refs(resource.args):
            assert ref in seen, f"{resource.name} references {ref} before it exists"
        seen.add(resource.name)


def _refs(value):
    if isinstance(value, Json):
        yield from _refs(value.document)
    elif isinstance(value, dict):
        for item in value.values():
            yield from _refs(item)
    elif isinstance(value, list):
        for item in value:
            yield from _refs(item)
    elif isinstance(value, str) and value.startswith("ref:"):
        yield value[4:].split(".", 1)[0]
    elif isinstance(value, str) and "${" in value:
        yield value.split("${", 1)[1].split(".", 1)[0]


def test_graph_carries_rendered_bootstrap(demo_config, graph):
    assert graph.bootstrap == bootstrap_sequence(demo_config)

    user_data = base64.b64decode(graph.get("launch-template").args["user_data"]).decode("utf-8")
    assert user_data == render_cloud_config(graph.bootstrap)
