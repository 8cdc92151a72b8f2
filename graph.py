"""
The resource graph of a deployment, as plain data.

Nodes reference each other with ``ref:<node>[.<attr>]`` strings (``id`` when
no attribute is given) or ``${<node>.<attr>}`` placeholders inside a larger
string. ``AWSResourceBuilder`` resolves them while materialising the nodes in
order, so a node may only reference nodes listed before it.
"""

import base64
from typing import Any, Dict, List, Sequence

from bootstrap import Step, bootstrap_sequence, render_cloud_config
from config import AWSResource, DeploymentConfig, GraphOutput, Json, Placement, ResourceGraph

MAX_ZONES = 3
VPC_CIDR = "10.0.0.0/16"
ANY_IPV4 = "0.0.0.0/0"

INSTANCE_TYPE = "t4g.nano"
# Resolved by EC2 at launch, always the latest Amazon Linux 2023 arm64 image.
MACHINE_IMAGE = "resolve:ssm:/aws/service/ami-amazon-linux-latest/al2023-ami-kernel-default-arm64"

MIN_CAPACITY = 2
MAX_CAPACITY = 3
SIGNAL_TIMEOUT = "5m"

HEALTH_CHECK_PATH = "/"
HEALTHY_HTTP_CODES = "200-299"
HTTPS_SSL_POLICY = "ELBSecurityPolicy-TLS13-1-2-2021-06"

MANAGED_RULE_GROUP = "AWSManagedRulesCommonRuleSet"
WAF_METRIC_NAME = "wafv2-simple-infra-metric"
SSM_MANAGED_POLICY = "arn:aws:iam::aws:policy/AmazonSSMManagedInstanceCore"


def _policy(statements: List[Dict[str, Any]]) -> Json:
    return Json({"Version": "2012-10-17", "Statement": statements})


def network(config: DeploymentConfig, placement: Placement) -> List[AWSResource]:
    zones = placement.zones[:MAX_ZONES]
    if not zones:
        raise ValueError(f"No availability zones available in region '{placement.region}'")

    resources = [
        AWSResource("vpc", "ec2.Vpc", {
            "cidr_block": VPC_CIDR,
            "enable_dns_hostnames": True,
            "enable_dns_support": True,
            "tags": {"Name": f"{config.stack_name}-vpc"},
        }),
        AWSResource("internet-gateway", "ec2.InternetGateway", {"vpc_id": "ref:vpc"}),
        # Public subnets only: instances reach the internet through the
        # gateway directly, there is no NAT.
        AWSResource("public-routes", "ec2.RouteTable", {
            "vpc_id": "ref:vpc",
            "routes": [{"cidr_block": ANY_IPV4, "gateway_id": "ref:internet-gateway"}],
        }),
    ]

    for index, zone in enumerate(zones):
        subnet = f"public-subnet-{index}"
        resources += [
            AWSResource(subnet, "ec2.Subnet", {
                "vpc_id": "ref:vpc",
                "cidr_block": f"10.0.{index}.0/24",
                "availability_zone": zone,
                "map_public_ip_on_launch": True,
                "tags": {"Name": f"{config.stack_name}-{subnet}"},
            }),
            AWSResource(f"{subnet}-routes", "ec2.RouteTableAssociation", {
                "subnet_id": f"ref:{subnet}",
                "route_table_id": "ref:public-routes",
            }),
        ]

    # S3 traffic stays on the AWS network.
    resources.append(AWSResource("s3-endpoint", "ec2.VpcEndpoint", {
        "vpc_id": "ref:vpc",
        "service_name": f"com.amazonaws.{placement.region}.s3",
        "vpc_endpoint_type": "Gateway",
        "route_table_ids": ["ref:public-routes"],
    }))
    return resources


def access(config: DeploymentConfig) -> List[AWSResource]:
    return [
        AWSResource("artifact-bucket", "s3.Bucket", {"bucket": config.bucket_name}, existing=True),
        AWSResource("registry", "ecr.Repository", {"name": config.repository_name}, existing=True),
        AWSResource("role", "iam.Role", {
            "assume_role_policy": _policy([{
                "Effect": "Allow",
                "Principal": {"Service": "ec2.amazonaws.com"},
                "Action": "sts:AssumeRole",
            }]),
        }),
        AWSResource("artifact-read", "iam.RolePolicy", {
            "role": "ref:role",
            "policy": _policy([{
                "Effect": "Allow",
                "Action": ["s3:GetObject*", "s3:GetBucket*", "s3:List*"],
                "Resource": ["ref:artifact-bucket.arn", "${artifact-bucket.arn}/*"],
            }]),
        }),
        AWSResource("registry-pull", "iam.RolePolicy", {
            "role": "ref:role",
            "policy": _policy([
                {
                    "Effect": "Allow",
                    "Action": [
                        "ecr:BatchCheckLayerAvailability",
                        "ecr:GetDownloadUrlForLayer",
                        "ecr:BatchGetImage",
                        "ecr:DescribeImages",
                        "ecr:DescribeRepositories",
                    ],
                    "Resource": "ref:registry.arn",
                },
                {"Effect": "Allow", "Action": "ecr:GetAuthorizationToken", "Resource": "*"},
            ]),
        }),
        AWSResource("ssm-session", "iam.RolePolicyAttachment", {
            "role": "ref:role.name",
            "policy_arn": SSM_MANAGED_POLICY,
        }),
        AWSResource("instance-profile", "iam.InstanceProfile", {"role": "ref:role.name"}),
        AWSResource("security-group", "ec2.SecurityGroup", {
            "vpc_id": "ref:vpc",
            "description": "Allow HTTP and HTTPS traffic from anywhere",
            "ingress": [
                {"protocol": "tcp", "from_port": 80, "to_port": 80, "cidr_blocks": [ANY_IPV4],
                 "description": "Allow HTTP traffic from anywhere"},
                {"protocol": "tcp", "from_port": 443, "to_port": 443, "cidr_blocks": [ANY_IPV4],
                 "description": "Allow HTTPS traffic from anywhere"},
            ],
            "egress": [{"protocol": "-1", "from_port": 0, "to_port": 0, "cidr_blocks": [ANY_IPV4]}],
        }),
    ]


def fleet(config: DeploymentConfig, subnets: Sequence[str], steps: Sequence[Step]) -> List[AWSResource]:
    user_data = render_cloud_config(steps)
    fleet_tags = {"stack": config.stack_name, "Name": f"{config.stack_name}-fleet", **config.tags}

    return [
        AWSResource("launch-template", "ec2.LaunchTemplate", {
            "image_id": MACHINE_IMAGE,
            "instance_type": INSTANCE_TYPE,
            "iam_instance_profile": {"arn": "ref:instance-profile.arn"},
            "vpc_security_group_ids": ["ref:security-group"],
            "metadata_options": {"http_endpoint": "enabled", "http_tokens": "required"},
            "user_data": base64.b64encode(user_data.encode("utf-8")).decode("ascii"),
            "update_default_version": True,
        }),
        AWSResource("target-group", "lb.TargetGroup", {
            "port": 80,
            "protocol": "HTTP",
            "target_type": "instance",
            "vpc_id": "ref:vpc",
            "health_check": {
                "path": HEALTH_CHECK_PATH,
                "port": "80",
                "protocol": "HTTP",
                "matcher": HEALTHY_HTTP_CODES,
            },
        }),
        # desired_capacity is left out: it defaults to min_size, and setting it
        # makes every redeploy reset the current capacity.
        AWSResource("fleet", "autoscaling.Group", {
            "min_size": MIN_CAPACITY,
            "max_size": MAX_CAPACITY,
            "vpc_zone_identifiers": [f"ref:{subnet}" for subnet in subnets],
            "launch_template": {
                "id": "ref:launch-template",
                "version": "${launch-template.latest_version}",
            },
            "target_group_arns": ["ref:target-group.arn"],
            "instance_refresh": {
                "strategy": "Rolling",
                "preferences": {"min_healthy_percentage": 50},
            },
            # Pulumi waits for this many healthy targets before the update
            # succeeds, and fails it once the timeout passes.
            "wait_for_elb_capacity": MIN_CAPACITY,
            "wait_for_capacity_timeout": SIGNAL_TIMEOUT,
            "tags": [
                {"key": key, "value": value, "propagate_at_launch": True}
                for key, value in fleet_tags.items()
            ],
        }),
    ]


def load_balancing(config: DeploymentConfig, subnets: Sequence[str]) -> List[AWSResource]:
    resources = [
        AWSResource("load-balancer", "lb.LoadBalancer", {
            "load_balancer_type": "application",
            "internal": False,
            "security_groups": ["ref:security-group"],
            "subnets": [f"ref:{subnet}" for subnet in subnets],
        }),
        AWSResource("http-listener", "lb.Listener", {
            "load_balancer_arn": "ref:load-balancer.arn",
            "port": 80,
            "protocol": "HTTP",
            "default_actions": [{"type": "forward", "target_group_arn": "ref:target-group.arn"}],
        }),
    ]

    if config.certificate_arn:
        resources.append(AWSResource("https-listener", "lb.Listener", {
            "load_balancer_arn": "ref:load-balancer.arn",
            "port": 443,
            "protocol": "HTTPS",
            "certificate_arn": config.certificate_arn,
            "ssl_policy": HTTPS_SSL_POLICY,
            "default_actions": [{"type": "forward", "target_group_arn": "ref:target-group.arn"}],
        }))

    visibility = {
        "cloudwatch_metrics_enabled": True,
        "metric_name": WAF_METRIC_NAME,
        "sampled_requests_enabled": True,
    }
    resources += [
        # Observe only: the managed rules count matches but never block.
        AWSResource("web-acl", "wafv2.WebAcl", {
            "name": f"{config.stack_name}-web-acl",
            "scope": "REGIONAL",
            "default_action": {"allow": {}},
            "visibility_config": visibility,
            "rules": [{
                "name": "CRSRule",
                "priority": 0,
                "override_action": {"none": {}},
                "statement": {
                    "managed_rule_group_statement": {
                        "name": MANAGED_RULE_GROUP,
                        "vendor_name": "AWS",
                    },
                },
                "visibility_config": visibility,
            }],
        }),
        AWSResource("web-acl-association", "wafv2.WebAclAssociation", {
            "resource_arn": "ref:load-balancer.arn",
            "web_acl_arn": "ref:web-acl.arn",
        }),
    ]
    return resources


def build_resource_graph(config: DeploymentConfig, placement: Placement) -> ResourceGraph:
    net = network(config, placement)
    subnets = [r.name for r in net if r.type == "ec2.Subnet"]

    steps = bootstrap_sequence(config)

    resources = net + access(config) + fleet(config, subnets, steps) + load_balancing(config, subnets)
    outputs = (
        GraphOutput("repository-url", "ref:registry.repository_url"),
        GraphOutput("load-balancer-url", "ref:load-balancer.dns_name"),
    )
    return ResourceGraph(resources=tuple(resources), outputs=outputs, bootstrap=steps)
