import pulumi
import pytest

from config import DeploymentConfig, Placement

ACCOUNT_ID = "123456789012"
REGION = "us-east-1"
ZONES = ["us-east-1a", "us-east-1b", "us-east-1c", "us-east-1d"]


class InfraMocks(pulumi.runtime.Mocks):
    def new_resource(self, args: pulumi.runtime.MockResourceArgs):
        outputs = dict(args.inputs)
        outputs.setdefault("arn", f"arn:aws:mock:{REGION}:{ACCOUNT_ID}:{args.name}")
        if args.typ == "aws:lb/loadBalancer:LoadBalancer":
            outputs["dnsName"] = f"{args.name}-1234567890.{REGION}.elb.amazonaws.com"
        if args.typ == "aws:ec2/launchTemplate:LaunchTemplate":
            outputs["latestVersion"] = 1
        return [f"{args.name}_id", outputs]

    def call(self, args: pulumi.runtime.MockCallArgs):
        if args.token == "aws:ecr/getRepository:getRepository":
            name = args.args["name"]
            return {
                "id": name,
                "name": name,
                "arn": f"arn:aws:ecr:{REGION}:{ACCOUNT_ID}:repository/{name}",
                "registryId": ACCOUNT_ID,
                "repositoryUrl": f"{ACCOUNT_ID}.dkr.ecr.{REGION}.amazonaws.com/{name}",
            }
        if args.token == "aws:s3/getBucket:getBucket":
            bucket = args.args["bucket"]
            return {"id": bucket, "bucket": bucket, "arn": f"arn:aws:s3:::{bucket}"}
        if args.token == "aws:index/getRegion:getRegion":
            return {"id": REGION, "name": REGION, "endpoint": f"ec2.{REGION}.amazonaws.com"}
        if args.token == "aws:index/getAvailabilityZones:getAvailabilityZones":
            return {"id": REGION, "names": ZONES, "zoneIds": [f"use1-az{i}" for i in range(1, 5)]}
        return {}


pulumi.runtime.set_mocks(InfraMocks(), preview=False)


@pytest.fixture
def demo_config():
    return DeploymentConfig(stack_name="demo", bucket_name="demo-bucket", repository_name="demo-repo")


@pytest.fixture
def placement():
    return Placement(region=REGION, zones=tuple(ZONES))


@pytest.fixture
def env(monkeypatch, tmp_path):
    """A clean environment with no deployment variables and no settings file."""
    for variable in ("SINFRA_STACK_NAME", "SINFRA_S3_BUCKET", "SINFRA_ECR_REPO"):
        monkeypatch.delenv(variable, raising=False)
    monkeypatch.setenv("SINFRA_SETTINGS_FILE", str(tmp_path / "missing.yaml"))
    return monkeypatch
