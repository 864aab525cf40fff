import boto3
import pytest
from moto import mock_aws

from ecs_deployer.aws.utils import AWSClientManager
from ecs_deployer.settings import get_settings
from tests.consts import TEST_REGION
from tests.fixtures.fake_cloud import fake_clock, fake_provider  # noqa: F401
from tests.fixtures.specs import spec, spec_file  # noqa: F401


@pytest.fixture(autouse=True)
def deployer_env(monkeypatch, tmp_path):
    """Isolated settings for every test: fake credentials, temp state dir."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", TEST_REGION)
    monkeypatch.delenv("AWS_PROFILE", raising=False)
    monkeypatch.delenv("AWS_ENDPOINT_URL", raising=False)
    monkeypatch.setenv("ECS_DEPLOYER_DEPLOYMENT_MODE", "aws-prod")
    monkeypatch.setenv("ECS_DEPLOYER_STATE_DIR", str(tmp_path / "state"))
    get_settings.cache_clear()
    AWSClientManager.reset()
    yield
    get_settings.cache_clear()
    AWSClientManager.reset()


@pytest.fixture
def mocked_aws():
    """Moto-backed AWS with a VPC and two subnets in different zones."""
    with mock_aws():
        ec2 = boto3.client("ec2", region_name=TEST_REGION)
        vpc_id = ec2.create_vpc(CidrBlock="10.0.0.0/16")["Vpc"]["VpcId"]
        subnets = [
            ec2.create_subnet(VpcId=vpc_id, CidrBlock=cidr, AvailabilityZone=zone)["Subnet"]["SubnetId"]
            for cidr, zone in (("10.0.0.0/24", f"{TEST_REGION}a"), ("10.0.1.0/24", f"{TEST_REGION}b"))
        ]
        security_group = ec2.create_security_group(
            GroupName="lamp-web", Description="lamp web", VpcId=vpc_id)["GroupId"]
        yield {"vpc_id": vpc_id, "subnets": subnets, "security_group": security_group}


@pytest.fixture
def state_dir():
    return get_settings().state_dir
