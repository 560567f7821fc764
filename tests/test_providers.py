"""
Tests for the provider adapters

Validates:
- DigitalOcean requests, paging and status mapping (httpx MockTransport)
- EC2 requests, paging and error classification (botocore Stubber)
- Rejections vs transient errors
- Deleting a machine that is already gone succeeds
- Provider registry lookup
"""

import json

import boto3
import httpx
import pytest
from botocore.config import Config
from botocore.stub import Stubber

from encodefleet.core.config import Settings
from encodefleet.core.errors import ConfigurationError, ProvisioningFailure, TransientInfraError
from encodefleet.providers import MachineSpec, MachineStatus, get_provider, register_provider
from encodefleet.providers.aws import AWSProvider
from encodefleet.providers.digitalocean import DigitalOceanProvider

FLEET_TAG = "encodefleet-worker"


def _spec(**overrides):
    values = {
        "name": "encoder-0",
        "size": "s-2vcpu-4gb",
        "region": "nyc3",
        "image": "encoder-image",
        "tags": [FLEET_TAG],
    }
    values.update(overrides)
    return MachineSpec(**values)


def _droplet(droplet_id, name, status):
    return {
        "id": droplet_id,
        "name": name,
        "status": status,
        "size_slug": "s-2vcpu-4gb",
        "region": {"slug": "nyc3"},
        "created_at": "2026-03-02T09:00:00Z",
        "tags": [FLEET_TAG],
    }


def _do_provider(handler):
    client = httpx.Client(transport=httpx.MockTransport(handler), base_url="https://api.test/v2")
    return DigitalOceanProvider(client, FLEET_TAG)


class TestDigitalOcean:
    def test_create_machine(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(202, json={"droplet": _droplet(3164444, "encoder-0", "new")})

        created = _do_provider(handler).create_machine(_spec(user_data="#cloud-config", ssh_keys=["ab:cd"]))

        assert created.id == "3164444"
        assert seen["method"] == "POST"
        assert seen["path"] == "/v2/droplets"
        assert seen["body"]["name"] == "encoder-0"
        assert seen["body"]["tags"] == [FLEET_TAG]
        assert seen["body"]["user_data"] == "#cloud-config"
        assert seen["body"]["ssh_keys"] == ["ab:cd"]

    @pytest.mark.parametrize(
        "status_code,error",
        [(422, ProvisioningFailure), (403, ProvisioningFailure), (429, TransientInfraError), (503, TransientInfraError)],
    )
    def test_create_errors(self, status_code, error):
        provider = _do_provider(lambda request: httpx.Response(status_code, json={"message": "nope"}))
        with pytest.raises(error):
            provider.create_machine(_spec())

    def test_network_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransientInfraError):
            _do_provider(handler).list_machines()

    @pytest.mark.parametrize("status_code", [204, 404])
    def test_delete_machine(self, status_code):
        provider = _do_provider(lambda request: httpx.Response(status_code))
        assert provider.delete_machine("3164444").id == "3164444"

    def test_list_machines_pages(self):
        pages = {
            "1": {
                "droplets": [_droplet(1, "encoder-0", "active"), _droplet(2, "encoder-1", "new")],
                "links": {"pages": {"next": "https://api.test/v2/droplets?page=2"}},
            },
            "2": {"droplets": [_droplet(3, "encoder-2", "off")], "links": {}},
        }

        def handler(request):
            assert request.url.params["tag_name"] == FLEET_TAG
            return httpx.Response(200, json=pages[request.url.params["page"]])

        machines = _do_provider(handler).list_machines()

        assert [(m.id, m.name, m.status) for m in machines] == [
            ("1", "encoder-0", MachineStatus.RUNNING),
            ("2", "encoder-1", MachineStatus.PROVISIONING),
            ("3", "encoder-2", MachineStatus.STOPPING),
        ]
        assert machines[0].region == "nyc3"

    def test_describe_machine(self):
        def handler(request):
            if request.url.path.endswith("/404404"):
                return httpx.Response(404, json={"id": "not_found"})
            return httpx.Response(200, json={"droplet": _droplet(1, "encoder-0", "active")})

        provider = _do_provider(handler)
        assert provider.describe_machine("1") == MachineStatus.RUNNING
        assert provider.describe_machine("404404") == MachineStatus.TERMINATED


@pytest.fixture
def ec2():
    client = boto3.client(
        "ec2",
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
        config=Config(retries={"mode": "standard", "total_max_attempts": 1}),
    )
    with Stubber(client) as stubber:
        yield AWSProvider(client, FLEET_TAG), stubber
        stubber.assert_no_pending_responses()


def _instance(instance_id, name, state):
    return {
        "InstanceId": instance_id,
        "InstanceType": "c5.large",
        "State": {"Name": state},
        "Tags": [{"Key": "Name", "Value": name}, {"Key": FLEET_TAG, "Value": "1"}],
    }


class TestAWS:
    def test_create_machine(self, ec2):
        provider, stubber = ec2
        stubber.add_response(
            "run_instances",
            {"Instances": [{"InstanceId": "i-0abc"}]},
            {
                "ImageId": "ami-123",
                "InstanceType": "c5.large",
                "MinCount": 1,
                "MaxCount": 1,
                "TagSpecifications": [
                    {
                        "ResourceType": "instance",
                        "Tags": [{"Key": "Name", "Value": "encoder-0"}, {"Key": FLEET_TAG, "Value": "1"}],
                    }
                ],
                "ClientToken": "encoder-0-1772442000",
            },
        )

        created = provider.create_machine(
            _spec(image="ami-123", size="c5.large", client_token="encoder-0-1772442000")
        )

        assert created.id == "i-0abc"
        assert created.provider == "aws"

    def test_create_rejected(self, ec2):
        provider, stubber = ec2
        stubber.add_client_error("run_instances", service_error_code="InvalidAMIID.NotFound", http_status_code=400)
        with pytest.raises(ProvisioningFailure):
            provider.create_machine(_spec())

    def test_create_throttled(self, ec2):
        provider, stubber = ec2
        stubber.add_client_error("run_instances", service_error_code="InsufficientInstanceCapacity", http_status_code=500)
        with pytest.raises(TransientInfraError):
            provider.create_machine(_spec())

    def test_delete_already_gone(self, ec2):
        provider, stubber = ec2
        stubber.add_client_error(
            "terminate_instances",
            service_error_code="InvalidInstanceID.NotFound",
            http_status_code=400,
            expected_params={"InstanceIds": ["i-gone"]},
        )
        assert provider.delete_machine("i-gone").id == "i-gone"

    def test_list_machines_pages(self, ec2):
        provider, stubber = ec2
        filters = [{"Name": "tag-key", "Values": [FLEET_TAG]}]
        stubber.add_response(
            "describe_instances",
            {"Reservations": [{"Instances": [_instance("i-1", "encoder-0", "running")]}], "NextToken": "page-2"},
            {"Filters": filters},
        )
        stubber.add_response(
            "describe_instances",
            {"Reservations": [{"Instances": [_instance("i-2", "encoder-1", "pending")]}]},
            {"Filters": filters, "NextToken": "page-2"},
        )

        machines = provider.list_machines()

        assert [(m.id, m.name, m.status) for m in machines] == [
            ("i-1", "encoder-0", MachineStatus.RUNNING),
            ("i-2", "encoder-1", MachineStatus.PROVISIONING),
        ]
        assert machines[0].tags == [FLEET_TAG]

    def test_describe_missing_instance(self, ec2):
        provider, stubber = ec2
        stubber.add_client_error("describe_instances", service_error_code="InvalidInstanceID.NotFound")
        assert provider.describe_machine("i-gone") == MachineStatus.TERMINATED


class TestRegistry:
    def test_registered_provider(self, provider):
        register_provider("fake", lambda settings: provider)
        settings = Settings(STORE_BACKEND="memory").model_copy(update={"PROVIDER": "fake"})
        assert get_provider(settings) is provider

    def test_unknown_provider(self):
        settings = Settings(STORE_BACKEND="memory").model_copy(update={"PROVIDER": "nimbus"})
        with pytest.raises(ConfigurationError):
            get_provider(settings)
