"""AWS EC2 provider adapter."""

import logging
from typing import Any, Dict, List, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from encodefleet.core.config import Settings
from encodefleet.core.errors import ProvisioningFailure, TransientInfraError
from encodefleet.providers.base import (
    Machine,
    MachineCreated,
    MachineDeleted,
    MachineSpec,
    MachineStatus,
)

logger = logging.getLogger(__name__)

PROVIDER_NAME = "aws"

_STATE_MAP = {
    "pending": MachineStatus.PROVISIONING,
    "running": MachineStatus.RUNNING,
    "shutting-down": MachineStatus.STOPPING,
    "stopping": MachineStatus.STOPPING,
    "stopped": MachineStatus.STOPPING,
    "terminated": MachineStatus.TERMINATED,
}

# Error codes that mean "try again later" rather than "no".
_TRANSIENT_CODES = {
    "RequestLimitExceeded",
    "Throttling",
    "ThrottlingException",
    "InternalError",
    "InternalFailure",
    "ServiceUnavailable",
    "Unavailable",
    "InsufficientInstanceCapacity",
}

_NOT_FOUND_CODES = {"InvalidInstanceID.NotFound", "InvalidInstanceID.Malformed"}


def _error_code(e: ClientError) -> str:
    return str(getattr(e, "response", {}).get("Error", {}).get("Code", "") or "")


class AWSProvider:
    """Runs workers as EC2 instances tagged with the fleet tag."""

    name = PROVIDER_NAME

    def __init__(self, client: Any, fleet_tag: str):
        self._client = client
        self._fleet_tag = fleet_tag

    @classmethod
    def from_settings(cls, settings: Settings) -> "AWSProvider":
        client = boto3.client(
            "ec2",
            aws_access_key_id=settings.AWS_ACCESS_KEY_ID or None,
            aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY or None,
            region_name=settings.AWS_REGION,
            config=Config(
                connect_timeout=settings.PROVIDER_TIMEOUT_SECONDS,
                read_timeout=settings.PROVIDER_TIMEOUT_SECONDS,
                retries={"max_attempts": 2, "mode": "standard"},
            ),
        )
        return cls(client, settings.FLEET_TAG)

    @property
    def client(self):
        return self._client

    def _raise_for(self, e: Exception, operation: str, machine: Optional[str] = None):
        if isinstance(e, ClientError):
            code = _error_code(e)
            if code in _TRANSIENT_CODES:
                raise TransientInfraError(f"EC2 {operation} throttled/unavailable: {code}", operation=operation) from e
            raise ProvisioningFailure(f"EC2 {operation} rejected: {code}", machine=machine) from e
        raise TransientInfraError(f"EC2 {operation} failed: {e}", operation=operation) from e

    def _to_machine(self, instance: Dict[str, Any]) -> Machine:
        tags = {t.get("Key"): t.get("Value") for t in instance.get("Tags") or []}
        state = (instance.get("State") or {}).get("Name") or ""
        return Machine(
            id=instance["InstanceId"],
            name=tags.get("Name") or instance["InstanceId"],
            status=_STATE_MAP.get(state, MachineStatus.ERROR),
            size=instance.get("InstanceType"),
            region=(instance.get("Placement") or {}).get("AvailabilityZone"),
            created_at=instance.get("LaunchTime"),
            tags=[k for k in tags if k != "Name"],
            provider=PROVIDER_NAME,
        )

    def create_machine(self, spec: MachineSpec) -> MachineCreated:
        tags = [{"Key": "Name", "Value": spec.name}] + [{"Key": tag, "Value": "1"} for tag in spec.tags]
        params: Dict[str, Any] = {
            "ImageId": spec.image,
            "InstanceType": spec.size,
            "MinCount": 1,
            "MaxCount": 1,
            "TagSpecifications": [{"ResourceType": "instance", "Tags": tags}],
        }
        if spec.user_data:
            params["UserData"] = spec.user_data
        if spec.ssh_keys:
            params["KeyName"] = spec.ssh_keys[0]
        if spec.client_token:
            # EC2 returns the original instance for a repeated token.
            params["ClientToken"] = spec.client_token
        try:
            resp = self.client.run_instances(**params)
        except (ClientError, BotoCoreError) as e:
            self._raise_for(e, "run_instances", spec.name)
        instance_id = resp["Instances"][0]["InstanceId"]
        logger.info(f"EC2 instance {instance_id} requested for {spec.name}")
        return MachineCreated(id=instance_id, provider=PROVIDER_NAME)

    def delete_machine(self, machine_ref: str) -> MachineDeleted:
        try:
            self.client.terminate_instances(InstanceIds=[machine_ref])
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                logger.info(f"EC2 instance {machine_ref} already gone")
                return MachineDeleted(id=machine_ref, provider=PROVIDER_NAME)
            self._raise_for(e, "terminate_instances", machine_ref)
        except BotoCoreError as e:
            self._raise_for(e, "terminate_instances", machine_ref)
        return MachineDeleted(id=machine_ref, provider=PROVIDER_NAME)

    def list_machines(self) -> List[Machine]:
        machines: List[Machine] = []
        params: Dict[str, Any] = {"Filters": [{"Name": "tag-key", "Values": [self._fleet_tag]}]}
        while True:
            try:
                resp = self.client.describe_instances(**params)
            except (ClientError, BotoCoreError) as e:
                # Listing never provisions anything; any failure is retryable.
                raise TransientInfraError(f"EC2 describe_instances failed: {e}", operation="list_machines") from e
            for reservation in resp.get("Reservations") or []:
                for instance in reservation.get("Instances") or []:
                    machines.append(self._to_machine(instance))
            token = resp.get("NextToken")
            if not token:
                return machines
            params["NextToken"] = token

    def describe_machine(self, machine_ref: str) -> MachineStatus:
        try:
            resp = self.client.describe_instances(InstanceIds=[machine_ref])
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                return MachineStatus.TERMINATED
            raise TransientInfraError(f"EC2 describe_instances failed: {e}", operation="describe_machine") from e
        except BotoCoreError as e:
            raise TransientInfraError(f"EC2 describe_instances failed: {e}", operation="describe_machine") from e
        for reservation in resp.get("Reservations") or []:
            for instance in reservation.get("Instances") or []:
                return self._to_machine(instance).status
        return MachineStatus.TERMINATED
