"""DigitalOcean Droplets provider adapter (REST API v2 over httpx)."""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

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

PROVIDER_NAME = "digitalocean"

_STATUS_MAP = {
    "new": MachineStatus.PROVISIONING,
    "active": MachineStatus.RUNNING,
    "off": MachineStatus.STOPPING,
    "archive": MachineStatus.TERMINATED,
}

_PAGE_SIZE = 200


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class DigitalOceanProvider:
    """Runs workers as droplets carrying the fleet tag."""

    name = PROVIDER_NAME

    def __init__(self, client: httpx.Client, fleet_tag: str):
        self._client = client
        self._fleet_tag = fleet_tag

    @classmethod
    def from_settings(cls, settings: Settings) -> "DigitalOceanProvider":
        client = httpx.Client(
            base_url=settings.DIGITALOCEAN_API_URL,
            headers={
                "Authorization": f"Bearer {settings.DIGITALOCEAN_TOKEN}",
                "Content-Type": "application/json",
            },
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        )
        return cls(client, settings.FLEET_TAG)

    def _request(self, method: str, url: str, *, operation: str, **kwargs) -> httpx.Response:
        try:
            return self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise TransientInfraError(f"DigitalOcean {operation} failed: {e}", operation=operation) from e

    @staticmethod
    def _message(resp: httpx.Response) -> str:
        try:
            return str(resp.json().get("message") or resp.text)
        except ValueError:
            return resp.text

    def _check(self, resp: httpx.Response, operation: str, machine: Optional[str] = None) -> None:
        if resp.status_code < 400:
            return
        detail = f"DigitalOcean {operation} returned {resp.status_code}: {self._message(resp)}"
        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientInfraError(detail, operation=operation)
        raise ProvisioningFailure(detail, machine=machine)

    def _to_machine(self, droplet: Dict[str, Any]) -> Machine:
        return Machine(
            id=str(droplet["id"]),
            name=droplet.get("name") or str(droplet["id"]),
            status=_STATUS_MAP.get(droplet.get("status") or "", MachineStatus.ERROR),
            size=droplet.get("size_slug"),
            region=(droplet.get("region") or {}).get("slug"),
            created_at=_parse_time(droplet.get("created_at")),
            tags=list(droplet.get("tags") or []),
            provider=PROVIDER_NAME,
        )

    def create_machine(self, spec: MachineSpec) -> MachineCreated:
        body: Dict[str, Any] = {
            "name": spec.name,
            "region": spec.region,
            "size": spec.size,
            "image": spec.image,
            "tags": spec.tags,
        }
        if spec.user_data:
            body["user_data"] = spec.user_data
        if spec.ssh_keys:
            body["ssh_keys"] = spec.ssh_keys
        resp = self._request("POST", "/droplets", operation="create_machine", json=body)
        self._check(resp, "create_machine", spec.name)
        droplet = resp.json()["droplet"]
        logger.info(f"Droplet {droplet['id']} requested for {spec.name}")
        return MachineCreated(id=str(droplet["id"]), provider=PROVIDER_NAME)

    def delete_machine(self, machine_ref: str) -> MachineDeleted:
        resp = self._request("DELETE", f"/droplets/{machine_ref}", operation="delete_machine")
        if resp.status_code == 404:
            logger.info(f"Droplet {machine_ref} already gone")
        else:
            self._check(resp, "delete_machine", machine_ref)
        return MachineDeleted(id=machine_ref, provider=PROVIDER_NAME)

    def list_machines(self) -> List[Machine]:
        machines: List[Machine] = []
        page = 1
        while True:
            resp = self._request(
                "GET",
                "/droplets",
                operation="list_machines",
                params={"tag_name": self._fleet_tag, "page": page, "per_page": _PAGE_SIZE},
            )
            if resp.status_code >= 400:
                raise TransientInfraError(
                    f"DigitalOcean list_machines returned {resp.status_code}", operation="list_machines"
                )
            payload = resp.json()
            machines.extend(self._to_machine(d) for d in payload.get("droplets") or [])
            next_page = ((payload.get("links") or {}).get("pages") or {}).get("next")
            if not next_page:
                return machines
            page += 1

    def describe_machine(self, machine_ref: str) -> MachineStatus:
        resp = self._request("GET", f"/droplets/{machine_ref}", operation="describe_machine")
        if resp.status_code == 404:
            return MachineStatus.TERMINATED
        if resp.status_code >= 400:
            raise TransientInfraError(
                f"DigitalOcean describe_machine returned {resp.status_code}", operation="describe_machine"
            )
        return self._to_machine(resp.json()["droplet"]).status
