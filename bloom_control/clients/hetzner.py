"""
Hetzner Cloud provisioner.
"""

from typing import Any, Dict, Optional

import httpx
from loguru import logger

from .base import BaseProvisioner, ProvisionRequest, ProvisionResult


PROJECT_LABEL = "grove-bloom"


class HetznerAPIError(Exception):
    """Non-success response from the Hetzner API."""


class HetznerProvisioner(BaseProvisioner):
    """Creates and deletes servers through the Hetzner Cloud API."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        api_token: str,
        base_url: str = "https://api.hetzner.cloud/v1",
        ssh_key_id: Optional[str] = None,
        image: str = "ubuntu-24.04"
    ):
        self.http = http_client
        self.base_url = base_url.rstrip("/")
        self.ssh_key_id = ssh_key_id
        self.image = image
        self._headers = {
            "Authorization": f"Bearer {api_token}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        response = await self.http.request(method, f"{self.base_url}{path}", headers=self._headers, json=body)
        if response.is_error:
            raise HetznerAPIError(f"Hetzner API error ({response.status_code}): {response.text}")

        # DELETE may return 204 No Content
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    @staticmethod
    def build_user_data(request: ProvisionRequest) -> str:
        """cloud-init payload carrying the values the instance needs to call back."""
        return (
            "#cloud-config\n"
            "write_files:\n"
            "  - path: /etc/bloom/env\n"
            "    permissions: '0600'\n"
            "    content: |\n"
            f"      SESSION_ID={request.session_id}\n"
            f"      WEBHOOK_URL={request.webhook_url}\n"
            f"      WEBHOOK_SECRET={request.webhook_secret}\n"
            f"      IDLE_TIMEOUT={request.idle_timeout}\n"
            f"      AUTO_SHUTDOWN={str(request.auto_shutdown).lower()}\n"
        )

    async def create_instance(self, request: ProvisionRequest) -> ProvisionResult:
        server_name = f"bloom-{request.session_id}"
        body: Dict[str, Any] = {
            "name": server_name,
            "server_type": request.region.server_type,
            "datacenter": request.region.datacenter,
            "image": self.image,
            "user_data": self.build_user_data(request),
            "labels": {"project": PROJECT_LABEL, "session": request.session_id},
        }
        if self.ssh_key_id:
            body["ssh_keys"] = [self.ssh_key_id]

        data = await self._request("POST", "/servers", body)
        server = data["server"]
        logger.info(f"Hetzner server {server['id']} ({server['name']}) requested in {request.region.datacenter}")
        return ProvisionResult(instance_id=str(server["id"]), server_name=server["name"])

    async def delete_instance(self, instance_id: str) -> None:
        await self._request("DELETE", f"/servers/{instance_id}")
        logger.info(f"Hetzner server {instance_id} deleted")
