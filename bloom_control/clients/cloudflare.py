"""
Cloudflare DNS updater.
"""

from typing import Any, Dict, Optional

import httpx
from loguru import logger

from .base import BaseDnsUpdater


class CloudflareAPIError(Exception):
    """Cloudflare reported success=false."""


class CloudflareDns(BaseDnsUpdater):
    """Upserts the A record that points the public hostname at the instance."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        api_token: str,
        zone_id: str,
        record_name: str,
        base_url: str = "https://api.cloudflare.com/client/v4",
        ttl: int = 60
    ):
        self.http = http_client
        self.zone_id = zone_id
        self.record_name = record_name
        self.base_url = base_url.rstrip("/")
        self.ttl = ttl
        self._headers = {
            "Authorization": f"Bearer {api_token}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None, params: Optional[Dict[str, str]] = None) -> Any:
        response = await self.http.request(
            method, f"{self.base_url}{path}", headers=self._headers, json=body, params=params
        )
        data = response.json()
        if not data.get("success"):
            raise CloudflareAPIError(f"Cloudflare API error: {data.get('errors')}")
        return data.get("result")

    async def get_record_id(self) -> Optional[str]:
        records = await self._request(
            "GET", f"/zones/{self.zone_id}/dns_records", params={"type": "A", "name": self.record_name}
        )
        return records[0]["id"] if records else None

    async def update_record(self, address: str) -> None:
        body = {"type": "A", "name": self.record_name, "content": address, "ttl": self.ttl, "proxied": False}
        record_id = await self.get_record_id()

        if record_id:
            await self._request("PATCH", f"/zones/{self.zone_id}/dns_records/{record_id}", body)
        else:
            await self._request("POST", f"/zones/{self.zone_id}/dns_records", body)

        logger.info(f"DNS {self.record_name} -> {address}")
