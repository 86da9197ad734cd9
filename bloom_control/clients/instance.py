"""
Instance client - commands sent to the agent host over HTTP.
"""

from typing import Any, Dict, Optional

import httpx
from loguru import logger

from .base import BaseInstanceMessenger


class InstanceRequestError(Exception):
    """The instance answered with an error status."""


class InstanceClient(BaseInstanceMessenger):
    """Talks to the daemon listening on the instance, authenticated with the shared secret."""

    def __init__(self, http_client: httpx.AsyncClient, webhook_secret: str, port: int = 8080):
        self.http = http_client
        self.port = port
        self._headers = {"Authorization": f"Bearer {webhook_secret}"}

    def _url(self, address: str, path: str) -> str:
        host = f"[{address}]" if ":" in address else address
        return f"http://{host}:{self.port}{path}"

    async def _post(self, address: str, path: str, body: Optional[Dict[str, Any]] = None) -> httpx.Response:
        response = await self.http.post(self._url(address, path), headers=self._headers, json=body)
        if response.is_error:
            raise InstanceRequestError(f"{path} failed on {address}: {response.status_code} {response.reason_phrase}")
        return response

    async def trigger_sync(self, address: str, commit_pending: bool = True) -> None:
        await self._post(address, "/sync", {"commitPending": commit_pending})
        logger.info(f"Sync triggered on {address}")

    async def send_task(
        self,
        address: str,
        task: str,
        mode: Optional[str] = None,
        task_id: Optional[str] = None,
        auto_shutdown: bool = False
    ) -> None:
        await self._post(address, "/task", {"task": task, "mode": mode, "taskId": task_id, "autoShutdown": auto_shutdown})
        logger.info(f"Task {task_id} sent to {address}")
