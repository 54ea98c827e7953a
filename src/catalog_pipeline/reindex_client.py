from typing import Any

import httpx

from .config import REINDEX_TIMEOUT_SECONDS, get_reindex_service_url
from .models import RefreshTask


class ReindexClient:
    """Async client that hands drained refresh tasks to the reindexing service."""

    def __init__(self, base_url: str | None = None, timeout: float = REINDEX_TIMEOUT_SECONDS):
        self.base_url = (base_url or get_reindex_service_url() or "").rstrip("/")
        if not self.base_url:
            raise ValueError("REINDEX_SERVICE_URL must be set")
        self.timeout = timeout

    def _headers(self) -> dict[str, str]:
        return {
            "User-Agent": "catalog-pipeline/0.1.0",
            "Content-Type": "application/json",
        }

    async def _post(self, endpoint: str, payload: dict[str, Any]) -> dict:
        url = f"{self.base_url}/{endpoint}"

        async with httpx.AsyncClient() as client:
            response = await client.post(url, headers=self._headers(), json=payload, timeout=self.timeout)
            response.raise_for_status()
            return response.json() if response.content else {}

    async def dispatch(self, tasks: list[RefreshTask]) -> dict:
        """Submit a batch of refresh tasks; raises on HTTP errors."""
        if not tasks:
            return {}
        return await self._post("refresh", {"tasks": [task.model_dump(mode="json") for task in tasks]})
