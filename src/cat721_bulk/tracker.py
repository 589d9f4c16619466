"""
Client for the CAT protocol tracker HTTP API.
"""

from __future__ import annotations

from typing import Any

import httpx
from loguru import logger
from pydantic import ValidationError

from cat721_bulk.errors import NetworkError
from cat721_bulk.models import AssetUtxo, CollectionInfo


class TrackerClient:
    """
    Read-only tracker queries.

    Responses are wrapped as {"code": 0, "msg": "OK", "data": ...}; a non-zero
    code, a 404 or an unparseable payload all mean "not found".
    """

    def __init__(
        self,
        host: str,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.host = host.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def _api_get(self, endpoint: str) -> Any | None:
        url = f"{self.host}/api/{endpoint}"
        try:
            response = await self.client.get(url)
            if response.status_code == 404:
                return None
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as e:
            logger.error(f"Tracker API call failed: {endpoint} - {e}")
            raise NetworkError(f"tracker {endpoint}: {e}") from e
        except ValueError as e:
            logger.warning(f"Tracker returned invalid JSON for {endpoint}: {e}")
            return None

        if not isinstance(payload, dict) or payload.get("code") != 0:
            logger.debug(f"Tracker {endpoint}: {payload}")
            return None
        return payload.get("data")

    async def get_collection_info(self, collection_id: str) -> CollectionInfo | None:
        data = await self._api_get(f"collections/{collection_id}")
        if not isinstance(data, dict):
            return None
        try:
            return CollectionInfo.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Invalid collection info for {collection_id}: {e}")
            return None

    async def get_asset_utxo(self, collection_id: str, local_id: int | str) -> AssetUtxo | None:
        data = await self._api_get(f"collections/{collection_id}/localId/{local_id}/utxo")
        if not isinstance(data, dict) or not data.get("utxo"):
            return None
        try:
            return AssetUtxo.model_validate(data["utxo"])
        except ValidationError as e:
            logger.warning(f"Invalid asset utxo for {collection_id}#{local_id}: {e}")
            return None

    async def close(self) -> None:
        await self.client.aclose()
