"""
Mempool-style REST API backend (mempool.space / Fractal mempool explorer).

Provides address UTXO listing, transaction broadcast and confirmation status
without running a local node.
"""

from __future__ import annotations

from typing import Any

import httpx
from loguru import logger

from cat721_bulk.backends.base import UTXO, ChainProvider, UtxoProvider
from cat721_bulk.constants import DEFAULT_MEMPOOL_URL
from cat721_bulk.errors import NetworkError
from cat721_bulk.keys import address_to_scriptpubkey


class MempoolBackend(UtxoProvider, ChainProvider):
    def __init__(
        self,
        base_url: str = DEFAULT_MEMPOOL_URL,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        """
        Initialize mempool backend.

        Args:
            base_url: Explorer root; endpoints are resolved under {base_url}/api
            timeout: HTTP timeout in seconds
            client: Pre-built HTTP client (tests inject a mock transport)
        """
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def _api_call(
        self,
        method: str,
        endpoint: str,
        content: str | None = None,
        as_json: bool = True,
    ) -> Any:
        url = f"{self.base_url}/api/{endpoint}"

        try:
            if method == "GET":
                response = await self.client.get(url)
            elif method == "POST":
                response = await self.client.post(
                    url, content=content, headers={"Content-Type": "text/plain"}
                )
            else:
                raise ValueError(f"Unsupported HTTP method: {method}")

            response.raise_for_status()
            return response.json() if as_json else response.text.strip()

        except httpx.HTTPStatusError as e:
            logger.error(f"Mempool API call failed: {endpoint} - {e.response.text.strip()}")
            raise NetworkError(f"{endpoint}: {e.response.text.strip() or e}") from e
        except httpx.HTTPError as e:
            logger.error(f"Mempool API call failed: {endpoint} - {e}")
            raise NetworkError(f"{endpoint}: {e}") from e

    async def get_block_height(self) -> int:
        return int(await self._api_call("GET", "blocks/tip/height", as_json=False))

    async def get_utxos(self, address: str, min_total_value: int = 0) -> list[UTXO]:
        entries = await self._api_call("GET", f"address/{address}/utxo")
        scriptpubkey = address_to_scriptpubkey(address).hex()
        tip_height = await self.get_block_height() if entries else 0

        utxos: list[UTXO] = []
        for entry in entries:
            status = entry.get("status", {})
            height = status.get("block_height") if status.get("confirmed") else None
            utxos.append(
                UTXO(
                    txid=entry["txid"],
                    vout=entry["vout"],
                    value=entry["value"],
                    scriptpubkey=scriptpubkey,
                    address=address,
                    confirmations=tip_height - height + 1 if height else 0,
                    height=height,
                )
            )

        utxos.sort(key=lambda u: u.value, reverse=True)
        total = sum(u.value for u in utxos)
        if total < min_total_value:
            logger.debug(f"{address}: {total} sats below requested {min_total_value}")
            return []

        logger.debug(f"Found {len(utxos)} UTXOs for {address}")
        return utxos

    async def broadcast(self, tx_hex: str) -> str:
        txid = await self._api_call("POST", "tx", content=tx_hex, as_json=False)
        logger.info(f"Broadcast transaction: {txid}")
        return txid

    async def get_confirmations(self, txid: str) -> int:
        status = await self._api_call("GET", f"tx/{txid}/status")
        if not status.get("confirmed"):
            return 0
        tip_height = await self.get_block_height()
        return max(tip_height - status["block_height"] + 1, 0)

    async def get_raw_transaction(self, txid: str) -> str:
        return await self._api_call("GET", f"tx/{txid}/hex", as_json=False)

    async def close(self) -> None:
        await self.client.aclose()
