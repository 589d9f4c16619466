"""
Chain backend interfaces.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass
class UTXO:
    txid: str
    vout: int
    value: int
    scriptpubkey: str
    address: str = ""
    confirmations: int = 0
    height: int | None = None

    @property
    def outpoint(self) -> str:
        return f"{self.txid}:{self.vout}"


class UtxoProvider(ABC):
    """Lists spendable outputs of an address."""

    @abstractmethod
    async def get_utxos(self, address: str, min_total_value: int = 0) -> list[UTXO]:
        """
        Get UTXOs for an address.

        Returns an empty list when the address cannot reach min_total_value.
        """


class ChainProvider(ABC):
    """Broadcasts transactions and reports their confirmation status."""

    @abstractmethod
    async def broadcast(self, tx_hex: str) -> str:
        """Broadcast transaction, returns txid"""

    @abstractmethod
    async def get_confirmations(self, txid: str) -> int:
        """Confirmation count, 0 while unconfirmed"""

    @abstractmethod
    async def get_raw_transaction(self, txid: str) -> str:
        """Raw transaction hex"""

    async def close(self) -> None:
        """Close backend connection"""
        pass
