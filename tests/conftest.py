"""
Shared fixtures: deterministic keys, an in-memory chain and a fake tracker.
"""

from __future__ import annotations

import hashlib
from collections.abc import Callable

import pytest

from cat721_bulk.backends.base import UTXO, ChainProvider, UtxoProvider
from cat721_bulk.constants import TOKEN_POSTAGE
from cat721_bulk.covenant import HashGuardEngine
from cat721_bulk.errors import NetworkError
from cat721_bulk.keys import AddressType, KeyPair, init_ecc
from cat721_bulk.models import AssetUtxo, CollectionInfo
from cat721_bulk.psbt import RawTransaction, TxInput, TxOutput
from cat721_bulk.signer import KeySigner

COLLECTION_ID = "ab" * 32 + "_0"


def secret(n: int) -> bytes:
    """Test private key n (not for production use!)."""
    return n.to_bytes(32, "big")


def fake_txid(label: str) -> str:
    return hashlib.sha256(label.encode()).hexdigest()


class FakeChain(ChainProvider):
    """Chain that accepts broadcasts and confirms on first poll unless told otherwise."""

    def __init__(self) -> None:
        self.raw_txs: dict[str, str] = {}
        self.broadcasts: list[str] = []
        self.events: list[str] = []
        self.pending_confirmations: dict[str, list[int]] = {}
        # Double spends are rejected only when reject_spent is set
        self.reject_spent = False
        self.spent: set[tuple[str, int]] = set()

    def add_transaction(self, tx: RawTransaction) -> str:
        self.raw_txs[tx.txid] = tx.hex()
        return tx.txid

    async def broadcast(self, tx_hex: str) -> str:
        tx = RawTransaction.from_hex(tx_hex)
        outpoints = {(i.txid, i.vout) for i in tx.inputs}
        if self.reject_spent and outpoints & self.spent:
            raise NetworkError("bad-txns-inputs-missingorspent")
        self.spent |= outpoints
        txid = tx.txid
        self.raw_txs[txid] = tx_hex
        self.broadcasts.append(txid)
        self.events.append(f"broadcast:{txid}")
        return txid

    async def get_confirmations(self, txid: str) -> int:
        pending = self.pending_confirmations.get(txid)
        count = pending.pop(0) if pending else 1
        self.events.append(f"confirmations:{txid}:{count}")
        return count

    async def get_raw_transaction(self, txid: str) -> str:
        try:
            return self.raw_txs[txid]
        except KeyError:
            raise NetworkError(f"transaction {txid} not found") from None

    def transaction(self, txid: str) -> RawTransaction:
        return RawTransaction.from_hex(self.raw_txs[txid])


class FakeUtxoProvider(UtxoProvider):
    def __init__(self, utxos: dict[str, list[UTXO]] | None = None) -> None:
        self.utxos = utxos or {}

    async def get_utxos(self, address: str, min_total_value: int = 0) -> list[UTXO]:
        utxos = self.utxos.get(address, [])
        if sum(u.value for u in utxos) < min_total_value:
            return []
        return list(utxos)


class FakeTracker:
    def __init__(
        self,
        collection: CollectionInfo | None = None,
        assets: dict[str, AssetUtxo] | None = None,
    ) -> None:
        self.collection = collection
        self.assets = assets or {}
        self.asset_lookups: list[str] = []

    async def get_collection_info(self, collection_id: str) -> CollectionInfo | None:
        return self.collection

    async def get_asset_utxo(self, collection_id: str, local_id: int | str) -> AssetUtxo | None:
        self.asset_lookups.append(str(local_id))
        return self.assets.get(str(local_id))


@pytest.fixture
def ecc_context():
    return init_ecc(b"\x07" * 32)


@pytest.fixture
def fee_key(ecc_context) -> KeyPair:
    return KeyPair(secret(2), ecc_context)


@pytest.fixture
def owner_key(ecc_context) -> KeyPair:
    return KeyPair(secret(3), ecc_context)


@pytest.fixture
def dest_address(ecc_context) -> str:
    return KeyPair(secret(4), ecc_context).address(AddressType.P2TR)


@pytest.fixture
def fee_signer(fee_key: KeyPair) -> KeySigner:
    return KeySigner(fee_key, AddressType.P2TR)


@pytest.fixture
def owner_signer(owner_key: KeyPair) -> KeySigner:
    return KeySigner(owner_key, AddressType.P2TR)


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def engine() -> HashGuardEngine:
    return HashGuardEngine(COLLECTION_ID)


@pytest.fixture
def collection_info() -> CollectionInfo:
    return CollectionInfo.model_validate(
        {
            "collectionId": COLLECTION_ID,
            "minterAddr": "bc1pminter",
            "metadata": {"name": "Test Cats", "symbol": "TCAT"},
        }
    )


@pytest.fixture
def make_asset(chain: FakeChain) -> Callable[..., AssetUtxo]:
    """Create an asset output on the fake chain owned by `key`."""

    def _make(
        key: KeyPair,
        local_id: int,
        address_type: AddressType = AddressType.P2TR,
    ) -> AssetUtxo:
        mint_tx = RawTransaction(
            inputs=[TxInput(fake_txid(f"mint-{local_id}"), 0)],
            outputs=[TxOutput(TOKEN_POSTAGE, key.scriptpubkey(address_type))],
        )
        txid = chain.add_transaction(mint_tx)
        return AssetUtxo.model_validate(
            {
                "utxo": {
                    "txId": txid,
                    "outputIndex": 0,
                    "script": key.scriptpubkey(address_type).hex(),
                    "satoshis": TOKEN_POSTAGE,
                },
                "txoStateHashes": [],
                "state": {"address": key.address(address_type), "localId": str(local_id)},
            }
        )

    return _make


@pytest.fixture
def make_funding() -> Callable[..., UTXO]:
    """Create a confirmed funding output paying `key`."""

    def _make(
        key: KeyPair,
        value: int,
        label: str = "funding",
        address_type: AddressType = AddressType.P2TR,
    ) -> UTXO:
        return UTXO(
            txid=fake_txid(label),
            vout=0,
            value=value,
            scriptpubkey=key.scriptpubkey(address_type).hex(),
            address=key.address(address_type),
            confirmations=6,
        )

    return _make


@pytest.fixture
def tracker(collection_info: CollectionInfo) -> FakeTracker:
    return FakeTracker(collection_info)


@pytest.fixture
def utxo_provider() -> FakeUtxoProvider:
    return FakeUtxoProvider()
