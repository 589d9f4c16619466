"""
Data models for tracker responses and batch descriptors.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from cat721_bulk.backends.base import UTXO
from cat721_bulk.signer import KeySigner

# Field names the tracker has used for the owner of an asset
OWNER_FIELDS = ("ownerAddr", "ownerAddress", "address")


class CollectionMetadata(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = ""
    symbol: str = ""


class CollectionInfo(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    collection_id: str = Field(default="", alias="collectionId")
    minter_addr: str = Field(alias="minterAddr")
    metadata: CollectionMetadata = Field(default_factory=CollectionMetadata)


class AssetState(BaseModel):
    """Covenant state of an asset output: its owner and local id."""

    model_config = ConfigDict(populate_by_name=True)

    owner_addr: str = Field(alias="ownerAddr")
    local_id: int = Field(alias="localId", ge=0)

    @model_validator(mode="before")
    @classmethod
    def normalize_owner(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "owner_addr" in data:
            return data
        data = dict(data)
        for name in OWNER_FIELDS:
            if name in data:
                data["ownerAddr"] = data.pop(name)
                break
        return data

    @field_validator("local_id", mode="before")
    @classmethod
    def parse_local_id(cls, v: Any) -> int:
        return int(v)


class AssetUtxo(BaseModel):
    """An output holding one CAT-721 asset, as reported by the tracker."""

    model_config = ConfigDict(populate_by_name=True)

    txid: str = Field(alias="txId")
    vout: int = Field(alias="outputIndex", ge=0)
    value: int = Field(alias="satoshis", ge=0)
    scriptpubkey: str = Field(alias="script")
    txo_state_hashes: list[str] = Field(default_factory=list, alias="txoStateHashes")
    state: AssetState

    @model_validator(mode="before")
    @classmethod
    def flatten_utxo(cls, data: Any) -> Any:
        """Tracker nests the outpoint under "utxo"; lift it to the top level."""
        if isinstance(data, dict) and isinstance(data.get("utxo"), dict):
            data = {**data["utxo"], **{k: v for k, v in data.items() if k != "utxo"}}
        return data

    @property
    def local_id(self) -> int:
        return self.state.local_id

    def as_utxo(self) -> UTXO:
        return UTXO(
            txid=self.txid,
            vout=self.vout,
            value=self.value,
            scriptpubkey=self.scriptpubkey,
        )


@dataclass
class TransferDescriptor:
    """One line of the source file plus what preparation resolved for it."""

    address: str
    wif: str
    local_id: str
    dest_address: str
    asset: AssetUtxo | None = None
    signer: KeySigner | None = None
    error: str | None = None

    @property
    def is_resolved(self) -> bool:
        return self.asset is not None and self.signer is not None
