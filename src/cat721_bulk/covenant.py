"""
Covenant engine for CAT-721 transfers.

A transfer is authorised by a guard output: a covenant output created in a
guard transaction that commits to exactly which asset inputs move to which
asset outputs. The send transaction spends the asset inputs, the guard and a
fee input together; every asset input proves the guard is present and the
guard input proves the outputs match its commitment.

CovenantEngine is the interface the transaction builders talk to.
HashGuardEngine is the reference engine: the guard is a P2WSH hash-lock over
its commitment and the assets are plain key-path outputs of their owners.
"""

from __future__ import annotations

import hashlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace

from loguru import logger

from cat721_bulk.backends.base import UTXO, ChainProvider
from cat721_bulk.errors import CovenantError, PsbtError
from cat721_bulk.keys import (
    address_to_scriptpubkey,
    hash160,
    p2tr_script,
    p2wpkh_script,
    p2wsh_script,
    taproot_output_key,
)
from cat721_bulk.models import AssetUtxo
from cat721_bulk.psbt import RawTransaction, SigningContext, encode_varint, serialize_outpoint

OP_RETURN = 0x6A
OP_SHA256 = 0xA8
OP_EQUAL = 0x87


@dataclass(frozen=True)
class TraceProof:
    """Evidence that an asset output descends from the collection's minter."""

    prev_tx_hex: str
    minter_addr: str
    state_hashes: tuple[str, ...] = ()


@dataclass
class TracedAsset:
    asset: AssetUtxo
    trace: TraceProof


@dataclass(frozen=True)
class OutputAsset:
    """An asset as it will exist in an output of the send transaction."""

    collection_id: str
    local_id: int
    owner_script: bytes

    def state_hash(self) -> bytes:
        return hashlib.sha256(
            self.collection_id.encode()
            + self.local_id.to_bytes(16, "little")
            + encode_varint(len(self.owner_script))
            + self.owner_script
        ).digest()


@dataclass(frozen=True)
class AssetMove:
    local_id: int
    input_index: int
    outpoint: bytes
    output_index: int | None
    owner_script: bytes | None

    def serialize(self) -> bytes:
        owner = self.owner_script or b""
        return (
            self.outpoint
            + self.local_id.to_bytes(16, "little")
            + bytes([self.input_index])
            # 0xFF marks a burn: the asset has no output
            + bytes([0xFF if self.output_index is None else self.output_index])
            + encode_varint(len(owner))
            + owner
        )


@dataclass(frozen=True)
class GuardInfo:
    """Where the guard sits in a send transaction, handed to every asset unlock."""

    input_index: int
    outpoint: bytes
    guard_tx_hex: str


@dataclass(frozen=True)
class GuardCommitment:
    """
    A guard over one set of asset moves.

    `utxo` is None until the guard is bound to the guard transaction output
    that carries it; binding returns a new commitment and never mutates.
    """

    collection_id: str
    moves: tuple[AssetMove, ...]
    utxo: UTXO | None = None

    @property
    def preimage(self) -> bytes:
        collection = self.collection_id.encode()
        return (
            encode_varint(len(collection))
            + collection
            + encode_varint(len(self.moves))
            + b"".join(move.serialize() for move in self.moves)
        )

    @property
    def commitment(self) -> bytes:
        return hashlib.sha256(self.preimage).digest()

    @property
    def witness_script(self) -> bytes:
        # OP_SHA256 <commitment> OP_EQUAL
        return bytes([OP_SHA256, 0x20]) + self.commitment + bytes([OP_EQUAL])

    @property
    def scriptpubkey(self) -> bytes:
        return p2wsh_script(self.witness_script)

    @property
    def is_bound(self) -> bool:
        return self.utxo is not None

    def state_hash(self) -> bytes:
        return hashlib.sha256(self.witness_script).digest()

    def bind_to_utxo(self, utxo: UTXO) -> GuardCommitment:
        if utxo.scriptpubkey != self.scriptpubkey.hex():
            raise CovenantError(f"Output {utxo.outpoint} does not carry this guard")
        return replace(self, utxo=utxo)

    def guard_info(self, input_index: int, guard_tx_hex: str) -> GuardInfo:
        if self.utxo is None:
            raise CovenantError("Guard is not bound to an output")
        return GuardInfo(
            input_index=input_index,
            outpoint=serialize_outpoint(self.utxo.txid, self.utxo.vout),
            guard_tx_hex=guard_tx_hex,
        )


class CovenantEngine(ABC):
    """What the transaction builders need from the covenant layer."""

    @abstractmethod
    async def backtrace(
        self, assets: list[AssetUtxo], minter_addr: str, chain: ChainProvider
    ) -> list[TracedAsset]:
        """Fetch and check the lineage of each asset"""

    @abstractmethod
    def create_transfer_guard(
        self,
        inputs: list[tuple[TracedAsset, int]],
        outputs: list[tuple[str | None, int | None]],
    ) -> tuple[GuardCommitment, list[OutputAsset | None]]:
        """
        Commit to moving each (asset, input index) to (destination, output index).

        A None destination burns the asset. Returns the unbound guard and the
        output assets aligned with `inputs`.
        """

    @abstractmethod
    def state_script(self, state_hashes: list[bytes]) -> bytes:
        """Script of the state output at index 0 of a covenant transaction"""

    @abstractmethod
    def unlock_asset(
        self,
        input_index: int,
        context: SigningContext,
        traced: TracedAsset,
        guard_info: GuardInfo,
        is_p2tr: bool,
        public_key: str,
    ) -> list[bytes]:
        """Covenant witness items of an asset input, placed after the owner signature"""

    @abstractmethod
    def unlock_guard(
        self,
        guard: GuardCommitment,
        input_index: int,
        context: SigningContext,
        output_assets: list[OutputAsset | None],
        guard_tx_hex: str,
    ) -> list[bytes]:
        """Complete witness of the guard input"""


class HashGuardEngine(CovenantEngine):
    def __init__(self, collection_id: str):
        self.collection_id = collection_id

    async def backtrace(
        self, assets: list[AssetUtxo], minter_addr: str, chain: ChainProvider
    ) -> list[TracedAsset]:
        traced: list[TracedAsset] = []
        for asset in assets:
            prev_tx_hex = await chain.get_raw_transaction(asset.txid)
            try:
                prev_tx = RawTransaction.from_hex(prev_tx_hex)
            except PsbtError as e:
                raise CovenantError(f"Cannot parse transaction {asset.txid}: {e}") from e

            if prev_tx.txid != asset.txid:
                raise CovenantError(f"Chain returned {prev_tx.txid} for {asset.txid}")
            if asset.vout >= len(prev_tx.outputs):
                raise CovenantError(f"Transaction {asset.txid} has no output {asset.vout}")
            created = prev_tx.outputs[asset.vout]
            if created.script.hex() != asset.scriptpubkey or created.value != asset.value:
                raise CovenantError(
                    f"Output {asset.txid}:{asset.vout} does not hold asset #{asset.local_id}"
                )

            logger.debug(f"Traced asset #{asset.local_id} to {asset.txid}")
            traced.append(
                TracedAsset(
                    asset=asset,
                    trace=TraceProof(
                        prev_tx_hex=prev_tx_hex,
                        minter_addr=minter_addr,
                        state_hashes=tuple(asset.txo_state_hashes),
                    ),
                )
            )
        return traced

    def create_transfer_guard(
        self,
        inputs: list[tuple[TracedAsset, int]],
        outputs: list[tuple[str | None, int | None]],
    ) -> tuple[GuardCommitment, list[OutputAsset | None]]:
        if len(inputs) != len(outputs):
            raise CovenantError("Each asset input needs exactly one output slot")

        moves: list[AssetMove] = []
        output_assets: list[OutputAsset | None] = []
        for (traced, input_index), (destination, output_index) in zip(inputs, outputs):
            asset = traced.asset
            if destination is None:
                owner_script = None
                output_index = None
                output_assets.append(None)
            else:
                if output_index is None or output_index < 1:
                    raise CovenantError(f"Invalid output index {output_index} for asset")
                try:
                    owner_script = address_to_scriptpubkey(destination)
                except ValueError as e:
                    raise CovenantError(f"Invalid destination address: {e}") from e
                output_assets.append(OutputAsset(self.collection_id, asset.local_id, owner_script))

            moves.append(
                AssetMove(
                    local_id=asset.local_id,
                    input_index=input_index,
                    outpoint=serialize_outpoint(asset.txid, asset.vout),
                    output_index=output_index,
                    owner_script=owner_script,
                )
            )

        return GuardCommitment(self.collection_id, tuple(moves)), output_assets

    def state_script(self, state_hashes: list[bytes]) -> bytes:
        # OP_RETURN <sha256 of concatenated state hashes>
        digest = hashlib.sha256(b"".join(state_hashes)).digest()
        return bytes([OP_RETURN, 0x20]) + digest

    def unlock_asset(
        self,
        input_index: int,
        context: SigningContext,
        traced: TracedAsset,
        guard_info: GuardInfo,
        is_p2tr: bool,
        public_key: str,
    ) -> list[bytes]:
        if context.outpoints[guard_info.input_index] != guard_info.outpoint:
            raise CovenantError(
                f"Input {guard_info.input_index} does not spend the bound guard output"
            )

        asset = traced.asset
        if context.outpoints[input_index] != serialize_outpoint(asset.txid, asset.vout):
            raise CovenantError(f"Input {input_index} does not spend asset #{asset.local_id}")

        pubkey = bytes.fromhex(public_key)
        if is_p2tr:
            expected = p2tr_script(taproot_output_key(pubkey[1:]))
        else:
            expected = p2wpkh_script(hash160(pubkey))
        if context.scriptpubkeys[input_index] != expected:
            raise CovenantError(f"Asset #{asset.local_id} is not owned by key {public_key}")

        # Owner's key-path signature is the whole unlock
        return []

    def unlock_guard(
        self,
        guard: GuardCommitment,
        input_index: int,
        context: SigningContext,
        output_assets: list[OutputAsset | None],
        guard_tx_hex: str,
    ) -> list[bytes]:
        if guard.utxo is None:
            raise CovenantError("Guard is not bound to an output")

        try:
            guard_tx = RawTransaction.from_hex(guard_tx_hex)
        except PsbtError as e:
            raise CovenantError(f"Cannot parse guard transaction: {e}") from e
        if guard_tx.txid != guard.utxo.txid:
            raise CovenantError(
                f"Guard is bound to {guard.utxo.txid}, not to guard transaction {guard_tx.txid}"
            )
        if (
            guard.utxo.vout >= len(guard_tx.outputs)
            or guard_tx.outputs[guard.utxo.vout].script != guard.scriptpubkey
        ):
            raise CovenantError(f"Guard transaction output {guard.utxo.vout} is not this guard")
        if context.outpoints[input_index] != serialize_outpoint(guard.utxo.txid, guard.utxo.vout):
            raise CovenantError(f"Input {input_index} does not spend the guard output")

        if len(output_assets) != len(guard.moves):
            raise CovenantError("Output assets do not match the guard's moves")
        for move, output in zip(guard.moves, output_assets):
            if context.outpoints[move.input_index] != move.outpoint:
                raise CovenantError(f"Input {move.input_index} is not the guarded asset")
            if output is None or move.output_index is None:
                if output is not None or move.output_index is not None:
                    raise CovenantError(f"Asset #{move.local_id} burn does not match the guard")
                continue
            if output.owner_script != move.owner_script:
                raise CovenantError(f"Asset #{move.local_id} destination differs from the guard")
            if move.output_index >= len(context.outputs):
                raise CovenantError(f"Send transaction has no output {move.output_index}")
            if context.outputs[move.output_index].script != output.owner_script:
                raise CovenantError(
                    f"Output {move.output_index} does not pay asset #{move.local_id}'s owner"
                )

        return [guard.preimage, guard.witness_script]
