"""
Guard/send transaction pair for transferring one CAT-721 asset.

Flow:
1. Trace the asset back to the minter and create a transfer guard
2. Probe-build the guard and send transactions to learn their sizes
3. Check the fee input covers both fees plus the asset postage
4. Build and sign the guard transaction, binding the guard to its output
5. Build the send transaction, get owner and fee payer signatures
6. Broadcast guard, then send
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from loguru import logger

from cat721_bulk.backends.base import UTXO, ChainProvider
from cat721_bulk.constants import DUST_LIMIT, GUARD_POSTAGE, MAX_INPUT, TOKEN_POSTAGE
from cat721_bulk.covenant import CovenantEngine, GuardCommitment, OutputAsset, TracedAsset
from cat721_bulk.errors import CovenantError, InsufficientFunds, TooManyInputs
from cat721_bulk.estimator import calculate_fee, dummy_utxo, estimate_vsize
from cat721_bulk.keys import address_to_scriptpubkey, is_p2tr_address
from cat721_bulk.models import AssetUtxo
from cat721_bulk.psbt import Psbt
from cat721_bulk.signer import Signer, SignOptions, ToSignInput

# Guard transaction layout: state, guard, change
GUARD_STATE_OUTPUT_INDEX = 0
GUARD_OUTPUT_INDEX = 1
GUARD_CHANGE_OUTPUT_INDEX = 2

# Send transaction layout: state, then one output per transferred asset
FIRST_ASSET_OUTPUT_INDEX = 1


def build_guard_tx(
    engine: CovenantEngine,
    guard: GuardCommitment,
    fee_utxo: UTXO,
    change_script: bytes,
    fee_rate: float,
    estimated_vsize: int | None = None,
) -> tuple[Psbt, GuardCommitment]:
    """
    Build the transaction that creates the guard output.

    Returns the unsigned psbt and the guard bound to output 1 of it.
    Without an estimate the fee is computed for 1 vbyte, which is what a
    probe build needs.
    """
    fee = calculate_fee(estimated_vsize or 1, fee_rate)
    change = fee_utxo.value - GUARD_POSTAGE - fee
    if change < DUST_LIMIT:
        raise InsufficientFunds(
            f"fee input {fee_utxo.outpoint} has {fee_utxo.value} sats, "
            f"guard needs {GUARD_POSTAGE + fee + DUST_LIMIT}"
        )

    psbt = (
        Psbt()
        .add_input(fee_utxo)
        .add_output(engine.state_script([guard.state_hash()]), 0)
        .add_output(guard.scriptpubkey, GUARD_POSTAGE)
        .add_output(change_script, change)
    )
    return psbt, guard.bind_to_utxo(psbt.get_utxo(GUARD_OUTPUT_INDEX))


def build_send_tx(
    engine: CovenantEngine,
    traced: list[TracedAsset],
    guard: GuardCommitment,
    guard_psbt: Psbt,
    fee_utxo: UTXO,
    owner_address: str,
    owner_public_key: str,
    output_assets: list[OutputAsset | None],
    change_script: bytes,
    fee_rate: float,
    estimated_vsize: int | None = None,
) -> Psbt:
    """
    Build the transaction that moves the assets to their destinations.

    Inputs are the assets, then the guard, then the fee input. Covenant
    witnesses are attached; owner and fee payer signatures are not.
    """
    if len(traced) + 2 > MAX_INPUT:
        raise TooManyInputs(f"{len(traced)} assets + guard + fee exceed {MAX_INPUT} inputs")
    if not guard.is_bound:
        raise CovenantError("Guard is not bound to an output")

    psbt = Psbt()
    psbt.add_output(engine.state_script([a.state_hash() for a in output_assets if a]), 0)
    for output in output_assets:
        if output is not None:
            psbt.add_output(output.owner_script, TOKEN_POSTAGE)

    for item in traced:
        psbt.add_input(item.asset.as_utxo())
    guard_input_index = len(traced)
    psbt.add_input(guard.utxo)
    psbt.add_input(fee_utxo)

    fee = calculate_fee(estimated_vsize or 1, fee_rate)
    change = psbt.input_total - psbt.output_total - fee
    if change < DUST_LIMIT:
        raise InsufficientFunds(
            f"send inputs total {psbt.input_total} sats, "
            f"need {psbt.output_total + fee + DUST_LIMIT}"
        )
    psbt.add_output(change_script, change)

    context = psbt.signing_context()
    guard_tx_hex = guard_psbt.unsigned_tx_hex()
    guard_info = guard.guard_info(guard_input_index, guard_tx_hex)
    is_p2tr = is_p2tr_address(owner_address)

    for index, item in enumerate(traced):
        psbt.update_covenant_input(
            index,
            engine.unlock_asset(index, context, item, guard_info, is_p2tr, owner_public_key),
        )
    psbt.update_covenant_input(
        guard_input_index,
        engine.unlock_guard(guard, guard_input_index, context, output_assets, guard_tx_hex),
    )
    return psbt


def required_fee_value(
    guard_vsize: int, send_vsize: int, fee_rate: float, asset_value: int = TOKEN_POSTAGE
) -> int:
    """
    Smallest fee input that funds both transactions of one transfer.

    Covers the flat estimate (both fees plus the asset postage) and the change
    floors both builders enforce: the guard keeps DUST_LIMIT after its postage
    and fee, and the send keeps DUST_LIMIT after re-creating the asset output.
    """
    guard_fee = calculate_fee(guard_vsize, fee_rate)
    send_fee = calculate_fee(send_vsize, fee_rate)
    return max(
        calculate_fee(guard_vsize + send_vsize, fee_rate) + TOKEN_POSTAGE,
        GUARD_POSTAGE + guard_fee + DUST_LIMIT,
        guard_fee + send_fee + TOKEN_POSTAGE - asset_value + DUST_LIMIT,
    )


class TransferState(str, Enum):
    """Transfer progress. Each state is entered at most once, in this order."""

    PENDING = "pending"
    TRACED = "traced"
    GUARD_ESTIMATED = "guard_estimated"
    SEND_ESTIMATED = "send_estimated"
    GUARD_BUILT = "guard_built"
    GUARD_SIGNED = "guard_signed"
    SEND_BUILT = "send_built"
    SEND_SIGNED_OWNER = "send_signed_owner"
    SEND_SIGNED_FEE_PAYER = "send_signed_fee_payer"
    FINALIZED = "finalized"
    BROADCAST_GUARD = "broadcast_guard"
    BROADCAST_SEND = "broadcast_send"
    FAILED = "failed"


@dataclass
class TransferResult:
    guard_psbt: Psbt
    send_psbt: Psbt
    estimated_guard_vsize: int
    estimated_send_vsize: int
    guard_txid: str = ""
    send_txid: str = ""


@dataclass
class AssetTransfer:
    """
    Transfers one asset from its owner to a destination address.

    The fee input pays for both transactions; its change comes back to the
    fee signer's address.
    """

    asset: AssetUtxo
    minter_addr: str
    asset_signer: Signer
    dest_address: str
    fee_utxo: UTXO
    fee_signer: Signer
    fee_rate: float
    chain: ChainProvider
    engine: CovenantEngine
    state: TransferState = TransferState.PENDING
    history: list[TransferState] = field(default_factory=list)

    def _advance(self, state: TransferState) -> None:
        logger.debug(f"#{self.asset.local_id}: {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    async def run(self) -> TransferResult:
        try:
            return await self._run()
        except Exception:
            self._advance(TransferState.FAILED)
            raise

    async def _run(self) -> TransferResult:
        owner_public_key = await self.asset_signer.get_public_key()
        owner_address = await self.asset_signer.get_address()
        change_address = await self.fee_signer.get_address()
        change_script = address_to_scriptpubkey(change_address)

        traced = await self.engine.backtrace([self.asset], self.minter_addr, self.chain)
        guard, output_assets = self.engine.create_transfer_guard(
            [(traced[0], 0)], [(self.dest_address, FIRST_ASSET_OUTPUT_INDEX)]
        )
        self._advance(TransferState.TRACED)

        guard_probe = await estimate_vsize(
            lambda utxo: build_guard_tx(self.engine, guard, utxo, change_script, self.fee_rate),
            dummy_utxo(change_script.hex()),
        )
        probe_guard_psbt, probe_guard = guard_probe.built
        self._advance(TransferState.GUARD_ESTIMATED)

        send_probe = await estimate_vsize(
            lambda utxo: build_send_tx(
                self.engine,
                traced,
                probe_guard,
                probe_guard_psbt,
                utxo,
                owner_address,
                owner_public_key,
                output_assets,
                change_script,
                self.fee_rate,
            ),
            probe_guard_psbt.get_utxo(GUARD_CHANGE_OUTPUT_INDEX),
        )
        self._advance(TransferState.SEND_ESTIMATED)

        required = required_fee_value(
            guard_probe.vsize, send_probe.vsize, self.fee_rate, self.asset.value
        )
        if self.fee_utxo.value < required:
            raise InsufficientFunds(
                f"fee input {self.fee_utxo.outpoint} has {self.fee_utxo.value} sats, "
                f"transfer needs {required}"
            )

        guard_psbt, bound_guard = build_guard_tx(
            self.engine, guard, self.fee_utxo, change_script, self.fee_rate, guard_probe.vsize
        )
        self._advance(TransferState.GUARD_BUILT)

        signed_guard = await self.fee_signer.sign_psbt(
            guard_psbt.to_hex(),
            SignOptions(to_sign_inputs=[ToSignInput(index=0, address=change_address)]),
        )
        guard_psbt.combine(Psbt.from_hex(signed_guard)).finalize_all_inputs()
        self._advance(TransferState.GUARD_SIGNED)

        send_psbt = build_send_tx(
            self.engine,
            traced,
            bound_guard,
            guard_psbt,
            guard_psbt.get_utxo(GUARD_CHANGE_OUTPUT_INDEX),
            owner_address,
            owner_public_key,
            output_assets,
            change_script,
            self.fee_rate,
            send_probe.vsize,
        )
        self._advance(TransferState.SEND_BUILT)

        owner_signed = await self.asset_signer.sign_psbt(
            send_psbt.to_hex(),
            SignOptions(
                to_sign_inputs=[
                    ToSignInput(index=i, public_key=owner_public_key) for i in range(len(traced))
                ],
                auto_finalized=False,
            ),
        )
        self._advance(TransferState.SEND_SIGNED_OWNER)

        fee_input_index = len(traced) + 1
        fee_signed = await self.fee_signer.sign_psbt(
            send_psbt.to_hex(),
            SignOptions(
                to_sign_inputs=[ToSignInput(index=fee_input_index, address=change_address)],
                auto_finalized=False,
            ),
        )
        self._advance(TransferState.SEND_SIGNED_FEE_PAYER)

        send_psbt.combine(Psbt.from_hex(owner_signed)).combine(Psbt.from_hex(fee_signed))
        send_psbt.finalize_all_inputs()
        self._advance(TransferState.FINALIZED)

        result = TransferResult(
            guard_psbt=guard_psbt,
            send_psbt=send_psbt,
            estimated_guard_vsize=guard_probe.vsize,
            estimated_send_vsize=send_probe.vsize,
        )

        result.guard_txid = await self.chain.broadcast(guard_psbt.extract_transaction_hex())
        self._advance(TransferState.BROADCAST_GUARD)

        result.send_txid = await self.chain.broadcast(send_psbt.extract_transaction_hex())
        self._advance(TransferState.BROADCAST_SEND)

        logger.debug(
            f"#{self.asset.local_id}: guard {result.guard_txid} "
            f"({guard_psbt.vsize()} vB), send {result.send_txid} ({send_psbt.vsize()} vB)"
        )
        return result
