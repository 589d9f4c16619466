"""
Fee fan-out: split the fee payer's coins into one equal output per transfer.

Each transfer then spends its own fee output, so transfers do not compete
for the same coin and can run concurrently.
"""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from cat721_bulk.backends.base import UTXO, ChainProvider
from cat721_bulk.constants import DUST_LIMIT
from cat721_bulk.errors import InsufficientFunds
from cat721_bulk.estimator import calculate_fee, estimate_vsize
from cat721_bulk.keys import address_to_scriptpubkey
from cat721_bulk.psbt import Psbt
from cat721_bulk.signer import Signer


@dataclass
class FeeSplit:
    psbt: Psbt
    txid: str
    fee: int
    change: int
    bullets: list[UTXO]


def build_split_tx(
    utxos: list[UTXO],
    script: bytes,
    bullet_value: int,
    count: int,
    change: int | None,
) -> Psbt:
    psbt = Psbt().add_inputs(utxos)
    for _ in range(count):
        psbt.add_output(script, bullet_value)
    if change is not None:
        psbt.add_output(script, change)
    return psbt


async def split_fees(
    utxos: list[UTXO],
    bullet_value: int,
    count: int,
    fee_rate: float,
    signer: Signer,
    chain: ChainProvider,
    dust_limit: int = DUST_LIMIT,
) -> FeeSplit:
    """
    Spend all of `utxos` into `count` outputs of `bullet_value` plus change.

    The probe includes a change output, so the fee always covers one; change
    below the dust limit is dropped and left to the miner.

    Raises:
        InsufficientFunds: inputs cannot cover the bullets plus the fee
    """
    if count < 1:
        raise ValueError("count must be positive")
    if not utxos:
        raise InsufficientFunds("no fee utxos to split")

    address = await signer.get_address()
    script = address_to_scriptpubkey(address)

    probe = await estimate_vsize(
        lambda funding: build_split_tx(funding, script, bullet_value, count, 0),
        utxos,
        signer=signer,
    )
    fee = calculate_fee(probe.vsize, fee_rate)

    total_in = sum(u.value for u in utxos)
    change = total_in - bullet_value * count - fee
    if change < 0:
        raise InsufficientFunds(
            f"fee balance {total_in} sats cannot cover {count} x {bullet_value} sats "
            f"plus {fee} sats fee"
        )

    kept_change = change if change >= dust_limit else None
    psbt = build_split_tx(utxos, script, bullet_value, count, kept_change)
    signed = await signer.sign_psbt(psbt.to_hex())
    psbt.combine(Psbt.from_hex(signed)).finalize_all_inputs()

    txid = await chain.broadcast(psbt.extract_transaction_hex())
    logger.debug(
        f"Split {total_in} sats into {count} x {bullet_value}, "
        f"change {kept_change or 0}, fee {psbt.fee}"
    )

    return FeeSplit(
        psbt=psbt,
        txid=txid,
        fee=psbt.fee,
        change=kept_change or 0,
        bullets=[psbt.get_utxo(i) for i in range(count)],
    )
