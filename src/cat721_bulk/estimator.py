"""
Size estimation by probe build.

A transaction's fee depends on its vsize, and its vsize depends on its
witnesses. The estimator builds the transaction once against a funding
source, signs it (placeholder signatures by default), finalizes it and
measures the result. The caller then rebuilds with the real funding and a
fee derived from the measured size.
"""

from __future__ import annotations

import hashlib
import math
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from loguru import logger

from cat721_bulk.backends.base import UTXO
from cat721_bulk.constants import DUMMY_FUNDING_VALUE
from cat721_bulk.errors import InsufficientFunds, InsufficientProbeFunds
from cat721_bulk.psbt import Psbt
from cat721_bulk.signer import DummySigner, Signer, SignOptions

F = TypeVar("F")
T = TypeVar("T")

DUMMY_FUNDING_TXID = hashlib.sha256(b"cat721-bulk probe funding").hexdigest()


def calculate_fee(vsize: int, fee_rate: float) -> int:
    """Fee in satoshis for `vsize` vbytes, rounded up."""
    return math.ceil(vsize * fee_rate)


def dummy_utxo(scriptpubkey: str, value: int = DUMMY_FUNDING_VALUE) -> UTXO:
    """A synthetic, never-spent funding output for probe builds."""
    return UTXO(txid=DUMMY_FUNDING_TXID, vout=0, value=value, scriptpubkey=scriptpubkey)


@dataclass
class Probe(Generic[T]):
    vsize: int
    psbt: Psbt
    built: T


def _psbt_of(built: Any) -> Psbt:
    # Builders return either a Psbt or a (Psbt, extra) pair
    return built[0] if isinstance(built, tuple) else built


async def estimate_vsize(
    build_fn: Callable[[F], T],
    funding: F,
    signer: Signer | None = None,
    options: SignOptions | None = None,
) -> Probe[T]:
    """
    Probe-build a transaction and measure its final vsize.

    Args:
        build_fn: Builds the transaction from `funding`; must be pure
        funding: Funding source passed to build_fn (a UTXO or list of UTXOs)
        signer: Real signer, or None for worst-case placeholder signatures
        options: Which inputs the signer should sign

    Raises:
        InsufficientProbeFunds: build_fn could not be funded by the probe funding
    """
    try:
        built = build_fn(funding)
    except InsufficientFunds as e:
        raise InsufficientProbeFunds(f"Probe funding too small: {e}") from e

    psbt = _psbt_of(built)
    signer = signer or DummySigner()
    signed = await signer.sign_psbt(psbt.to_hex(), options)

    # Measure a copy so the probe psbt itself stays unsigned
    measured = psbt.copy().combine(Psbt.from_hex(signed)).finalize_all_inputs()
    vsize = measured.vsize()
    logger.debug(
        f"Probe: {len(psbt.inputs)} inputs, {len(psbt.tx.outputs)} outputs, {vsize} vB"
    )
    return Probe(vsize=vsize, psbt=psbt, built=built)
