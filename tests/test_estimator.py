"""
Tests for probe-build size estimation.
"""

from __future__ import annotations

import pytest

from cat721_bulk.constants import DUMMY_FUNDING_VALUE
from cat721_bulk.errors import InsufficientFunds, InsufficientProbeFunds
from cat721_bulk.estimator import calculate_fee, dummy_utxo, estimate_vsize
from cat721_bulk.keys import AddressType
from cat721_bulk.psbt import Psbt
from cat721_bulk.signer import KeySigner


class TestCalculateFee:
    def test_rounds_up(self) -> None:
        assert calculate_fee(141, 1.5) == 212
        assert calculate_fee(141, 1) == 141

    def test_fractional_rate(self) -> None:
        assert calculate_fee(200, 0.1) == 20


def test_dummy_utxo_is_large() -> None:
    utxo = dummy_utxo("5120" + "00" * 32)
    assert utxo.value == DUMMY_FUNDING_VALUE
    assert utxo.scriptpubkey == "5120" + "00" * 32


class TestEstimateVsize:
    @pytest.mark.asyncio
    async def test_placeholder_estimate_matches_real_taproot(self, fee_key, make_funding) -> None:
        """With a taproot funding input the probe size is exact."""
        script = fee_key.scriptpubkey(AddressType.P2TR)

        def build(utxo):
            fee = calculate_fee(150, 1)
            return Psbt().add_input(utxo).add_output(script, utxo.value - fee)

        probe = await estimate_vsize(build, dummy_utxo(script.hex()))

        real = build(make_funding(fee_key, 50_000))
        signed = await KeySigner(fee_key).sign_psbt(real.to_hex())
        real.combine(Psbt.from_hex(signed)).finalize_all_inputs()

        assert probe.vsize == real.vsize()

    @pytest.mark.asyncio
    async def test_placeholder_overestimates_segwit_v0(self, fee_key, make_funding) -> None:
        script = fee_key.scriptpubkey(AddressType.P2WPKH)

        def build(utxo):
            return Psbt().add_input(utxo).add_output(script, utxo.value - 200)

        probe = await estimate_vsize(build, dummy_utxo(script.hex()))

        real = build(make_funding(fee_key, 50_000, address_type=AddressType.P2WPKH))
        signed = await KeySigner(fee_key).sign_psbt(real.to_hex())
        real.combine(Psbt.from_hex(signed)).finalize_all_inputs()

        assert probe.vsize >= real.vsize()
        assert probe.vsize - real.vsize() <= 1

    @pytest.mark.asyncio
    async def test_probe_psbt_left_unsigned(self, fee_key) -> None:
        script = fee_key.scriptpubkey(AddressType.P2TR)
        probe = await estimate_vsize(
            lambda utxo: Psbt().add_input(utxo).add_output(script, 1_000),
            dummy_utxo(script.hex()),
        )
        assert not probe.psbt.inputs[0].is_signed
        assert probe.built is probe.psbt

    @pytest.mark.asyncio
    async def test_insufficient_probe_funds(self, fee_key) -> None:
        script = fee_key.scriptpubkey(AddressType.P2TR)

        def build(utxo):
            if utxo.value < 10_000:
                raise InsufficientFunds("too small")
            return Psbt().add_input(utxo).add_output(script, 1_000)

        with pytest.raises(InsufficientProbeFunds):
            await estimate_vsize(build, dummy_utxo(script.hex(), value=100))

    @pytest.mark.asyncio
    async def test_real_signer(self, fee_key, fee_signer, make_funding) -> None:
        script = fee_key.scriptpubkey(AddressType.P2TR)
        funding = [make_funding(fee_key, 5_000, "a"), make_funding(fee_key, 7_000, "b")]

        probe = await estimate_vsize(
            lambda utxos: Psbt().add_inputs(utxos).add_output(script, 11_000),
            funding,
            signer=fee_signer,
        )
        # 2 key-path inputs and 1 taproot output: weight 3 * 135 + 269
        assert probe.vsize == 169
