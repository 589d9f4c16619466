"""
Tests for the reference covenant engine.
"""

from __future__ import annotations

import pytest

from cat721_bulk.errors import CovenantError
from cat721_bulk.keys import AddressType, address_to_scriptpubkey
from cat721_bulk.psbt import RawTransaction, TxInput, TxOutput
from cat721_bulk.transfer import (
    GUARD_CHANGE_OUTPUT_INDEX,
    GUARD_OUTPUT_INDEX,
    build_guard_tx,
    build_send_tx,
)


class TestBacktrace:
    @pytest.mark.asyncio
    async def test_traces_asset_to_creating_transaction(
        self, engine, chain, owner_key, make_asset
    ) -> None:
        asset = make_asset(owner_key, 7)

        traced = await engine.backtrace([asset], "bc1pminter", chain)

        assert len(traced) == 1
        assert traced[0].asset is asset
        assert traced[0].trace.minter_addr == "bc1pminter"
        assert RawTransaction.from_hex(traced[0].trace.prev_tx_hex).txid == asset.txid

    @pytest.mark.asyncio
    async def test_rejects_transaction_without_asset_output(
        self, engine, chain, owner_key, make_asset
    ) -> None:
        asset = make_asset(owner_key, 7)
        moved = asset.model_copy(update={"vout": 3})

        with pytest.raises(CovenantError, match="no output 3"):
            await engine.backtrace([moved], "bc1pminter", chain)

    @pytest.mark.asyncio
    async def test_rejects_wrong_transaction(self, engine, chain, owner_key, make_asset) -> None:
        asset = make_asset(owner_key, 7)
        other = RawTransaction(
            inputs=[TxInput("ee" * 32, 0)], outputs=[TxOutput(1, b"\x51\x20" + bytes(32))]
        )
        chain.raw_txs[asset.txid] = other.hex()

        with pytest.raises(CovenantError, match="Chain returned"):
            await engine.backtrace([asset], "bc1pminter", chain)


class TestTransferGuard:
    @pytest.mark.asyncio
    async def test_output_assets_follow_destinations(
        self, engine, chain, owner_key, make_asset, dest_address
    ) -> None:
        traced = await engine.backtrace([make_asset(owner_key, 7)], "bc1pminter", chain)

        guard, outputs = engine.create_transfer_guard([(traced[0], 0)], [(dest_address, 1)])

        assert outputs[0].local_id == 7
        assert outputs[0].owner_script == address_to_scriptpubkey(dest_address)
        assert guard.moves[0].input_index == 0
        assert guard.moves[0].output_index == 1
        assert not guard.is_bound

    @pytest.mark.asyncio
    async def test_commitment_binds_destination(
        self, engine, chain, owner_key, fee_key, make_asset, dest_address
    ) -> None:
        traced = await engine.backtrace([make_asset(owner_key, 7)], "bc1pminter", chain)
        guard_a, _ = engine.create_transfer_guard([(traced[0], 0)], [(dest_address, 1)])
        guard_b, _ = engine.create_transfer_guard(
            [(traced[0], 0)], [(fee_key.address(AddressType.P2TR), 1)]
        )
        guard_a2, _ = engine.create_transfer_guard([(traced[0], 0)], [(dest_address, 1)])

        assert guard_a.commitment == guard_a2.commitment
        assert guard_a.commitment != guard_b.commitment

    @pytest.mark.asyncio
    async def test_burn_has_no_output(self, engine, chain, owner_key, make_asset) -> None:
        traced = await engine.backtrace([make_asset(owner_key, 7)], "bc1pminter", chain)
        guard, outputs = engine.create_transfer_guard([(traced[0], 0)], [(None, None)])
        assert outputs == [None]
        assert guard.moves[0].output_index is None

    @pytest.mark.asyncio
    async def test_invalid_slots(self, engine, chain, owner_key, make_asset, dest_address) -> None:
        traced = await engine.backtrace([make_asset(owner_key, 7)], "bc1pminter", chain)
        with pytest.raises(CovenantError, match="exactly one output"):
            engine.create_transfer_guard([(traced[0], 0)], [])
        with pytest.raises(CovenantError, match="Invalid output index"):
            engine.create_transfer_guard([(traced[0], 0)], [(dest_address, 0)])
        with pytest.raises(CovenantError, match="Invalid destination"):
            engine.create_transfer_guard([(traced[0], 0)], [("bc1qnope", 1)])

    def test_state_script_is_fixed_size_op_return(self, engine) -> None:
        script = engine.state_script([b"\x01" * 32, b"\x02" * 32])
        assert script[:2] == b"\x6a\x20"
        assert len(script) == 34
        assert engine.state_script([b"\x01" * 32]) != script


async def prepare(engine, chain, owner_key, fee_key, make_asset, make_funding, dest_address):
    traced = await engine.backtrace([make_asset(owner_key, 7)], "bc1pminter", chain)
    guard, outputs = engine.create_transfer_guard([(traced[0], 0)], [(dest_address, 1)])
    change_script = fee_key.scriptpubkey(AddressType.P2TR)
    guard_psbt, bound = build_guard_tx(
        engine, guard, make_funding(fee_key, 5_000), change_script, 1, 200
    )
    return traced, guard, bound, guard_psbt, outputs, change_script


class TestUnlocks:
    @pytest.fixture
    def args(self, engine, chain, owner_key, fee_key, make_asset, make_funding, dest_address):
        return engine, chain, owner_key, fee_key, make_asset, make_funding, dest_address

    @pytest.mark.asyncio
    async def test_valid_send_gets_covenant_witnesses(self, args, engine, owner_key) -> None:
        traced, _, bound, guard_psbt, outputs, change_script = await prepare(*args)

        psbt = build_send_tx(
            engine,
            traced,
            bound,
            guard_psbt,
            guard_psbt.get_utxo(GUARD_CHANGE_OUTPUT_INDEX),
            owner_key.address(AddressType.P2TR),
            owner_key.public_key.hex(),
            outputs,
            change_script,
            1,
            400,
        )

        assert psbt.inputs[0].covenant_witness == []
        assert psbt.inputs[1].covenant_witness == [bound.preimage, bound.witness_script]
        assert psbt.inputs[2].covenant_witness is None

    @pytest.mark.asyncio
    async def test_unbound_guard_rejected(self, args, engine, owner_key) -> None:
        traced, guard, _, guard_psbt, outputs, change_script = await prepare(*args)

        with pytest.raises(CovenantError, match="not bound"):
            build_send_tx(
                engine,
                traced,
                guard,
                guard_psbt,
                guard_psbt.get_utxo(GUARD_CHANGE_OUTPUT_INDEX),
                owner_key.address(AddressType.P2TR),
                owner_key.public_key.hex(),
                outputs,
                change_script,
                1,
            )

    @pytest.mark.asyncio
    async def test_guard_bound_to_other_transaction(
        self, args, engine, owner_key, fee_key, make_funding
    ) -> None:
        """A guard bound in one guard transaction cannot unlock against another."""
        traced, guard, _, guard_psbt, outputs, change_script = await prepare(*args)
        _, other_bound = build_guard_tx(
            engine, guard, make_funding(fee_key, 9_000, "other"), change_script, 1, 200
        )

        with pytest.raises(CovenantError, match="not to guard transaction"):
            build_send_tx(
                engine,
                traced,
                other_bound,
                guard_psbt,
                guard_psbt.get_utxo(GUARD_CHANGE_OUTPUT_INDEX),
                owner_key.address(AddressType.P2TR),
                owner_key.public_key.hex(),
                outputs,
                change_script,
                1,
            )

    @pytest.mark.asyncio
    async def test_tampered_destination_rejected(self, args, engine, owner_key) -> None:
        traced, _, bound, guard_psbt, outputs, change_script = await prepare(*args)
        psbt = build_send_tx(
            engine,
            traced,
            bound,
            guard_psbt,
            guard_psbt.get_utxo(GUARD_CHANGE_OUTPUT_INDEX),
            owner_key.address(AddressType.P2TR),
            owner_key.public_key.hex(),
            outputs,
            change_script,
            1,
        )
        psbt.tx.outputs[1].script = change_script

        with pytest.raises(CovenantError, match="does not pay"):
            engine.unlock_guard(
                bound, 1, psbt.signing_context(), outputs, guard_psbt.unsigned_tx_hex()
            )

    @pytest.mark.asyncio
    async def test_wrong_owner_key_rejected(self, args, engine, fee_key) -> None:
        traced, _, bound, guard_psbt, outputs, change_script = await prepare(*args)

        with pytest.raises(CovenantError, match="not owned"):
            build_send_tx(
                engine,
                traced,
                bound,
                guard_psbt,
                guard_psbt.get_utxo(GUARD_CHANGE_OUTPUT_INDEX),
                fee_key.address(AddressType.P2TR),
                fee_key.public_key.hex(),
                outputs,
                change_script,
                1,
            )

    @pytest.mark.asyncio
    async def test_guard_info_must_point_at_guard_input(self, args, engine, owner_key) -> None:
        traced, _, bound, guard_psbt, outputs, change_script = await prepare(*args)
        psbt = build_send_tx(
            engine,
            traced,
            bound,
            guard_psbt,
            guard_psbt.get_utxo(GUARD_CHANGE_OUTPUT_INDEX),
            owner_key.address(AddressType.P2TR),
            owner_key.public_key.hex(),
            outputs,
            change_script,
            1,
        )
        # Input 2 is the fee input, not the guard
        wrong_info = bound.guard_info(2, guard_psbt.unsigned_tx_hex())

        with pytest.raises(CovenantError, match="bound guard output"):
            engine.unlock_asset(
                0, psbt.signing_context(), traced[0], wrong_info, True, owner_key.public_key.hex()
            )

    @pytest.mark.asyncio
    async def test_bind_requires_guard_output(self, args, fee_key) -> None:
        _, guard, bound, guard_psbt, _, _ = await prepare(*args)

        assert bound.utxo == guard_psbt.get_utxo(GUARD_OUTPUT_INDEX)
        assert guard.utxo is None
        with pytest.raises(CovenantError, match="does not carry"):
            guard.bind_to_utxo(guard_psbt.get_utxo(GUARD_CHANGE_OUTPUT_INDEX))
