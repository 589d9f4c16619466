"""
Signers that fill signatures into PSBTs.

A signer receives a PSBT as hex plus the list of inputs it is asked to sign
and returns the updated PSBT as hex. KeySigner signs with a private key;
DummySigner writes worst-case placeholder signatures for size probes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from loguru import logger

from cat721_bulk.errors import SigningError
from cat721_bulk.keys import AddressType, KeyPair, is_p2tr_script, is_p2wpkh_script
from cat721_bulk.psbt import Psbt, SigningContext
from cat721_bulk.signing import sign_p2wpkh_input, sign_taproot_input

# Placeholder sizes: BIP340 signature, and the largest low-S DER signature plus sighash byte
DUMMY_SCHNORR_SIG = b"\x00" * 64
DUMMY_ECDSA_SIG = b"\x00" * 72
DUMMY_PUBKEY = b"\x02" + b"\x00" * 32


@dataclass
class ToSignInput:
    """One input a signer is asked to sign, optionally pinned to a key or address."""

    index: int
    public_key: str | None = None
    address: str | None = None
    disable_tweak_signer: bool = False


@dataclass
class SignOptions:
    to_sign_inputs: list[ToSignInput] = field(default_factory=list)
    auto_finalized: bool = True


class Signer(ABC):
    @abstractmethod
    async def get_address(self) -> str:
        """Address this signer receives change on"""

    @abstractmethod
    async def get_public_key(self) -> str:
        """Compressed public key as hex"""

    @abstractmethod
    async def sign_psbt(self, psbt_hex: str, options: SignOptions | None = None) -> str:
        """Sign the requested inputs and return the updated PSBT hex"""


class KeySigner(Signer):
    """Signs inputs locked to either segwit form of a single private key."""

    def __init__(
        self,
        key: KeyPair,
        address_type: AddressType = AddressType.P2TR,
        network: str = "mainnet",
    ):
        self.key = key
        self.address_type = address_type
        self.network = network

    @property
    def address(self) -> str:
        return self.key.address(self.address_type, self.network)

    async def get_address(self) -> str:
        return self.address

    async def get_public_key(self) -> str:
        return self.key.public_key.hex()

    def _owns(self, script: bytes) -> bool:
        return script in (
            self.key.scriptpubkey(AddressType.P2TR),
            self.key.scriptpubkey(AddressType.P2WPKH),
        )

    async def sign_psbt(self, psbt_hex: str, options: SignOptions | None = None) -> str:
        psbt = Psbt.from_hex(psbt_hex)
        options = options or SignOptions()

        targets = options.to_sign_inputs
        if not targets:
            targets = [
                ToSignInput(index=i)
                for i, meta in enumerate(psbt.inputs)
                if meta.witness_utxo is not None
                and not meta.is_finalized
                and self._owns(meta.witness_utxo.script)
            ]

        context = psbt.signing_context()
        for target in targets:
            self._sign_input(psbt, context, target)

        if options.auto_finalized:
            psbt.finalize_inputs([t.index for t in targets])

        logger.debug(f"Signed {len(targets)} input(s) with {self.address}")
        return psbt.to_hex()

    def _sign_input(self, psbt: Psbt, context: SigningContext, target: ToSignInput) -> None:
        index = target.index
        if not 0 <= index < len(psbt.inputs):
            raise SigningError(f"Input index {index} out of range")

        if target.public_key is not None and target.public_key != self.key.public_key.hex():
            raise SigningError(f"Input {index}: public key {target.public_key} is not ours")
        if target.address is not None and target.address not in (
            self.key.address(AddressType.P2TR, self.network),
            self.key.address(AddressType.P2WPKH, self.network),
        ):
            raise SigningError(f"Input {index}: address {target.address} is not ours")

        meta = psbt.inputs[index]
        if meta.witness_utxo is None:
            raise SigningError(f"Input {index} has no witness UTXO")
        script = meta.witness_utxo.script

        if target.disable_tweak_signer and is_p2tr_script(script):
            meta.tap_key_sig = sign_taproot_input(context, index, self.key, tweak=False)
        elif script == self.key.scriptpubkey(AddressType.P2TR):
            meta.tap_key_sig = sign_taproot_input(context, index, self.key)
        elif script == self.key.scriptpubkey(AddressType.P2WPKH):
            meta.partial_sigs[self.key.public_key] = sign_p2wpkh_input(context, index, self.key)
        else:
            raise SigningError(f"Input {index} is not spendable by this key")


class DummySigner(Signer):
    """
    Fills worst-case placeholder signatures so a probe transaction has its
    final witness size. The result is never valid and never broadcast.
    """

    def __init__(self, address: str = "", public_key: str = DUMMY_PUBKEY.hex()):
        self._address = address
        self._public_key = public_key

    async def get_address(self) -> str:
        return self._address

    async def get_public_key(self) -> str:
        return self._public_key

    async def sign_psbt(self, psbt_hex: str, options: SignOptions | None = None) -> str:
        psbt = Psbt.from_hex(psbt_hex)
        options = options or SignOptions()

        if options.to_sign_inputs:
            indices = [t.index for t in options.to_sign_inputs]
        else:
            indices = [
                i
                for i, meta in enumerate(psbt.inputs)
                if not meta.is_finalized and not meta.is_signed
            ]

        signed: list[int] = []
        for index in indices:
            meta = psbt.inputs[index]
            if meta.witness_utxo is None:
                raise SigningError(f"Input {index} has no witness UTXO")
            script = meta.witness_utxo.script
            if is_p2tr_script(script):
                meta.tap_key_sig = DUMMY_SCHNORR_SIG
            elif is_p2wpkh_script(script):
                meta.partial_sigs[DUMMY_PUBKEY] = DUMMY_ECDSA_SIG
            else:
                # Covenant-only inputs are unlocked by their covenant witness
                continue
            signed.append(index)

        if options.auto_finalized:
            psbt.finalize_inputs(signed)
        return psbt.to_hex()
