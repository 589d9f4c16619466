"""
Sighash computation and signing for segwit v0 and taproot key-path inputs.
"""

from __future__ import annotations

import hashlib
import secrets

from cat721_bulk.errors import SigningError
from cat721_bulk.keys import KeyPair, hash160, tagged_hash
from cat721_bulk.psbt import SigningContext, encode_varint, hash256

SIGHASH_DEFAULT = 0x00
SIGHASH_ALL = 0x01


def _check_index(context: SigningContext, input_index: int) -> None:
    if not 0 <= input_index < len(context.outpoints):
        raise SigningError(f"Input index {input_index} out of range")


def compute_sighash_segwit(
    context: SigningContext,
    input_index: int,
    script_code: bytes,
    sighash_type: int = SIGHASH_ALL,
) -> bytes:
    """BIP143 signature hash."""
    _check_index(context, input_index)

    hash_prevouts = hash256(b"".join(context.outpoints))
    hash_sequence = hash256(b"".join(s.to_bytes(4, "little") for s in context.sequences))
    hash_outputs = hash256(b"".join(o.serialize() for o in context.outputs))

    preimage = (
        context.version.to_bytes(4, "little")
        + hash_prevouts
        + hash_sequence
        + context.outpoints[input_index]
        + encode_varint(len(script_code))
        + script_code
        + context.amounts[input_index].to_bytes(8, "little")
        + context.sequences[input_index].to_bytes(4, "little")
        + hash_outputs
        + context.locktime.to_bytes(4, "little")
        + sighash_type.to_bytes(4, "little")
    )
    return hash256(preimage)


def compute_sighash_taproot(
    context: SigningContext,
    input_index: int,
    sighash_type: int = SIGHASH_DEFAULT,
) -> bytes:
    """BIP341 key-path signature hash for SIGHASH_DEFAULT / SIGHASH_ALL."""
    _check_index(context, input_index)
    if sighash_type not in (SIGHASH_DEFAULT, SIGHASH_ALL):
        raise SigningError(f"Unsupported taproot sighash type: {sighash_type:#x}")

    msg = (
        bytes([0x00])  # epoch
        + bytes([sighash_type])
        + context.version.to_bytes(4, "little")
        + context.locktime.to_bytes(4, "little")
        + context.sha_prevouts()
        + context.sha_amounts()
        + context.sha_scriptpubkeys()
        + context.sha_sequences()
        + context.sha_outputs()
        + bytes([0x00])  # spend_type: key path, no annex
        + input_index.to_bytes(4, "little")
    )
    return tagged_hash("TapSighash", msg)


def create_p2wpkh_script_code(pubkey_bytes: bytes) -> bytes:
    """
    Create the scriptCode for P2WPKH signing (BIP 143).

    OP_DUP OP_HASH160 <20-byte-pubkeyhash> OP_EQUALVERIFY OP_CHECKSIG
    """
    return b"\x76\xa9\x14" + hash160(pubkey_bytes) + b"\x88\xac"


def sign_p2wpkh_input(context: SigningContext, input_index: int, key: KeyPair) -> bytes:
    """
    Sign a P2WPKH input.

    Returns:
        DER-encoded signature with SIGHASH_ALL appended
    """
    script_code = create_p2wpkh_script_code(key.public_key)
    sighash = compute_sighash_segwit(context, input_index, script_code, SIGHASH_ALL)
    # sighash is already SHA256d; hasher=None signs it as-is
    signature = key.private_key.sign(sighash, hasher=None)
    return signature + bytes([SIGHASH_ALL])


def sign_taproot_input(
    context: SigningContext,
    input_index: int,
    key: KeyPair,
    tweak: bool = True,
) -> bytes:
    """
    Sign a taproot key-path input with SIGHASH_DEFAULT.

    Returns:
        64-byte BIP340 signature (no sighash byte for SIGHASH_DEFAULT)
    """
    sighash = compute_sighash_taproot(context, input_index)
    private_key = key.tweaked_private_key() if tweak else key.private_key
    aux = hashlib.sha256(secrets.token_bytes(32)).digest()
    return private_key.sign_schnorr(sighash, aux)
