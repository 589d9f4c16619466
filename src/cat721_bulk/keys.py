"""
Key material, address derivation and scriptPubKey helpers.

Owner keys are given as WIF strings. Each key can own assets either through
its taproot (BIP86 key-path tweak) address or its native segwit v0 address.
"""

from __future__ import annotations

import hashlib
import secrets
from enum import Enum

import base58
import bech32
from coincurve import Context, PrivateKey, PublicKey

from cat721_bulk.errors import InvalidKeyError

# secp256k1 group order
SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

HRP_BY_NETWORK = {
    "mainnet": "bc",
    "testnet": "tb",
    "signet": "tb",
    "regtest": "bcrt",
}

WIF_MAINNET_PREFIX = 0x80
WIF_TESTNET_PREFIX = 0xEF

BECH32_CONST = 1
BECH32M_CONST = 0x2BC830A3


class AddressType(str, Enum):
    P2TR = "p2tr"
    P2WPKH = "p2wpkh"


class AddressMatch(str, Enum):
    """Which derived address form of a key equals a declared address."""

    P2TR = "p2tr"
    P2WPKH = "p2wpkh"
    UNMATCHED = "unmatched"


def init_ecc(seed: bytes | None = None) -> Context:
    """
    Create the secp256k1 context shared by every key of a run.

    Must be called once at startup, before any key is constructed.
    """
    return Context(seed=seed or secrets.token_bytes(32))


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))"""
    h = hashlib.new("ripemd160")
    h.update(hashlib.sha256(data).digest())
    return h.digest()


def tagged_hash(tag: str, data: bytes) -> bytes:
    """BIP340 tagged hash: SHA256(SHA256(tag) || SHA256(tag) || data)"""
    tag_hash = hashlib.sha256(tag.encode()).digest()
    return hashlib.sha256(tag_hash + tag_hash + data).digest()


def get_hrp(network: str) -> str:
    try:
        return HRP_BY_NETWORK[network]
    except KeyError:
        raise ValueError(f"Unknown network: {network}") from None


def p2wpkh_script(pubkey_hash: bytes) -> bytes:
    # OP_0 <20-byte-pubkeyhash>
    return bytes([0x00, 0x14]) + pubkey_hash


def p2wsh_script(witness_script: bytes) -> bytes:
    # OP_0 <32-byte-scripthash>
    return bytes([0x00, 0x20]) + hashlib.sha256(witness_script).digest()


def p2tr_script(output_key: bytes) -> bytes:
    # OP_1 <32-byte-xonly-key>
    return bytes([0x51, 0x20]) + output_key


def is_p2tr_script(script: bytes) -> bool:
    return len(script) == 34 and script[0] == 0x51 and script[1] == 0x20


def is_p2wpkh_script(script: bytes) -> bool:
    return len(script) == 22 and script[0] == 0x00 and script[1] == 0x14


def taproot_output_key(internal_key: bytes, context: Context | None = None) -> bytes:
    """
    Tweak a 32-byte x-only internal key for a key-path-only output (BIP86).

    Q = lift_x(P) + int(hashTapTweak(P)) * G
    """
    if len(internal_key) != 32:
        raise ValueError(f"Invalid x-only key length: {len(internal_key)}")
    tweak = tagged_hash("TapTweak", internal_key)
    if int.from_bytes(tweak, "big") >= SECP256K1_N:
        raise ValueError("Taproot tweak out of range")
    if context is None:
        point = PublicKey(b"\x02" + internal_key)
    else:
        point = PublicKey(b"\x02" + internal_key, context=context)
    return point.add(tweak).format(compressed=True)[1:]


def _segwit_checksum_const(witver: int) -> int:
    # Bech32 for witness v0, Bech32m (BIP350) for v1 and later
    return BECH32_CONST if witver == 0 else BECH32M_CONST


def encode_segwit_address(hrp: str, witver: int, program: bytes) -> str:
    """Encode a segwit address, with the checksum variant its witness version requires."""
    if not 0 <= witver <= 16 or not 2 <= len(program) <= 40:
        raise ValueError(f"Cannot encode witness v{witver} program of {len(program)} bytes")
    if witver == 0 and len(program) not in (20, 32):
        raise ValueError(f"Invalid witness v0 program length: {len(program)}")

    data = [witver] + bech32.convertbits(program, 8, 5)
    values = bech32.bech32_hrp_expand(hrp) + data
    polymod = bech32.bech32_polymod(values + [0] * 6) ^ _segwit_checksum_const(witver)
    checksum = [(polymod >> 5 * (5 - i)) & 31 for i in range(6)]
    return hrp + "1" + "".join(bech32.CHARSET[d] for d in data + checksum)


def decode_segwit_address(hrp: str, address: str) -> tuple[int, bytes]:
    """
    Decode a segwit address for `hrp`.

    Returns:
        (witness version, witness program)

    Raises:
        ValueError: malformed address, wrong hrp or wrong checksum variant
    """
    if address.lower() != address and address.upper() != address:
        raise ValueError(f"Mixed-case address: {address}")
    address = address.lower()
    pos = address.rfind("1")
    if pos < 1 or pos + 7 > len(address) or len(address) > 90:
        raise ValueError(f"Invalid bech32 address: {address}")
    if address[:pos] != hrp:
        raise ValueError(f"Address {address} is not for hrp {hrp}")

    data = [bech32.CHARSET.find(c) for c in address[pos + 1 :]]
    if any(d < 0 for d in data):
        raise ValueError(f"Invalid bech32 character in {address}")

    witver = data[0]
    if witver > 16:
        raise ValueError(f"Invalid witness version: {witver}")
    values = bech32.bech32_hrp_expand(hrp) + data
    if bech32.bech32_polymod(values) != _segwit_checksum_const(witver):
        raise ValueError(f"Invalid checksum for witness v{witver} address: {address}")

    program = bech32.convertbits(data[1:-6], 5, 8, False)
    if program is None or not 2 <= len(program) <= 40:
        raise ValueError(f"Invalid witness program in {address}")
    if witver == 0 and len(program) not in (20, 32):
        raise ValueError(f"Invalid witness v0 program length: {len(program)}")
    return witver, bytes(program)


def address_to_scriptpubkey(address: str) -> bytes:
    """
    Convert a Bitcoin address to scriptPubKey.

    Supports:
    - P2TR (bc1p..., tb1p..., bcrt1p...)
    - P2WPKH and P2WSH (bc1q..., tb1q..., bcrt1q...)
    - P2PKH (1..., m..., n...)
    - P2SH (3..., 2...)
    """
    if address.lower().startswith(("bc1", "tb1", "bcrt1")):
        hrp = address[: address.rfind("1")].lower()
        witver, program = decode_segwit_address(hrp, address)

        if witver == 0 and len(program) == 20:
            return p2wpkh_script(program)
        if witver == 0 and len(program) == 32:
            return bytes([0x00, 0x20]) + program
        if witver == 1 and len(program) == 32:
            return p2tr_script(program)

        raise ValueError(f"Unsupported witness version: {witver}")

    try:
        decoded = base58.b58decode_check(address)
    except ValueError as e:
        raise ValueError(f"Invalid address: {address}") from e
    version = decoded[0]
    payload = decoded[1:]

    if version in (0x00, 0x6F):
        # OP_DUP OP_HASH160 <20> OP_EQUALVERIFY OP_CHECKSIG
        return bytes([0x76, 0xA9, 0x14]) + payload + bytes([0x88, 0xAC])
    if version in (0x05, 0xC4):
        # OP_HASH160 <20> OP_EQUAL
        return bytes([0xA9, 0x14]) + payload + bytes([0x87])

    raise ValueError(f"Unknown address version: {version}")


def is_p2tr_address(address: str) -> bool:
    try:
        return is_p2tr_script(address_to_scriptpubkey(address))
    except ValueError:
        return False


def decode_wif(wif: str) -> tuple[bytes, str]:
    """
    Decode a compressed-key WIF string.

    Returns:
        (32-byte secret, "mainnet" or "testnet")
    """
    try:
        raw = base58.b58decode_check(wif.strip())
    except ValueError as e:
        raise InvalidKeyError(f"invalid wif: {e}") from e

    if raw[0] == WIF_MAINNET_PREFIX:
        network = "mainnet"
    elif raw[0] == WIF_TESTNET_PREFIX:
        network = "testnet"
    else:
        raise InvalidKeyError(f"invalid wif: unknown version byte {raw[0]:#x}")

    if len(raw) != 34 or raw[33] != 0x01:
        raise InvalidKeyError("invalid wif: only compressed keys are supported")

    return raw[1:33], network


def encode_wif(secret: bytes, network: str = "mainnet") -> str:
    prefix = WIF_MAINNET_PREFIX if network == "mainnet" else WIF_TESTNET_PREFIX
    return base58.b58encode_check(bytes([prefix]) + secret + b"\x01").decode()


class KeyPair:
    """A secp256k1 private key with both of its segwit address forms."""

    def __init__(self, secret: bytes, context: Context | None = None):
        if len(secret) != 32:
            raise InvalidKeyError(f"Invalid secret length: {len(secret)}")
        self.context = context
        try:
            if context is None:
                self.private_key = PrivateKey(secret)
            else:
                self.private_key = PrivateKey(secret, context=context)
        except ValueError as e:
            raise InvalidKeyError(f"Invalid private key: {e}") from e

    @classmethod
    def from_wif(cls, wif: str, context: Context | None = None) -> KeyPair:
        secret, _ = decode_wif(wif)
        return cls(secret, context)

    @property
    def public_key(self) -> bytes:
        return self.private_key.public_key.format(compressed=True)

    @property
    def x_only_public_key(self) -> bytes:
        return self.public_key[1:]

    @property
    def output_key(self) -> bytes:
        return taproot_output_key(self.x_only_public_key, self.context)

    def tweaked_private_key(self) -> PrivateKey:
        """Private key for the taproot output key, negated first if P has odd y."""
        d = int.from_bytes(self.private_key.secret, "big")
        if self.public_key[0] == 0x03:
            d = SECP256K1_N - d
        t = int.from_bytes(tagged_hash("TapTweak", self.x_only_public_key), "big")
        tweaked = ((d + t) % SECP256K1_N).to_bytes(32, "big")
        if self.context is None:
            return PrivateKey(tweaked)
        return PrivateKey(tweaked, context=self.context)

    def scriptpubkey(self, address_type: AddressType) -> bytes:
        if address_type == AddressType.P2TR:
            return p2tr_script(self.output_key)
        return p2wpkh_script(hash160(self.public_key))

    def address(self, address_type: AddressType, network: str = "mainnet") -> str:
        hrp = get_hrp(network)
        if address_type == AddressType.P2TR:
            return encode_segwit_address(hrp, 1, self.output_key)
        return encode_segwit_address(hrp, 0, hash160(self.public_key))

    def match_address(self, address: str, network: str = "mainnet") -> AddressMatch:
        """Taproot form is tried first, then native segwit v0."""
        for address_type, match in (
            (AddressType.P2TR, AddressMatch.P2TR),
            (AddressType.P2WPKH, AddressMatch.P2WPKH),
        ):
            if self.address(address_type, network) == address.strip().lower():
                return match
        return AddressMatch.UNMATCHED
