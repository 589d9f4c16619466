"""
Transaction and PSBT (BIP-174) codec.

Only the subset needed here is supported: segwit witness UTXOs, ECDSA partial
signatures, taproot key-path signatures, final script witnesses and one
proprietary field carrying the covenant part of an input's witness.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field

from cat721_bulk.backends.base import UTXO
from cat721_bulk.errors import PsbtError

PSBT_MAGIC = b"psbt\xff"

PSBT_GLOBAL_UNSIGNED_TX = 0x00
PSBT_IN_WITNESS_UTXO = 0x01
PSBT_IN_PARTIAL_SIG = 0x02
PSBT_IN_FINAL_SCRIPTWITNESS = 0x08
PSBT_IN_TAP_KEY_SIG = 0x13
PSBT_IN_PROPRIETARY = 0xFC

PROPRIETARY_IDENTIFIER = b"cat721"
PROPRIETARY_COVENANT_WITNESS = 0x00


def hash256(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def read_varint(data: bytes, offset: int) -> tuple[int, int]:
    first = data[offset]
    offset += 1

    if first < 0xFD:
        return first, offset
    if first == 0xFD:
        return int.from_bytes(data[offset : offset + 2], "little"), offset + 2
    if first == 0xFE:
        return int.from_bytes(data[offset : offset + 4], "little"), offset + 4
    return int.from_bytes(data[offset : offset + 8], "little"), offset + 8


def encode_varint(value: int) -> bytes:
    if value < 0xFD:
        return bytes([value])
    if value <= 0xFFFF:
        return b"\xfd" + value.to_bytes(2, "little")
    if value <= 0xFFFFFFFF:
        return b"\xfe" + value.to_bytes(4, "little")
    return b"\xff" + value.to_bytes(8, "little")


def serialize_outpoint(txid: str, vout: int) -> bytes:
    """txid is displayed big-endian but serialized little-endian."""
    return bytes.fromhex(txid)[::-1] + vout.to_bytes(4, "little")


def serialize_witness(stack: list[bytes]) -> bytes:
    result = encode_varint(len(stack))
    for item in stack:
        result += encode_varint(len(item)) + item
    return result


def read_witness(data: bytes, offset: int) -> tuple[list[bytes], int]:
    count, offset = read_varint(data, offset)
    stack: list[bytes] = []
    for _ in range(count):
        item_len, offset = read_varint(data, offset)
        stack.append(data[offset : offset + item_len])
        offset += item_len
    return stack, offset


def _read_bytes(data: bytes, offset: int, length: int) -> tuple[bytes, int]:
    if offset + length > len(data):
        raise PsbtError("Unexpected end of data")
    return data[offset : offset + length], offset + length


@dataclass
class TxInput:
    txid: str
    vout: int
    sequence: int = 0xFFFFFFFF

    def serialize(self) -> bytes:
        # Empty scriptSig: every input spent here is segwit
        outpoint = serialize_outpoint(self.txid, self.vout)
        return outpoint + b"\x00" + self.sequence.to_bytes(4, "little")


@dataclass
class TxOutput:
    value: int
    script: bytes

    def serialize(self) -> bytes:
        return self.value.to_bytes(8, "little") + encode_varint(len(self.script)) + self.script


@dataclass
class RawTransaction:
    version: int = 2
    inputs: list[TxInput] = field(default_factory=list)
    outputs: list[TxOutput] = field(default_factory=list)
    locktime: int = 0
    witnesses: list[list[bytes]] = field(default_factory=list)

    @property
    def has_witness(self) -> bool:
        return any(self.witnesses)

    def serialize(self, include_witness: bool = True) -> bytes:
        with_witness = include_witness and self.has_witness

        result = self.version.to_bytes(4, "little")
        if with_witness:
            result += b"\x00\x01"

        result += encode_varint(len(self.inputs))
        for inp in self.inputs:
            result += inp.serialize()

        result += encode_varint(len(self.outputs))
        for out in self.outputs:
            result += out.serialize()

        if with_witness:
            for i in range(len(self.inputs)):
                result += serialize_witness(self.witnesses[i] if i < len(self.witnesses) else [])

        result += self.locktime.to_bytes(4, "little")
        return result

    @property
    def txid(self) -> str:
        """Hash of the non-witness serialization, displayed big-endian."""
        return hash256(self.serialize(include_witness=False))[::-1].hex()

    @property
    def vsize(self) -> int:
        base_size = len(self.serialize(include_witness=False))
        total_size = len(self.serialize(include_witness=True))
        weight = base_size * 3 + total_size
        return (weight + 3) // 4

    def hex(self) -> str:
        return self.serialize().hex()

    @classmethod
    def parse(cls, data: bytes) -> RawTransaction:
        try:
            offset = 0
            version = int.from_bytes(data[0:4], "little")
            offset = 4

            segwit = data[offset] == 0x00 and data[offset + 1] == 0x01
            if segwit:
                offset += 2

            input_count, offset = read_varint(data, offset)
            inputs: list[TxInput] = []
            for _ in range(input_count):
                txid = data[offset : offset + 32][::-1].hex()
                offset += 32
                vout = int.from_bytes(data[offset : offset + 4], "little")
                offset += 4
                script_len, offset = read_varint(data, offset)
                offset += script_len
                sequence = int.from_bytes(data[offset : offset + 4], "little")
                offset += 4
                inputs.append(TxInput(txid, vout, sequence))

            output_count, offset = read_varint(data, offset)
            outputs: list[TxOutput] = []
            for _ in range(output_count):
                value = int.from_bytes(data[offset : offset + 8], "little")
                offset += 8
                script_len, offset = read_varint(data, offset)
                script, offset = _read_bytes(data, offset, script_len)
                outputs.append(TxOutput(value, script))

            witnesses: list[list[bytes]] = []
            if segwit:
                for _ in range(input_count):
                    stack, offset = read_witness(data, offset)
                    witnesses.append(stack)

            locktime_bytes, offset = _read_bytes(data, offset, 4)
            locktime = int.from_bytes(locktime_bytes, "little")
            return cls(version, inputs, outputs, locktime, witnesses)

        except PsbtError:
            raise
        except (IndexError, ValueError) as e:
            raise PsbtError(f"Failed to parse transaction: {e}") from e

    @classmethod
    def from_hex(cls, tx_hex: str) -> RawTransaction:
        try:
            data = bytes.fromhex(tx_hex)
        except ValueError as e:
            raise PsbtError(f"Invalid transaction hex: {e}") from e
        return cls.parse(data)


@dataclass(frozen=True)
class SigningContext:
    """
    Transaction-wide data every input's sighash is computed over.

    Calculated once per transaction and shared by all covenant unlocks and
    signatures, so every input commits to the same view of the transaction.
    """

    version: int
    locktime: int
    outpoints: tuple[bytes, ...]
    sequences: tuple[int, ...]
    amounts: tuple[int, ...]
    scriptpubkeys: tuple[bytes, ...]
    outputs: tuple[TxOutput, ...]

    def sha_prevouts(self) -> bytes:
        return hashlib.sha256(b"".join(self.outpoints)).digest()

    def sha_amounts(self) -> bytes:
        return hashlib.sha256(b"".join(a.to_bytes(8, "little") for a in self.amounts)).digest()

    def sha_scriptpubkeys(self) -> bytes:
        return hashlib.sha256(
            b"".join(encode_varint(len(s)) + s for s in self.scriptpubkeys)
        ).digest()

    def sha_sequences(self) -> bytes:
        return hashlib.sha256(b"".join(s.to_bytes(4, "little") for s in self.sequences)).digest()

    def sha_outputs(self) -> bytes:
        return hashlib.sha256(b"".join(o.serialize() for o in self.outputs)).digest()


@dataclass
class PsbtInput:
    witness_utxo: TxOutput | None = None
    partial_sigs: dict[bytes, bytes] = field(default_factory=dict)
    tap_key_sig: bytes | None = None
    covenant_witness: list[bytes] | None = None
    final_witness: list[bytes] | None = None

    @property
    def is_finalized(self) -> bool:
        return self.final_witness is not None

    @property
    def is_signed(self) -> bool:
        return self.tap_key_sig is not None or bool(self.partial_sigs)


def _write_kv(key: bytes, value: bytes) -> bytes:
    return encode_varint(len(key)) + key + encode_varint(len(value)) + value


def _proprietary_key(subtype: int) -> bytes:
    return (
        bytes([PSBT_IN_PROPRIETARY])
        + encode_varint(len(PROPRIETARY_IDENTIFIER))
        + PROPRIETARY_IDENTIFIER
        + encode_varint(subtype)
    )


def _read_map(data: bytes, offset: int) -> tuple[list[tuple[bytes, bytes]], int]:
    entries: list[tuple[bytes, bytes]] = []
    while True:
        key_len, offset = read_varint(data, offset)
        if key_len == 0:
            return entries, offset
        key, offset = _read_bytes(data, offset, key_len)
        value_len, offset = read_varint(data, offset)
        value, offset = _read_bytes(data, offset, value_len)
        entries.append((key, value))


class Psbt:
    """
    Partially signed transaction under construction.

    Inputs and outputs are appended in order, so callers control exactly
    which index each input and output lands on.
    """

    def __init__(self, tx: RawTransaction | None = None, inputs: list[PsbtInput] | None = None):
        self.tx = tx or RawTransaction()
        self.inputs = inputs if inputs is not None else [PsbtInput() for _ in self.tx.inputs]

    def add_input(self, utxo: UTXO) -> Psbt:
        self.tx.inputs.append(TxInput(utxo.txid, utxo.vout))
        self.inputs.append(
            PsbtInput(witness_utxo=TxOutput(utxo.value, bytes.fromhex(utxo.scriptpubkey)))
        )
        return self

    def add_inputs(self, utxos: list[UTXO]) -> Psbt:
        for utxo in utxos:
            self.add_input(utxo)
        return self

    def add_output(self, script: bytes, value: int) -> Psbt:
        if value < 0:
            raise PsbtError(f"Negative output value: {value}")
        self.tx.outputs.append(TxOutput(value, script))
        return self

    def _prevout(self, index: int) -> TxOutput:
        prevout = self.inputs[index].witness_utxo
        if prevout is None:
            raise PsbtError(f"Input {index} has no witness UTXO")
        return prevout

    @property
    def input_total(self) -> int:
        return sum(self._prevout(i).value for i in range(len(self.inputs)))

    @property
    def output_total(self) -> int:
        return sum(out.value for out in self.tx.outputs)

    @property
    def fee(self) -> int:
        return self.input_total - self.output_total

    @property
    def txid(self) -> str:
        return self.tx.txid

    def get_utxo(self, index: int) -> UTXO:
        """Output `index` of this transaction as a spendable UTXO."""
        if index >= len(self.tx.outputs):
            raise PsbtError(f"Output index {index} out of range")
        out = self.tx.outputs[index]
        return UTXO(txid=self.txid, vout=index, value=out.value, scriptpubkey=out.script.hex())

    def unsigned_tx_hex(self) -> str:
        return self.tx.serialize(include_witness=False).hex()

    def signing_context(self) -> SigningContext:
        return SigningContext(
            version=self.tx.version,
            locktime=self.tx.locktime,
            outpoints=tuple(serialize_outpoint(i.txid, i.vout) for i in self.tx.inputs),
            sequences=tuple(i.sequence for i in self.tx.inputs),
            amounts=tuple(self._prevout(i).value for i in range(len(self.inputs))),
            scriptpubkeys=tuple(self._prevout(i).script for i in range(len(self.inputs))),
            outputs=tuple(self.tx.outputs),
        )

    def update_covenant_input(self, index: int, witness: list[bytes]) -> None:
        self.inputs[index].covenant_witness = list(witness)

    def combine(self, other: Psbt) -> Psbt:
        """Merge signatures and witnesses from another copy of the same transaction."""
        if self.unsigned_tx_hex() != other.unsigned_tx_hex():
            raise PsbtError("Cannot combine PSBTs of different transactions")

        for mine, theirs in zip(self.inputs, other.inputs):
            if mine.witness_utxo is None:
                mine.witness_utxo = theirs.witness_utxo
            mine.partial_sigs.update(theirs.partial_sigs)
            if theirs.tap_key_sig is not None:
                mine.tap_key_sig = theirs.tap_key_sig
            if theirs.covenant_witness is not None:
                mine.covenant_witness = theirs.covenant_witness
            if theirs.final_witness is not None and mine.final_witness is None:
                mine.final_witness = theirs.final_witness
        return self

    def finalize_input(self, index: int) -> None:
        """
        Assemble the final witness of one input.

        Key-path taproot inputs get [sig], segwit v0 inputs get [sig, pubkey],
        and any covenant witness is appended after the signature items.
        """
        meta = self.inputs[index]
        if meta.is_finalized:
            return

        stack: list[bytes] = []
        if meta.tap_key_sig is not None:
            stack.append(meta.tap_key_sig)
        elif meta.partial_sigs:
            pubkey, sig = next(iter(meta.partial_sigs.items()))
            stack.extend([sig, pubkey])

        if meta.covenant_witness:
            stack.extend(meta.covenant_witness)

        if not stack:
            raise PsbtError(f"Input {index} has neither a signature nor a covenant witness")

        meta.final_witness = stack
        meta.partial_sigs = {}
        meta.tap_key_sig = None
        meta.covenant_witness = None

    def finalize_inputs(self, indices: list[int]) -> Psbt:
        for index in indices:
            self.finalize_input(index)
        return self

    def finalize_all_inputs(self) -> Psbt:
        return self.finalize_inputs(list(range(len(self.inputs))))

    @property
    def is_finalized(self) -> bool:
        return all(meta.is_finalized for meta in self.inputs)

    def extract_transaction(self) -> RawTransaction:
        if not self.is_finalized:
            pending = [i for i, meta in enumerate(self.inputs) if not meta.is_finalized]
            raise PsbtError(f"Inputs not finalized: {pending}")
        return RawTransaction(
            version=self.tx.version,
            inputs=list(self.tx.inputs),
            outputs=list(self.tx.outputs),
            locktime=self.tx.locktime,
            witnesses=[list(meta.final_witness or []) for meta in self.inputs],
        )

    def extract_transaction_hex(self) -> str:
        return self.extract_transaction().hex()

    def vsize(self) -> int:
        return self.extract_transaction().vsize

    def to_bytes(self) -> bytes:
        result = PSBT_MAGIC
        unsigned_tx = self.tx.serialize(include_witness=False)
        result += _write_kv(bytes([PSBT_GLOBAL_UNSIGNED_TX]), unsigned_tx)
        result += b"\x00"

        for meta in self.inputs:
            if meta.witness_utxo is not None:
                result += _write_kv(bytes([PSBT_IN_WITNESS_UTXO]), meta.witness_utxo.serialize())
            for pubkey, sig in meta.partial_sigs.items():
                result += _write_kv(bytes([PSBT_IN_PARTIAL_SIG]) + pubkey, sig)
            if meta.tap_key_sig is not None:
                result += _write_kv(bytes([PSBT_IN_TAP_KEY_SIG]), meta.tap_key_sig)
            if meta.covenant_witness is not None:
                result += _write_kv(
                    _proprietary_key(PROPRIETARY_COVENANT_WITNESS),
                    serialize_witness(meta.covenant_witness),
                )
            if meta.final_witness is not None:
                result += _write_kv(
                    bytes([PSBT_IN_FINAL_SCRIPTWITNESS]), serialize_witness(meta.final_witness)
                )
            result += b"\x00"

        # Output maps carry no fields
        result += b"\x00" * len(self.tx.outputs)
        return result

    def to_hex(self) -> str:
        return self.to_bytes().hex()

    @classmethod
    def from_bytes(cls, data: bytes) -> Psbt:
        if not data.startswith(PSBT_MAGIC):
            raise PsbtError("Missing PSBT magic")

        try:
            global_map, offset = _read_map(data, len(PSBT_MAGIC))
            tx: RawTransaction | None = None
            for key, value in global_map:
                if key == bytes([PSBT_GLOBAL_UNSIGNED_TX]):
                    tx = RawTransaction.parse(value)
            if tx is None:
                raise PsbtError("PSBT has no unsigned transaction")
            if tx.has_witness:
                raise PsbtError("Unsigned transaction must not carry witnesses")

            inputs: list[PsbtInput] = []
            for _ in tx.inputs:
                entries, offset = _read_map(data, offset)
                inputs.append(cls._parse_input(entries))

            for _ in tx.outputs:
                _, offset = _read_map(data, offset)

        except PsbtError:
            raise
        except (IndexError, ValueError) as e:
            raise PsbtError(f"Failed to parse PSBT: {e}") from e

        return cls(tx, inputs)

    @staticmethod
    def _parse_input(entries: list[tuple[bytes, bytes]]) -> PsbtInput:
        meta = PsbtInput()
        for key, value in entries:
            key_type = key[0]
            if key_type == PSBT_IN_WITNESS_UTXO:
                amount = int.from_bytes(value[0:8], "little")
                script_len, pos = read_varint(value, 8)
                meta.witness_utxo = TxOutput(amount, value[pos : pos + script_len])
            elif key_type == PSBT_IN_PARTIAL_SIG:
                meta.partial_sigs[key[1:]] = value
            elif key_type == PSBT_IN_TAP_KEY_SIG:
                meta.tap_key_sig = value
            elif key_type == PSBT_IN_FINAL_SCRIPTWITNESS:
                meta.final_witness, _ = read_witness(value, 0)
            elif key == _proprietary_key(PROPRIETARY_COVENANT_WITNESS):
                meta.covenant_witness, _ = read_witness(value, 0)
        return meta

    @classmethod
    def from_hex(cls, psbt_hex: str) -> Psbt:
        try:
            data = bytes.fromhex(psbt_hex)
        except ValueError as e:
            raise PsbtError(f"Invalid PSBT hex: {e}") from e
        return cls.from_bytes(data)

    def copy(self) -> Psbt:
        return Psbt.from_bytes(self.to_bytes())
