"""
Batch runner: resolve descriptors, fan out fees, run transfers concurrently.

The sequential phase resolves every descriptor, splits the fee payer's coins
into one bullet per resolved descriptor and waits for that split to confirm.
The concurrent phase then runs one transfer per descriptor; a failing
transfer never affects its siblings.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from coincurve import Context
from loguru import logger

from cat721_bulk.backends.base import UTXO, ChainProvider, UtxoProvider
from cat721_bulk.config import TransferConfig
from cat721_bulk.constants import CONFIRMATION_POLL_INTERVAL
from cat721_bulk.covenant import CovenantEngine
from cat721_bulk.errors import (
    AssetNotFound,
    CollectionNotFound,
    InvalidKeyError,
    InvalidSourceAddress,
    NetworkError,
    SourceFileError,
)
from cat721_bulk.keys import AddressMatch, AddressType, KeyPair
from cat721_bulk.models import CollectionInfo, TransferDescriptor
from cat721_bulk.signer import KeySigner
from cat721_bulk.splitter import split_fees
from cat721_bulk.tracker import TrackerClient
from cat721_bulk.transfer import AssetTransfer

SOURCE_FIELDS = 4


def load_sources(path: Path) -> list[TransferDescriptor]:
    """
    Parse a source file of `address,wif,localId,destAddress` lines.

    Blank lines are skipped; any other line must have exactly four fields.
    """
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SourceFileError(f"error loading source file: {e}") from e

    descriptors: list[TransferDescriptor] = []
    for line_no, line in enumerate(content.splitlines(), start=1):
        if not line.strip():
            continue
        fields = [f.strip() for f in line.split(",")]
        if len(fields) != SOURCE_FIELDS:
            raise SourceFileError(
                f"error loading source file: line {line_no} has {len(fields)} fields, "
                f"expected {SOURCE_FIELDS}"
            )
        address, wif, local_id, dest_address = fields
        descriptors.append(TransferDescriptor(address, wif, local_id, dest_address))
    return descriptors


def load_fee_signer(
    wif: str, context: Context | None = None, network: str = "mainnet"
) -> KeySigner:
    try:
        key = KeyPair.from_wif(wif, context)
    except InvalidKeyError as e:
        raise InvalidKeyError(f"invalid fee wif: {e}") from e
    return KeySigner(key, AddressType.P2TR, network)


def resolve_signer(
    descriptor: TransferDescriptor, context: Context | None = None, network: str = "mainnet"
) -> KeySigner:
    """Signer for the descriptor's key in whichever address form matches its address."""
    key = KeyPair.from_wif(descriptor.wif, context)
    match = key.match_address(descriptor.address, network)
    if match == AddressMatch.P2TR:
        return KeySigner(key, AddressType.P2TR, network)
    if match == AddressMatch.P2WPKH:
        return KeySigner(key, AddressType.P2WPKH, network)
    raise InvalidSourceAddress(f"invalid source address: {descriptor.address}")


async def wait_for_confirmation(
    txid: str, chain: ChainProvider, interval: float = CONFIRMATION_POLL_INTERVAL
) -> None:
    """Poll until `txid` has at least one confirmation. No timeout."""
    while True:
        logger.info("  waiting for confirmation...")
        await asyncio.sleep(interval)
        if await chain.get_confirmations(txid) >= 1:
            return


class OutcomeStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"


@dataclass
class TransferOutcome:
    local_id: str
    status: OutcomeStatus
    txid: str | None = None
    error: str | None = None


@dataclass
class BatchReport:
    aborted: str | None = None
    split_txid: str | None = None
    outcomes: list[TransferOutcome] = field(default_factory=list)

    @property
    def sent(self) -> list[TransferOutcome]:
        return [o for o in self.outcomes if o.status == OutcomeStatus.SENT]

    @property
    def failed(self) -> list[TransferOutcome]:
        return [o for o in self.outcomes if o.status == OutcomeStatus.FAILED]


class BatchRunner:
    """Runs one batch of transfers described by a source file."""

    def __init__(
        self,
        config: TransferConfig,
        tracker: TrackerClient,
        utxo_provider: UtxoProvider,
        chain: ChainProvider,
        engine: CovenantEngine,
        fee_signer: KeySigner,
        context: Context | None = None,
    ):
        self.config = config
        self.tracker = tracker
        self.utxo_provider = utxo_provider
        self.chain = chain
        self.engine = engine
        self.fee_signer = fee_signer
        self.context = context
        self.network = config.network.value

    def _abort(self, report: BatchReport, reason: str) -> BatchReport:
        logger.info(f"exit: {reason}")
        report.aborted = reason
        return report

    async def run(self) -> BatchReport:
        report = BatchReport()

        try:
            collection = await self.load_collection()
        except CollectionNotFound as e:
            return self._abort(report, str(e))
        logger.info(f"collection: {collection.metadata.name} ({collection.metadata.symbol})")
        logger.info(f"  minter: {collection.minter_addr}")

        fee_address = await self.fee_signer.get_address()
        fee_utxos = await self.utxo_provider.get_utxos(fee_address)
        balance = sum(u.value for u in fee_utxos)
        logger.info(f"fee address: {fee_address}")
        logger.info(f"  utxos: {len(fee_utxos)}, balance: {balance} sats")
        if balance < 1:
            return self._abort(report, "insufficient fee balance")

        try:
            descriptors = load_sources(self.config.source_file)
        except SourceFileError as e:
            return self._abort(report, str(e))
        logger.info(f"sources: {len(descriptors)}")
        for d in descriptors:
            logger.info(f"  {d.address} #{d.local_id} -> {d.dest_address}")

        await self.prepare_sources(descriptors)
        resolved = [d for d in descriptors if d.is_resolved]
        logger.info(f"nft utxos loaded: {len(resolved)}/{len(descriptors)}")
        if not resolved:
            return self._abort(report, "no nft utxos loaded")

        bullet_value = self.config.bullet_value
        required = bullet_value * len(resolved)
        funding = await self.utxo_provider.get_utxos(fee_address, min_total_value=required)
        if not funding:
            return self._abort(
                report, f"insufficient fee balance: {balance} sats, need {required} sats"
            )

        split = await split_fees(
            funding,
            bullet_value,
            len(resolved),
            self.config.fee_rate,
            self.fee_signer,
            self.chain,
            self.config.dust_limit,
        )
        report.split_txid = split.txid
        logger.info(f"split fees: {split.txid}")

        await wait_for_confirmation(split.txid, self.chain, self.config.confirmation_poll_interval)
        logger.info("fees are confirmed and now transfer:")

        results = await asyncio.gather(
            *(
                self.transfer_one(descriptor, collection.minter_addr, bullet)
                for descriptor, bullet in zip(resolved, split.bullets)
            )
        )
        by_descriptor = {id(d): outcome for d, outcome in zip(resolved, results)}

        for d in descriptors:
            outcome = by_descriptor.get(id(d))
            if outcome is None:
                outcome = TransferOutcome(d.local_id, OutcomeStatus.FAILED, error=d.error)
            report.outcomes.append(outcome)

        logger.info(f"done: {len(report.sent)} sent, {len(report.failed)} failed")
        return report

    async def load_collection(self) -> CollectionInfo:
        collection = await self.tracker.get_collection_info(self.config.collection_id)
        if collection is None:
            raise CollectionNotFound(f"collection {self.config.collection_id} not found")
        return collection

    async def prepare_sources(self, descriptors: list[TransferDescriptor]) -> None:
        """Resolve asset and signer for each descriptor; failures mark only that descriptor."""
        for d in descriptors:
            try:
                d.asset = await self.tracker.get_asset_utxo(self.config.collection_id, d.local_id)
                if d.asset is None:
                    raise AssetNotFound(f"nft utxo #{d.local_id} not found")
                d.signer = resolve_signer(d, self.context, self.network)
            except (AssetNotFound, InvalidSourceAddress, InvalidKeyError, NetworkError) as e:
                d.error = str(e)
                logger.warning(f"  {d.local_id}: [skipped] {e}")

    async def transfer_one(
        self, descriptor: TransferDescriptor, minter_addr: str, bullet: UTXO
    ) -> TransferOutcome:
        if descriptor.asset is None or descriptor.signer is None:
            return TransferOutcome(
                descriptor.local_id, OutcomeStatus.FAILED, error="nft utxo not loaded"
            )

        transfer = AssetTransfer(
            asset=descriptor.asset,
            minter_addr=minter_addr,
            asset_signer=descriptor.signer,
            dest_address=descriptor.dest_address,
            fee_utxo=bullet,
            fee_signer=self.fee_signer,
            fee_rate=self.config.fee_rate,
            chain=self.chain,
            engine=self.engine,
        )
        try:
            result = await transfer.run()
        except Exception as e:
            # One transfer failing must not cancel its siblings in gather
            logger.error(f"  {descriptor.local_id}: [failed] {e}")
            return TransferOutcome(descriptor.local_id, OutcomeStatus.FAILED, error=str(e))

        logger.info(f"  {descriptor.local_id}: {result.send_txid}")
        return TransferOutcome(descriptor.local_id, OutcomeStatus.SENT, txid=result.send_txid)
