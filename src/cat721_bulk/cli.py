"""
Command-line interface for CAT-721 bulk transfers.
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Annotated

import typer
from loguru import logger
from pydantic import ValidationError

from cat721_bulk.backends.mempool import MempoolBackend
from cat721_bulk.batch import BatchReport, BatchRunner, load_fee_signer
from cat721_bulk.config import NetworkType, TransferConfig
from cat721_bulk.constants import DEFAULT_MEMPOOL_URL
from cat721_bulk.covenant import HashGuardEngine
from cat721_bulk.errors import BulkTransferError
from cat721_bulk.keys import init_ecc
from cat721_bulk.tracker import TrackerClient

app = typer.Typer(
    name="cat721-bulk-transfer",
    help="Bulk transfer CAT-721 NFTs",
    add_completion=False,
)


def setup_logging(level: str) -> None:
    """Configure loguru logging; all status goes to stdout."""
    logger.remove()
    logger.add(
        sys.stdout,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )


@app.command()
def transfer(
    source_file: Annotated[
        Path,
        typer.Option(
            "--source-file",
            "-s",
            envvar="SOURCE_FILE",
            help="Source file of address,wif,localId,destAddress lines",
        ),
    ],
    collection_id: Annotated[
        str, typer.Option("--collection-id", "-c", envvar="COLLECTION_ID", help="Collection id")
    ],
    tracker_host: Annotated[
        str, typer.Option("--tracker-host", "-t", envvar="TRACKER_HOST", help="Tracker host URL")
    ],
    fee_wif: Annotated[
        str, typer.Option("--fee-wif", "-w", envvar="FEE_WIF", help="WIF of the fee payer key")
    ],
    fee_rate: Annotated[
        float, typer.Option("--fee-rate", "-f", envvar="FEE_RATE", help="Fee rate in sat/vB")
    ] = 1.0,
    network: Annotated[
        str, typer.Option("--network", envvar="NETWORK", help="Bitcoin network")
    ] = "mainnet",
    mempool_url: Annotated[
        str, typer.Option("--mempool-url", envvar="MEMPOOL_URL", help="Mempool REST API root")
    ] = DEFAULT_MEMPOOL_URL,
    log_level: Annotated[str, typer.Option("--log-level", "-l", help="Log level")] = "INFO",
) -> None:
    """Transfer every NFT listed in the source file, one fee bullet each."""
    setup_logging(log_level)

    try:
        network_type = NetworkType(network)
    except ValueError:
        logger.error(f"Invalid network: {network}")
        raise typer.Exit(1)

    try:
        config = TransferConfig(
            source_file=source_file,
            collection_id=collection_id,
            tracker_host=tracker_host,
            fee_wif=fee_wif,
            fee_rate=fee_rate,
            network=network_type,
            mempool_url=mempool_url,
        )
    except ValidationError as e:
        logger.error(f"Invalid configuration: {e}")
        raise typer.Exit(1)

    try:
        asyncio.run(_run_batch(config))
    except BulkTransferError as e:
        logger.error(f"Batch failed: {e}")
        raise typer.Exit(1)


async def _run_batch(config: TransferConfig) -> BatchReport:
    """Run one batch against the configured tracker and mempool backend."""
    context = init_ecc()
    fee_signer = load_fee_signer(config.fee_wif, context, config.network.value)

    backend = MempoolBackend(config.mempool_url, timeout=config.http_timeout)
    tracker = TrackerClient(config.tracker_host, timeout=config.http_timeout)
    runner = BatchRunner(
        config,
        tracker=tracker,
        utxo_provider=backend,
        chain=backend,
        engine=HashGuardEngine(config.collection_id),
        fee_signer=fee_signer,
        context=context,
    )

    try:
        return await runner.run()
    finally:
        await tracker.close()
        await backend.close()


def main() -> None:
    """Entry point."""
    app()


if __name__ == "__main__":
    main()
