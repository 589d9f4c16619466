"""
Tests for the command-line entry point.
"""

from __future__ import annotations

import sys
from unittest.mock import AsyncMock, patch

import pytest
from loguru import logger
from typer.testing import CliRunner

from cat721_bulk.batch import BatchReport
from cat721_bulk.cli import app
from cat721_bulk.config import NetworkType
from cat721_bulk.errors import CollectionNotFound

runner = CliRunner()

WIF = "KwDiBf89QgGbjEhKnhXJuH7LrciVrZi3qYjgd9M7rFU73sVHnoWn"
ARGS = [
    "--source-file",
    "sources.csv",
    "--collection-id",
    "ab" * 32 + "_0",
    "--tracker-host",
    "http://tracker.test",
    "--fee-wif",
    WIF,
]


@pytest.fixture(autouse=True)
def reset_logger():
    yield
    logger.remove()
    logger.add(sys.stderr)


def test_help() -> None:
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    assert "--source-file" in result.output
    assert "--fee-rate" in result.output


def test_missing_required_option() -> None:
    result = runner.invoke(app, ARGS[:-2])
    assert result.exit_code == 2


def test_options_build_config() -> None:
    with patch("cat721_bulk.cli._run_batch", new=AsyncMock(return_value=BatchReport())) as run:
        result = runner.invoke(app, [*ARGS, "--fee-rate", "2.5", "--network", "testnet"])

    assert result.exit_code == 0, result.output
    config = run.call_args.args[0]
    assert config.fee_rate == 2.5
    assert config.network == NetworkType.TESTNET
    assert config.collection_id == "ab" * 32 + "_0"


def test_environment_variables() -> None:
    env = {
        "SOURCE_FILE": "batch.csv",
        "COLLECTION_ID": "cd" * 32 + "_0",
        "TRACKER_HOST": "http://tracker.env/",
        "FEE_WIF": WIF,
        "FEE_RATE": "3",
    }
    with patch("cat721_bulk.cli._run_batch", new=AsyncMock(return_value=BatchReport())) as run:
        result = runner.invoke(app, [], env=env)

    assert result.exit_code == 0, result.output
    config = run.call_args.args[0]
    assert str(config.source_file) == "batch.csv"
    assert config.tracker_host == "http://tracker.env"
    assert config.fee_rate == 3.0


def test_invalid_fee_rate() -> None:
    with patch("cat721_bulk.cli._run_batch", new=AsyncMock()) as run:
        result = runner.invoke(app, [*ARGS, "--fee-rate", "0"])

    assert result.exit_code == 1
    run.assert_not_called()


def test_invalid_network() -> None:
    result = runner.invoke(app, [*ARGS, "--network", "moon"])
    assert result.exit_code == 1
    assert "Invalid network" in result.output


def test_aborted_batch_exits_cleanly() -> None:
    report = BatchReport(aborted="no nft utxos loaded")
    with patch("cat721_bulk.cli._run_batch", new=AsyncMock(return_value=report)):
        result = runner.invoke(app, ARGS)
    assert result.exit_code == 0


def test_batch_error_exits_nonzero() -> None:
    failing = AsyncMock(side_effect=CollectionNotFound("boom"))
    with patch("cat721_bulk.cli._run_batch", new=failing):
        result = runner.invoke(app, ARGS)

    assert result.exit_code == 1
    assert "Batch failed: boom" in result.output
