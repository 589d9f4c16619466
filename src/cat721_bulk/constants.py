"""
CAT-721 protocol and fee constants.

Postage values and the input ceiling mirror the CAT protocol SDK so that the
transactions built here are accepted by the same covenant scripts.
"""

from __future__ import annotations

# Standard P2PKH dust limit in Bitcoin Core; outputs below this are non-standard
DUST_LIMIT = 546  # satoshis

# Value locked in each covenant-carrying output
GUARD_POSTAGE = 332
TOKEN_POSTAGE = 330

# Hard ceiling on inputs per covenant transaction (assets + guard + fee)
MAX_INPUT = 6

# Worst-case vsize of one guard + send pair; one fee bullet covers this much
DEFAULT_VBYTES_PER_TRANSFER = 2900

# Seconds between confirmation polls for the fee split transaction
CONFIRMATION_POLL_INTERVAL = 15.0

# Value of the synthetic funding input used when probing transaction sizes
DUMMY_FUNDING_VALUE = 21_000_000 * 100_000_000

DEFAULT_MEMPOOL_URL = "https://mempool.fractalbitcoin.io"
