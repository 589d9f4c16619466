"""
Chain backends.
"""

from cat721_bulk.backends.base import UTXO, ChainProvider, UtxoProvider
from cat721_bulk.backends.mempool import MempoolBackend

__all__ = ["UTXO", "ChainProvider", "UtxoProvider", "MempoolBackend"]
