"""
cat721-bulk: bulk transfer of CAT-721 NFTs.

Each transfer is a guard transaction followed by a send transaction, funded
by one output of a fee fan-out transaction.
"""

__version__ = "0.1.0"
