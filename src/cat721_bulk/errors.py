"""
Error taxonomy for bulk transfers.
"""

from __future__ import annotations


class BulkTransferError(Exception):
    pass


class InsufficientFunds(BulkTransferError):
    """Funding input cannot cover outputs plus fee."""


class InsufficientProbeFunds(BulkTransferError):
    """The synthetic funding input cannot cover a probe transaction."""


class TooManyInputs(BulkTransferError):
    pass


class InvalidSourceAddress(BulkTransferError):
    """Neither derived address form matches the declared owner address."""


class InvalidKeyError(BulkTransferError):
    pass


class CollectionNotFound(BulkTransferError):
    pass


class AssetNotFound(BulkTransferError):
    pass


class NetworkError(BulkTransferError):
    """Transport failure talking to the tracker or the chain backend."""


class SourceFileError(BulkTransferError):
    pass


class CovenantError(BulkTransferError):
    """The covenant engine refused to build an unlock."""


class PsbtError(BulkTransferError):
    pass


class SigningError(BulkTransferError):
    pass
