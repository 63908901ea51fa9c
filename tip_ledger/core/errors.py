"""
Ledger error taxonomy.

Every error except VerificationStorageError aborts the triggering
action before a ledger entry is written.
"""

from typing import Optional


class LedgerError(Exception):
    """Base class for ledger, escrow and verification failures."""


class InvalidAmountError(LedgerError, ValueError):
    """Amount is not a valid integer count of minor currency units."""


class InsufficientFundsError(LedgerError):
    """Spendable balance does not cover the requested amount."""
    def __init__(self, message: str, available: Optional[int] = None, requested: Optional[int] = None):
        super().__init__(message)
        self.available = available
        self.requested = requested


class InsufficientEscrowError(LedgerError):
    """Escrow balance does not cover the requested payout."""
    def __init__(self, message: str, available: Optional[int] = None, requested: Optional[int] = None):
        super().__init__(message)
        self.available = available
        self.requested = requested


class DuplicateSettlementError(LedgerError):
    """An external payment reference already produced a TOP_UP entry."""
    def __init__(self, message: str, provider_reference: str, existing_entry_id: Optional[str] = None):
        super().__init__(message)
        self.provider_reference = provider_reference
        self.existing_entry_id = existing_entry_id


class UnresolvedPayeeError(LedgerError):
    """Ownership percentages cannot be normalized (e.g. all zero)."""


class TipNotActiveError(LedgerError):
    """Refund requested for a tip that is unknown, foreign or already refunded."""


class UnknownAccountError(LedgerError):
    pass


class UnknownContentError(LedgerError):
    pass


class LedgerInvariantError(LedgerError):
    """Computed snapshots break the fixed sign rule of the transaction type."""


class VerificationStorageError(LedgerError):
    """Verification hash could not be written. Logged, never fatal to a ledger write."""
