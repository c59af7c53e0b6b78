"""Error taxonomy shared by the core services.

Business-rule failures (insufficient credits, disabled preferences, decided
approvals) are plain return values and never appear here.
"""

from __future__ import annotations


class InvitationEconomyError(Exception):
    """Base class for infrastructure and integrity failures."""

    retryable: bool = False


class StoreUnavailableError(InvitationEconomyError):
    """The datastore failed or timed out; the transaction was rolled back."""

    retryable = True


class LedgerIntegrityError(InvitationEconomyError):
    """A ledger invariant was observed broken. Indicates a bug."""
