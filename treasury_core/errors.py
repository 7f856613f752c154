"""
Error Taxonomy

Business and integration errors raised by the treasury engine. All of them
derive from ValueError so callers written against plain ``ValueError`` keep
working. ``retryable`` tells the job queue whether a failed job may be tried
again.
"""

from typing import Iterable, Optional, Tuple


class TreasuryError(ValueError):
    """Base class for treasury engine errors"""
    retryable = False


class InsufficientFunds(TreasuryError):
    """A guarded decrement found the balance below the requested amount"""

    def __init__(self, resource: str, resource_id: str, requested: int, available: Optional[int] = None):
        self.resource = resource
        self.resource_id = resource_id
        self.requested = requested
        self.available = available
        message = f"Insufficient funds on {resource} {resource_id}: requested {requested}"
        if available is not None:
            message += f", available {available}"
        super().__init__(message)


class PolicyViolation(TreasuryError):
    """One or more transfer policies block the debit"""

    CALENDAR = "calendar"
    SPEND_LIMIT = "spend_limit"
    INVOICE = "invoice"
    ALLOCATION = "allocation"

    def __init__(self, kinds: Iterable[str], message: Optional[str] = None):
        self.kinds: Tuple[str, ...] = tuple(kinds)
        super().__init__(message or f"Transfer blocked by policy: {', '.join(self.kinds)}")


class DuplicateTransferAttempt(TreasuryError):
    """An identical transfer was submitted moments ago, or the idempotency key was reused"""

    def __init__(self, message: str, existing_reference: Optional[str] = None):
        self.existing_reference = existing_reference
        super().__init__(message)


class ProviderUnavailable(TreasuryError):
    """An external provider could not be reached or failed server-side"""
    retryable = True


class InvalidAccount(TreasuryError):
    """The bank-verification provider rejected the account details"""


class EntryNotFound(TreasuryError):
    """No wallet entry exists for a settlement reference"""
    retryable = True

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"Wallet entry not found for reference {reference}")


class OrganizationOrBudgetNotFound(TreasuryError):
    """A wallet, budget, project or organization lookup missed"""
    retryable = True

    def __init__(self, resource: str, resource_id: str):
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource.capitalize()} {resource_id} not found")


class UnexpectedSettlementStatus(TreasuryError):
    """A settlement event carried a status outside the known set"""

    def __init__(self, status: str, reference: Optional[str] = None):
        self.status = status
        self.reference = reference
        super().__init__(f"Unexpected settlement status {status!r} for reference {reference}")


class BudgetStateError(TreasuryError):
    """Illegal budget lifecycle transition"""


class UnauthorizedBudgetAccess(TreasuryError):
    """The requester is not a beneficiary of the budget"""


class ApprovalError(TreasuryError):
    """Illegal approval rule or review operation"""
