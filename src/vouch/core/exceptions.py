"""Error taxonomy for the escrow lifecycle."""

from typing import Optional


class EscrowError(Exception):
    """Base class. ``public_message`` is safe to show to callers; ``detail`` is for logs."""

    public_message = "Request failed"
    retryable = False

    def __init__(self, detail: Optional[str] = None, public_message: Optional[str] = None):
        self.detail = detail
        if public_message:
            self.public_message = public_message
        super().__init__(detail or self.public_message)


class ValidationError(EscrowError):
    public_message = "Invalid request"


class NotFoundError(EscrowError):
    public_message = "Escrow not found"


class UnauthorizedError(EscrowError):
    public_message = "Not authorized for this escrow"


class InvalidTransitionError(EscrowError):
    public_message = "Action not allowed in the current escrow state"

    def __init__(self, escrow_id: str, transition: str, status: str):
        self.escrow_id = escrow_id
        self.transition = transition
        self.status = status
        super().__init__(f"{transition} not permitted from {status} (escrow {escrow_id})")


class StaleStateError(EscrowError):
    """Compare-and-set lost a race; reload and retry."""

    public_message = "Escrow changed concurrently, please retry"
    retryable = True

    def __init__(self, escrow_id: str, expected: str, actual: Optional[str]):
        self.escrow_id = escrow_id
        self.expected = expected
        self.actual = actual
        super().__init__(f"escrow {escrow_id} expected {expected}, found {actual}")


class ChainCallError(EscrowError):
    """Ledger call failed for a reason other than 'already applied'."""

    public_message = "On-chain settlement pending"
    retryable = True

    def __init__(self, operation: str, ledger_escrow_id: Optional[int], reason: str,
                 tx_hash: Optional[str] = None):
        self.operation = operation
        self.ledger_escrow_id = ledger_escrow_id
        self.reason = reason
        # Set when the transaction was submitted but its outcome is unknown.
        self.tx_hash = tx_hash
        super().__init__(f"ledger {operation} failed for escrow {ledger_escrow_id}: {reason}")


class FiatProviderError(EscrowError):
    public_message = "Payment provider unavailable"


class DatabaseError(Exception):
    """Custom database exception."""
    pass


class ConnectionPoolError(DatabaseError):
    """Connection pool related errors."""
    pass
