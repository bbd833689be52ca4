from .exceptions import (
    ChainCallError,
    DatabaseError,
    EscrowError,
    FiatProviderError,
    InvalidTransitionError,
    NotFoundError,
    StaleStateError,
    UnauthorizedError,
    ValidationError,
)
from .models import (
    ActorKind,
    ActorProof,
    Escrow,
    EscrowDraft,
    EscrowStatus,
    FundingSource,
    TERMINAL_STATUSES,
    Transition,
    TransitionResult,
)

__all__ = [
    'ActorKind',
    'ActorProof',
    'ChainCallError',
    'DatabaseError',
    'Escrow',
    'EscrowDraft',
    'EscrowError',
    'EscrowStatus',
    'FiatProviderError',
    'FundingSource',
    'InvalidTransitionError',
    'NotFoundError',
    'StaleStateError',
    'TERMINAL_STATUSES',
    'Transition',
    'TransitionResult',
    'UnauthorizedError',
    'ValidationError',
]
