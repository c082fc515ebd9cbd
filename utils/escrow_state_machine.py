#!/usr/bin/env python3
"""
Escrow State Machine
Valid status transitions for escrow holds and payments
"""

import logging
from typing import Dict, FrozenSet, Optional, Set

from models import EscrowStatus, PaymentStatus

logger = logging.getLogger(__name__)


# Escrows an operator may release by hand
MANUAL_RELEASE_STATUSES: FrozenSet[EscrowStatus] = frozenset(
    {EscrowStatus.HELD, EscrowStatus.APPROVED}
)

# Escrows the automatic release job considers
AWAITING_RELEASE_STATUSES: FrozenSet[EscrowStatus] = frozenset(
    {EscrowStatus.HELD, EscrowStatus.PENDING_RATING, EscrowStatus.APPROVED}
)

# Escrows that may still be pulled into a dispute or refunded
OPEN_STATUSES: FrozenSet[EscrowStatus] = AWAITING_RELEASE_STATUSES


class EscrowStateValidator:
    """Validates escrow status transitions and prevents invalid changes"""

    VALID_TRANSITIONS: Dict[Optional[EscrowStatus], Set[EscrowStatus]] = {
        # Creation
        None: {EscrowStatus.HELD},
        # Awaiting release
        EscrowStatus.HELD: {
            EscrowStatus.PENDING_RATING,  # Window passed without a rating
            EscrowStatus.APPROVED,  # Rating at or above threshold
            EscrowStatus.RELEASED,
            EscrowStatus.DISPUTED,
            EscrowStatus.REFUNDED,
        },
        EscrowStatus.PENDING_RATING: {
            EscrowStatus.HELD,  # Low rating sends it back for review
            EscrowStatus.APPROVED,
            EscrowStatus.RELEASED,
            EscrowStatus.DISPUTED,
            EscrowStatus.REFUNDED,
        },
        EscrowStatus.APPROVED: {
            EscrowStatus.RELEASED,
            EscrowStatus.DISPUTED,
            EscrowStatus.REFUNDED,
        },
        # Dispute resolution
        EscrowStatus.DISPUTED: {
            EscrowStatus.RESOLVED,  # Resolved in the payee's favour
            EscrowStatus.REFUNDED,  # Resolved in the payer's favour
        },
        # Terminal states (no transitions allowed)
        EscrowStatus.RELEASED: set(),
        EscrowStatus.RESOLVED: set(),
        EscrowStatus.REFUNDED: set(),
    }

    @classmethod
    def is_valid_transition(
        cls, current_status: Optional[EscrowStatus], new_status: EscrowStatus
    ) -> bool:
        return new_status in cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def get_valid_transitions(cls, current_status: Optional[EscrowStatus]) -> Set[EscrowStatus]:
        """Get all valid next states for current status"""
        return set(cls.VALID_TRANSITIONS.get(current_status, set()))

    @classmethod
    def is_terminal_state(cls, status: EscrowStatus) -> bool:
        """Check if status is terminal (no further transitions)"""
        return len(cls.VALID_TRANSITIONS.get(status, set())) == 0


class PaymentStateValidator:
    """Payment transitions: pending settles once, confirmed may be refunded"""

    VALID_TRANSITIONS: Dict[PaymentStatus, Set[PaymentStatus]] = {
        PaymentStatus.PENDING: {PaymentStatus.CONFIRMED, PaymentStatus.FAILED},
        PaymentStatus.CONFIRMED: {PaymentStatus.REFUNDED},
        PaymentStatus.FAILED: set(),
        PaymentStatus.REFUNDED: set(),
    }

    @classmethod
    def is_valid_transition(cls, current_status: PaymentStatus, new_status: PaymentStatus) -> bool:
        return new_status in cls.VALID_TRANSITIONS.get(current_status, set())
