"""
Automatic release eligibility rules for escrow holds.

The decision is a pure function of the escrow's status, deadlines and rating
so it can be evaluated concurrently by the scheduled pass and a manual
trigger and reach the same answer. Side effects (gateway calls, status
changes, notifications) belong to the caller.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from models import EscrowStatus, EscrowTransaction

DEFAULT_GRACE_PERIOD = timedelta(hours=24)

RELEASE_REASON_RATING = "automatic_release"
RELEASE_REASON_NO_RATING = "automatic_release_no_rating"

_SETTLED_STATUSES = frozenset({EscrowStatus.RELEASED, EscrowStatus.RESOLVED, EscrowStatus.REFUNDED})


class ReleaseOutcome(Enum):
    """Why an escrow was or was not released"""
    RELEASE_RATING_APPROVED = "release_rating_approved"
    RELEASE_NO_RATING = "release_no_rating"
    BLOCKED_DISPUTED = "blocked_disputed"
    BLOCKED_HOLD_WINDOW = "blocked_hold_window"
    MANUAL_REVIEW = "manual_review"
    AWAITING_RATING = "awaiting_rating"
    ALREADY_SETTLED = "already_settled"


@dataclass(frozen=True)
class ReleaseDecision:
    outcome: ReleaseOutcome

    @property
    def eligible(self) -> bool:
        return self.outcome in (ReleaseOutcome.RELEASE_RATING_APPROVED, ReleaseOutcome.RELEASE_NO_RATING)

    @property
    def release_reason(self) -> Optional[str]:
        if self.outcome == ReleaseOutcome.RELEASE_RATING_APPROVED:
            return RELEASE_REASON_RATING
        if self.outcome == ReleaseOutcome.RELEASE_NO_RATING:
            return RELEASE_REASON_NO_RATING
        return None

    @property
    def rating_approved(self) -> bool:
        return self.outcome == ReleaseOutcome.RELEASE_RATING_APPROVED

    @property
    def needs_manual_review(self) -> bool:
        return self.outcome == ReleaseOutcome.MANUAL_REVIEW


def evaluate_release(
    status: EscrowStatus,
    release_eligible_at: datetime,
    rating_received: bool,
    actual_rating: Optional[float],
    min_rating_required: float,
    now: datetime,
    grace_period: timedelta = DEFAULT_GRACE_PERIOD,
) -> ReleaseDecision:
    """
    Decide whether an escrow may be released automatically at ``now``.

    Order matters: an open dispute blocks release regardless of rating or
    time, and nothing releases inside the mandatory hold window. After the
    window a received rating decides on its own; without one the escrow waits
    out the grace period and is then released anyway.
    """
    if status == EscrowStatus.DISPUTED:
        return ReleaseDecision(ReleaseOutcome.BLOCKED_DISPUTED)
    if status in _SETTLED_STATUSES:
        return ReleaseDecision(ReleaseOutcome.ALREADY_SETTLED)
    if now < release_eligible_at:
        return ReleaseDecision(ReleaseOutcome.BLOCKED_HOLD_WINDOW)

    if rating_received:
        if actual_rating is not None and actual_rating >= min_rating_required:
            return ReleaseDecision(ReleaseOutcome.RELEASE_RATING_APPROVED)
        return ReleaseDecision(ReleaseOutcome.MANUAL_REVIEW)

    if now >= release_eligible_at + grace_period:
        return ReleaseDecision(ReleaseOutcome.RELEASE_NO_RATING)
    return ReleaseDecision(ReleaseOutcome.AWAITING_RATING)


def evaluate_escrow(
    escrow: EscrowTransaction, now: datetime, grace_period: timedelta = DEFAULT_GRACE_PERIOD
) -> ReleaseDecision:
    return evaluate_release(
        status=escrow.status,
        release_eligible_at=escrow.release_eligible_at,
        rating_received=escrow.rating_received,
        actual_rating=escrow.actual_rating,
        min_rating_required=escrow.min_rating_required,
        now=now,
        grace_period=grace_period,
    )


def is_auto_release_eligible(
    escrow: EscrowTransaction, now: datetime, grace_period: timedelta = DEFAULT_GRACE_PERIOD
) -> bool:
    return evaluate_escrow(escrow, now, grace_period).eligible
