"""
Auction state machine.

Every status change of an auction goes through :func:`fire`, which looks the
event up in the transition table, checks the event's guard and only then moves
the auction to its new status. Side effects (payment windows, notifications)
belong to the callers; this module never touches the session.
"""
from enum import Enum

from bidhouse.errors import InvalidStateTransition, NotAuthorized
from bidhouse.models import AuctionStatus, PaymentStatus


class AuctionEvent(str, Enum):
    SUBMIT_FOR_REVIEW = 'submit_for_review'
    MODERATOR_APPROVE = 'moderator_approve'
    WINDOW_OPENED = 'window_opened'
    CLOSING_SWEEP_NO_BIDS = 'closing_sweep_no_bids'
    CLOSING_SWEEP_RESERVE_MET = 'closing_sweep_reserve_met'
    CLOSING_SWEEP_BELOW_RESERVE = 'closing_sweep_below_reserve'
    SELLER_ACCEPTS = 'seller_accepts'
    SELLER_VOIDS = 'seller_voids'
    PAYMENT_COMPLETED = 'payment_completed'
    PAYMENT_FAILED_RESERVE_MET = 'payment_failed_reserve_met'
    PAYMENT_FAILED_BELOW_RESERVE = 'payment_failed_below_reserve'
    SELLER_SUBMITS_TRACKING = 'seller_submits_tracking'


TRANSITIONS = {
    (AuctionStatus.DRAFT, AuctionEvent.SUBMIT_FOR_REVIEW): AuctionStatus.PENDING_REVIEW,
    (AuctionStatus.PENDING_REVIEW, AuctionEvent.MODERATOR_APPROVE): AuctionStatus.ACTIVE,
    (AuctionStatus.PENDING_REVIEW, AuctionEvent.WINDOW_OPENED): AuctionStatus.ACTIVE,
    (AuctionStatus.ACTIVE, AuctionEvent.CLOSING_SWEEP_NO_BIDS): AuctionStatus.ENDED,
    (AuctionStatus.ACTIVE, AuctionEvent.CLOSING_SWEEP_RESERVE_MET): AuctionStatus.ENDED,
    (AuctionStatus.ACTIVE, AuctionEvent.CLOSING_SWEEP_BELOW_RESERVE): AuctionStatus.PENDING_SELLER_DECISION,
    (AuctionStatus.PENDING_SELLER_DECISION, AuctionEvent.SELLER_ACCEPTS): AuctionStatus.ENDED,
    (AuctionStatus.PENDING_SELLER_DECISION, AuctionEvent.SELLER_VOIDS): AuctionStatus.VOIDED,
    (AuctionStatus.ENDED, AuctionEvent.PAYMENT_COMPLETED): AuctionStatus.PENDING_FULFILLMENT,
    (AuctionStatus.ENDED, AuctionEvent.PAYMENT_FAILED_RESERVE_MET): AuctionStatus.ENDED,
    (AuctionStatus.ENDED, AuctionEvent.PAYMENT_FAILED_BELOW_RESERVE): AuctionStatus.PENDING_SELLER_DECISION,
    (AuctionStatus.PENDING_FULFILLMENT, AuctionEvent.SELLER_SUBMITS_TRACKING): AuctionStatus.FULFILLED,
}

TERMINAL_STATUSES = frozenset({AuctionStatus.FULFILLED, AuctionStatus.VOIDED})

CLOSING_EVENTS = frozenset({
    AuctionEvent.CLOSING_SWEEP_NO_BIDS,
    AuctionEvent.CLOSING_SWEEP_RESERVE_MET,
    AuctionEvent.CLOSING_SWEEP_BELOW_RESERVE,
})

SELLER_EVENTS = frozenset({
    AuctionEvent.SUBMIT_FOR_REVIEW,
    AuctionEvent.SELLER_ACCEPTS,
    AuctionEvent.SELLER_VOIDS,
    AuctionEvent.SELLER_SUBMITS_TRACKING,
})

PAYMENT_EVENTS = frozenset({
    AuctionEvent.PAYMENT_COMPLETED,
    AuctionEvent.PAYMENT_FAILED_RESERVE_MET,
    AuctionEvent.PAYMENT_FAILED_BELOW_RESERVE,
})

UNPAID = frozenset({PaymentStatus.PENDING, PaymentStatus.PROCESSING})


def next_status(status, event):
    """Returns the target status for ``event`` or None when the pair is illegal."""
    return TRANSITIONS.get((AuctionStatus(status), AuctionEvent(event)))


def can_fire(auction, event):
    return next_status(auction.status, event) is not None


def check_guard(auction, event, now=None, actor=None):
    """Raises when the guard of ``event`` does not hold for ``auction``."""
    if event in CLOSING_EVENTS:
        if now is None or not now > auction.end_date:
            raise InvalidStateTransition(auction.id, auction.status.value, event.value, 'auction has not ended yet')

    if event in SELLER_EVENTS:
        actor_id = getattr(actor, 'id', actor)
        if actor_id != auction.seller_id:
            raise NotAuthorized(f"Only the seller of auction {auction.id} can {event.value.replace('_', ' ')}")

    if event is AuctionEvent.MODERATOR_APPROVE:
        if actor is None or not getattr(actor, 'is_admin', False):
            raise NotAuthorized(f"Only a moderator can approve auction {auction.id}")
        if now is not None and now > auction.end_date:
            raise InvalidStateTransition(auction.id, auction.status.value, event.value, 'auction window has passed')

    if event is AuctionEvent.WINDOW_OPENED:
        if not auction.approved:
            raise InvalidStateTransition(auction.id, auction.status.value, event.value, 'auction is not approved')
        if now is None or not auction.start_date <= now <= auction.end_date:
            raise InvalidStateTransition(auction.id, auction.status.value, event.value, 'auction window is not open')

    if event in PAYMENT_EVENTS:
        if auction.winning_bidder_id is None:
            raise InvalidStateTransition(auction.id, auction.status.value, event.value, 'auction has no winner')
        if auction.payment_status not in UNPAID:
            raise InvalidStateTransition(
                auction.id, auction.status.value, event.value,
                f"payment is {auction.payment_status.value}"
            )

    if event is AuctionEvent.SELLER_SUBMITS_TRACKING and auction.payment_status != PaymentStatus.COMPLETED:
        raise InvalidStateTransition(auction.id, auction.status.value, event.value, 'payment has not completed')


def fire(auction, event, now=None, actor=None):
    """
    Applies ``event`` to ``auction`` and returns the new status.

    ``now`` is needed for the closing and approval guards, ``actor`` (a user or
    a user id) for the seller and moderator guards.
    """
    event = AuctionEvent(event)
    target = next_status(auction.status, event)
    if target is None:
        raise InvalidStateTransition(auction.id, auction.status.value, event.value)

    check_guard(auction, event, now=now, actor=actor)
    auction.status = target
    return target
