"""
Settlement: payment confirmation, fulfillment and seller payout.

The coordinator is the only writer of ``Auction.payment_status``. Gateway and
payout calls are made between transactions, never while an auction row is
locked; the state only moves forward once the collaborator confirmed.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
import logging
from typing import Optional

from bidhouse import db
from bidhouse.errors import (
    AlreadyFulfilled,
    AuctionNotFound,
    GatewayError,
    InvalidStateTransition,
    NotAuthorized,
    PaymentNotFound,
    UnknownGatewayStatus,
)
from bidhouse.models import (
    Auction,
    AuctionStatus,
    Fulfillment,
    Payment,
    PaymentStatus,
    PayoutStatus,
)
from bidhouse.notifications import ItemShipped, PaymentCompleted, PaymentFailed
from bidhouse.state_machine import AuctionEvent, fire
from bidhouse.utils import locked_auction, unit_of_work, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeeSchedule:
    platform_fee_rate: Decimal
    seller_fee_rate: Decimal
    insurance_fee: int

    @classmethod
    def from_config(cls, config):
        return cls(
            platform_fee_rate=Decimal(str(config['PLATFORM_FEE_RATE'])),
            seller_fee_rate=Decimal(str(config['SELLER_FEE_RATE'])),
            insurance_fee=int(config['INSURANCE_FEE']),
        )


@dataclass(frozen=True)
class Charge:
    amount: int
    platform_fee: int
    insurance_fee: int
    total_charge: int
    seller_payout: int


@dataclass(frozen=True)
class FulfillmentDetails:
    shipping_carrier: str
    tracking_number: str
    shipping_date: Optional[datetime] = None
    estimated_delivery_date: Optional[datetime] = None
    notes: Optional[str] = None


def round_half_up(value):
    return int(Decimal(value).quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def compute_charge(price, fees, include_insurance=False):
    """
    Splits a hammer price of ``price`` cents into what the buyer pays and
    what the seller receives.

    >>> compute_charge(10000, FeeSchedule(Decimal('0.10'), Decimal('0.10'), 800), include_insurance=True)
    Charge(amount=10000, platform_fee=1000, insurance_fee=800, total_charge=11800, seller_payout=9000)
    """
    platform_fee = round_half_up(price * fees.platform_fee_rate)
    insurance_fee = fees.insurance_fee if include_insurance else 0
    return Charge(
        amount=price,
        platform_fee=platform_fee,
        insurance_fee=insurance_fee,
        total_charge=price + platform_fee + insurance_fee,
        seller_payout=price - round_half_up(price * fees.seller_fee_rate),
    )


class SettlementCoordinator:
    def __init__(self, dispatcher, ledger, gateway, payout_service, fees, clock=utcnow,
                 payment_window=timedelta(hours=24)):
        self.dispatcher = dispatcher
        self.ledger = ledger
        self.gateway = gateway
        self.payout_service = payout_service
        self.fees = fees
        self.clock = clock
        self.payment_window = payment_window

    def open_payment_window(self, auction, now):
        """Starts a new payment window; runs inside the caller's transaction."""
        auction.payment_status = PaymentStatus.PENDING
        auction.payment_due_date = now + self.payment_window
        auction.payment_attempts = (auction.payment_attempts or 0) + 1
        return auction.payment_due_date

    def initiate_payment(self, auction_id, buyer_id, include_insurance=False):
        """
        Creates the payment record for the winner and starts the charge.

        The charge amounts are fixed on the first call and reused by any later
        attempt. A gateway failure leaves the payment pending and raises
        GatewayError so the caller can try again.
        """
        with unit_of_work(self.dispatcher):
            auction = self._get_locked(auction_id)
            if auction.status != AuctionStatus.ENDED or auction.winning_bidder_id is None:
                raise InvalidStateTransition(auction_id, auction.status.value, 'initiate_payment', 'no sale is awaiting payment')
            if buyer_id != auction.winning_bidder_id:
                raise NotAuthorized(f"Only the winning bidder can pay for auction {auction_id}")
            if auction.payment_status == PaymentStatus.PROCESSING:
                logger.info(f"Payment for auction {auction_id} is already processing")
                return auction.payment
            if auction.payment_status != PaymentStatus.PENDING:
                raise InvalidStateTransition(
                    auction_id, auction.status.value, 'initiate_payment', f"payment is {auction.payment_status.value}"
                )

            payment = self._ensure_payment(auction, include_insurance)
            payment.status = PaymentStatus.PENDING
            payment.attempts = auction.payment_attempts
            payment.gateway_reference = None
            payment_id, total_charge = payment.id, payment.total_charge

        try:
            reference = self.gateway.initiate_charge(auction_id, total_charge, buyer_id)
        except Exception as e:
            logger.exception(f"Gateway failed to start the charge for auction {auction_id}")
            raise GatewayError(f"Could not start the charge for auction {auction_id}: {e}") from e

        with unit_of_work(self.dispatcher):
            auction = self._get_locked(auction_id)
            payment = db.session.get(Payment, payment_id)
            if auction.payment_status != PaymentStatus.PENDING or payment.status != PaymentStatus.PENDING:
                logger.warning(f"Payment {payment_id} changed while the charge was started, keeping {payment.status.value}")
                return payment
            payment.gateway_reference = reference
            payment.status = PaymentStatus.PROCESSING
            auction.payment_status = PaymentStatus.PROCESSING
            logger.info(f"Charge {reference} of {total_charge} started for auction {auction_id}")
            return payment

    def on_payment_completed(self, auction_id):
        """Returns False when the payment was already recorded as completed."""
        with unit_of_work(self.dispatcher):
            auction = self._get_locked(auction_id)
            if auction.payment_status == PaymentStatus.COMPLETED:
                logger.info(f"Payment for auction {auction_id} already completed, ignoring")
                return False

            fire(auction, AuctionEvent.PAYMENT_COMPLETED)
            payment = self._ensure_payment(auction)
            payment.status = PaymentStatus.COMPLETED
            auction.payment_status = PaymentStatus.COMPLETED

            self.dispatcher.notify(
                auction.seller_id,
                PaymentCompleted(auction_id=auction.id, auction_title=auction.title, amount=payment.amount),
            )
            logger.info(f"Payment for auction {auction_id} completed, awaiting fulfillment")
            return True

    def on_payment_failed(self, auction_id, reason='declined'):
        """
        Records a failed payment and re-evaluates the reserve with the winning bid.

        A sale that met its reserve stays ended and unpaid; an accepted sale
        below the reserve goes back to the seller for a new decision.
        """
        with unit_of_work(self.dispatcher):
            auction = self._get_locked(auction_id)
            if auction.payment_status == PaymentStatus.FAILED:
                logger.info(f"Payment for auction {auction_id} already failed, ignoring")
                return False

            winning_bid = self.ledger.winning_bid(auction_id)
            below_reserve = winning_bid is not None and winning_bid.amount < auction.reserve_price
            if below_reserve:
                fire(auction, AuctionEvent.PAYMENT_FAILED_BELOW_RESERVE)
                auction.seller_decision = None
                auction.winning_bidder_id = None
            else:
                fire(auction, AuctionEvent.PAYMENT_FAILED_RESERVE_MET)

            auction.payment_status = PaymentStatus.FAILED
            auction.payment_due_date = None
            if auction.payment is not None:
                auction.payment.status = PaymentStatus.FAILED

            self.dispatcher.notify(
                auction.seller_id,
                PaymentFailed(
                    auction_id=auction.id,
                    auction_title=auction.title,
                    amount=winning_bid.amount if winning_bid else auction.current_price,
                    reason=reason,
                    payment_window=auction.payment_attempts,
                    back_to_decision=below_reserve,
                ),
            )
            logger.info(f"Payment for auction {auction_id} failed ({reason}), auction is {auction.status.value}")
            return True

    def on_gateway_callback(self, gateway_reference, status):
        """
        Applies the gateway's outcome for the charge ``gateway_reference``.

        Only a charge that is still processing is settled by its callback.
        Repeated or late callbacks for an earlier payment window are ignored
        and return False.
        """
        status = str(status).lower()
        if status not in (PaymentStatus.COMPLETED.value, PaymentStatus.FAILED.value):
            raise UnknownGatewayStatus(f"Unknown gateway status {status!r} for {gateway_reference}")

        payment = db.session.execute(
            db.select(Payment).where(Payment.gateway_reference == gateway_reference)
        ).scalar_one_or_none()
        if payment is None:
            raise PaymentNotFound(f"No payment with gateway reference {gateway_reference}")

        if payment.status != PaymentStatus.PROCESSING:
            if status == PaymentStatus.COMPLETED.value and payment.status != PaymentStatus.COMPLETED:
                logger.warning(
                    f"Charge {gateway_reference} captured after payment {payment.id} became "
                    f"{payment.status.value}, needs reconciliation"
                )
            else:
                logger.info(f"Ignoring {status} callback for {gateway_reference}, payment is {payment.status.value}")
            db.session.rollback()
            return False

        auction_id = payment.auction_id
        db.session.rollback()
        if status == PaymentStatus.COMPLETED.value:
            return self.on_payment_completed(auction_id)
        return self.on_payment_failed(auction_id, reason='declined by gateway')

    def on_fulfillment_submitted(self, auction_id, seller_id, details):
        """
        Marks the auction fulfilled, notifies the buyer and releases the payout.

        Only the first submission is accepted; later ones raise AlreadyFulfilled
        and never trigger another payout.
        """
        with unit_of_work(self.dispatcher):
            auction = self._get_locked(auction_id)
            if seller_id != auction.seller_id:
                raise NotAuthorized(f"Only the seller of auction {auction_id} can submit tracking")
            if auction.status == AuctionStatus.FULFILLED:
                raise AlreadyFulfilled(auction_id)

            fire(auction, AuctionEvent.SELLER_SUBMITS_TRACKING, actor=seller_id)
            now = self.clock()
            fulfillment = Fulfillment(
                auction_id=auction.id,
                shipping_carrier=details.shipping_carrier,
                tracking_number=details.tracking_number,
                shipping_date=details.shipping_date or now,
                estimated_delivery_date=details.estimated_delivery_date,
                notes=details.notes,
            )
            db.session.add(fulfillment)

            payment = self._ensure_payment(auction)
            payment.payout_status = PayoutStatus.PENDING
            payment_id = payment.id

            self.dispatcher.notify(
                auction.winning_bidder_id,
                ItemShipped(
                    auction_id=auction.id,
                    auction_title=auction.title,
                    shipping_carrier=fulfillment.shipping_carrier,
                    tracking_number=fulfillment.tracking_number,
                    shipping_date=fulfillment.shipping_date,
                    estimated_delivery_date=fulfillment.estimated_delivery_date,
                ),
            )
            logger.info(f"Auction {auction_id} fulfilled with tracking {details.tracking_number}")

        self.release_payout(payment_id)
        return fulfillment

    def release_payout(self, payment_id):
        """
        Pays the seller once. The payment is claimed with a conditional update
        so a concurrent retry cannot release it a second time.
        """
        with unit_of_work():
            claimed = db.session.execute(
                db.update(Payment)
                .where(Payment.id == payment_id, Payment.payout_status == PayoutStatus.PENDING)
                .values(payout_status=PayoutStatus.RELEASING)
                .execution_options(synchronize_session=False)
            ).rowcount == 1
        if not claimed:
            return False

        payment = db.session.get(Payment, payment_id, populate_existing=True)
        try:
            reference = self.payout_service.release_payout(payment.seller_id, payment.seller_payout, payment.id)
        except Exception:
            logger.exception(f"Payout for payment {payment_id} failed, will retry")
            with unit_of_work():
                payment = db.session.get(Payment, payment_id, populate_existing=True)
                payment.payout_status = PayoutStatus.PENDING
            return False

        with unit_of_work():
            payment = db.session.get(Payment, payment_id, populate_existing=True)
            payment.payout_status = PayoutStatus.RELEASED
            payment.payout_reference = reference
        logger.info(f"Released payout {reference} of {payment.seller_payout} to seller {payment.seller_id}")
        return True

    def release_pending_payouts(self):
        payment_ids = db.session.execute(
            db.select(Payment.id).where(Payment.payout_status == PayoutStatus.PENDING).order_by(Payment.id)
        ).scalars().all()
        db.session.rollback()

        released = []
        for payment_id in payment_ids:
            try:
                if self.release_payout(payment_id):
                    released.append(payment_id)
            except Exception:
                db.session.rollback()
                logger.exception(f"Error releasing payout for payment {payment_id}")
        return released

    def expire_overdue_payments(self):
        """
        Treats every sale past its payment due date as a failed payment.

        Charges already handed to the gateway are left alone; their callback
        decides the outcome.
        """
        now = self.clock()
        auction_ids = db.session.execute(
            db.select(Auction.id).where(
                Auction.status == AuctionStatus.ENDED,
                Auction.winning_bidder_id.is_not(None),
                Auction.payment_status == PaymentStatus.PENDING,
                Auction.payment_due_date < now,
            ).order_by(Auction.id)
        ).scalars().all()
        db.session.rollback()

        expired = []
        for auction_id in auction_ids:
            try:
                if self.on_payment_failed(auction_id, reason='payment overdue'):
                    expired.append(auction_id)
            except Exception:
                logger.exception(f"Error expiring payment for auction {auction_id}")
        if expired:
            logger.info(f"Expired {len(expired)} overdue payments")
        return expired

    def _get_locked(self, auction_id):
        auction = locked_auction(auction_id)
        if auction is None:
            raise AuctionNotFound(auction_id)
        return auction

    def _ensure_payment(self, auction, include_insurance=False):
        if auction.payment is not None:
            return auction.payment

        winning_bid = self.ledger.winning_bid(auction.id)
        price = winning_bid.amount if winning_bid else auction.current_price
        charge = compute_charge(price, self.fees, include_insurance)
        payment = Payment(
            auction_id=auction.id,
            buyer_id=auction.winning_bidder_id,
            seller_id=auction.seller_id,
            amount=charge.amount,
            platform_fee=charge.platform_fee,
            insurance_fee=charge.insurance_fee,
            total_charge=charge.total_charge,
            seller_payout=charge.seller_payout,
            status=PaymentStatus.PENDING,
            attempts=auction.payment_attempts or 1,
            payout_status=PayoutStatus.NONE,
        )
        db.session.add(payment)
        db.session.flush()
        auction.payment = payment
        return payment
