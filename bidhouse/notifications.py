"""
User-facing notices and their at-most-once dispatch.

Each notice type is its own frozen dataclass carrying exactly the fields its
message needs. A notice's ``(type, reference)`` pair, optionally narrowed to a
recipient, is the dedup key: once a :class:`~bidhouse.models.Notification` row
with that key exists the notice is never recorded again.

Records are written in the caller's transaction and handed to the mailer only
after that transaction committed (see :func:`bidhouse.utils.unit_of_work`).
Mailer failures are logged and the record stays undelivered so
:meth:`NotificationDispatcher.redeliver_undelivered` can retry it later, backing
off after each failure and giving up after a fixed number of attempts.
"""
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timedelta
from enum import Enum
import logging
from typing import ClassVar, Optional

from twilio.rest import Client

from bidhouse import db
from bidhouse.models import Notification, User
from bidhouse.utils import utcnow

logger = logging.getLogger(__name__)


class NotificationType(str, Enum):
    NEW_BID = 'new_bid'
    OUTBID = 'outbid'
    AUCTION_ENDING_SOON = 'auction_ending_soon'
    AUCTION_COMPLETED = 'auction_completed'
    BELOW_RESERVE = 'below_reserve'
    AUCTION_APPROVED = 'auction_approved'
    SALE_ACCEPTED = 'sale_accepted'
    AUCTION_VOIDED = 'auction_voided'
    PAYMENT_COMPLETED = 'payment_completed'
    PAYMENT_FAILED = 'payment_failed'
    ITEM_SHIPPED = 'item_shipped'


class NotifyResult(str, Enum):
    SENT = 'sent'
    SKIPPED = 'skipped'


def format_cents(amount):
    return f"${amount / 100:,.2f}"


@dataclass(frozen=True)
class Notice:
    type: ClassVar[NotificationType]
    title: ClassVar[str]

    auction_id: int
    auction_title: str

    @property
    def reference(self):
        return str(self.auction_id)

    def message(self):
        raise NotImplementedError

    def to_data(self):
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data

    @classmethod
    def from_data(cls, data):
        values = {}
        for field in fields(cls):
            value = data.get(field.name)
            # Dates are the only non-JSON values and all end in _date
            if field.name.endswith('_date') and isinstance(value, str):
                value = datetime.fromisoformat(value)
            values[field.name] = value
        return cls(**values)


@dataclass(frozen=True)
class NewBid(Notice):
    type = NotificationType.NEW_BID
    title = 'New Bid Received'

    bid_id: int
    amount: int

    @property
    def reference(self):
        return f"{self.auction_id}:{self.bid_id}"

    def message(self):
        return f'A new bid of {format_cents(self.amount)} has been placed on your auction "{self.auction_title}"'


@dataclass(frozen=True)
class Outbid(Notice):
    type = NotificationType.OUTBID
    title = 'You Have Been Outbid'

    bid_id: int
    new_price: int

    @property
    def reference(self):
        return f"{self.auction_id}:{self.bid_id}"

    def message(self):
        return f'You have been outbid on "{self.auction_title}". The current price is {format_cents(self.new_price)}'


@dataclass(frozen=True)
class AuctionEndingSoon(Notice):
    type = NotificationType.AUCTION_ENDING_SOON
    title = 'Auction Ending Soon'

    end_date: datetime

    def message(self):
        return f'"{self.auction_title}" ends at {self.end_date:%Y-%m-%d %H:%M} UTC'


@dataclass(frozen=True)
class AuctionCompleted(Notice):
    type = NotificationType.AUCTION_COMPLETED
    title = 'Auction Completed'

    WON: ClassVar[str] = 'won'
    LOST: ClassVar[str] = 'lost'
    RESERVE_NOT_MET: ClassVar[str] = 'reserve_not_met'
    SOLD: ClassVar[str] = 'sold'
    UNSOLD: ClassVar[str] = 'unsold'
    AWAITING_DECISION: ClassVar[str] = 'awaiting_decision'

    outcome: str
    amount: int

    def message(self):
        price = format_cents(self.amount)
        if self.outcome == self.WON:
            return f'Congratulations! You won "{self.auction_title}" with a bid of {price}'
        if self.outcome == self.LOST:
            return f'"{self.auction_title}" has ended. The winning bid was {price}'
        if self.outcome == self.RESERVE_NOT_MET:
            return f'"{self.auction_title}" ended below its reserve. The seller will decide whether to accept {price}'
        if self.outcome == self.SOLD:
            return f'Your auction "{self.auction_title}" has sold for {price}'
        if self.outcome == self.AWAITING_DECISION:
            return f'Your auction "{self.auction_title}" ended at {price}, below your reserve'
        return f'Your auction "{self.auction_title}" has ended without bids'


@dataclass(frozen=True)
class BelowReserve(Notice):
    type = NotificationType.BELOW_RESERVE
    title = 'Reserve Not Met'

    high_bid: int
    reserve_price: int

    @property
    def shortfall(self):
        return self.reserve_price - self.high_bid

    def message(self):
        return (
            f'The highest bid on "{self.auction_title}" is {format_cents(self.high_bid)}, '
            f'{format_cents(self.shortfall)} below your reserve. Accept or void the sale.'
        )


@dataclass(frozen=True)
class AuctionApproved(Notice):
    type = NotificationType.AUCTION_APPROVED
    title = 'Auction Approved'

    start_date: datetime

    def message(self):
        return f'Your auction "{self.auction_title}" was approved and opens at {self.start_date:%Y-%m-%d %H:%M} UTC'


@dataclass(frozen=True)
class SaleAccepted(Notice):
    type = NotificationType.SALE_ACCEPTED
    title = 'Payment Due'

    amount: int
    payment_window: int
    payment_due_date: datetime

    @property
    def reference(self):
        return f"{self.auction_id}:{self.payment_window}"

    def message(self):
        return (
            f'You won "{self.auction_title}" for {format_cents(self.amount)}. '
            f'Please pay by {self.payment_due_date:%Y-%m-%d %H:%M} UTC'
        )


@dataclass(frozen=True)
class AuctionVoided(Notice):
    type = NotificationType.AUCTION_VOIDED
    title = 'Auction Voided'

    def message(self):
        return f'The seller has voided "{self.auction_title}". No sale will take place'


@dataclass(frozen=True)
class PaymentCompleted(Notice):
    type = NotificationType.PAYMENT_COMPLETED
    title = 'Payment Update'

    amount: int

    def message(self):
        return f'A payment of {format_cents(self.amount)} for "{self.auction_title}" has been completed. Please ship the item'


@dataclass(frozen=True)
class PaymentFailed(Notice):
    type = NotificationType.PAYMENT_FAILED
    title = 'Payment Update'

    amount: int
    reason: str
    payment_window: int
    back_to_decision: bool

    @property
    def reference(self):
        return f"{self.auction_id}:{self.payment_window}"

    def message(self):
        text = f'The payment of {format_cents(self.amount)} for "{self.auction_title}" has failed ({self.reason})'
        if self.back_to_decision:
            return f"{text}. You can accept or void the sale again"
        return text


@dataclass(frozen=True)
class ItemShipped(Notice):
    type = NotificationType.ITEM_SHIPPED
    title = 'Shipping Update'

    shipping_carrier: str
    tracking_number: str
    shipping_date: datetime
    estimated_delivery_date: Optional[datetime] = None

    def message(self):
        return (
            f'Your item from "{self.auction_title}" has been shipped with '
            f'{self.shipping_carrier}, tracking number {self.tracking_number}'
        )


NOTICE_TYPES = {
    notice_cls.type: notice_cls
    for notice_cls in (
        NewBid, Outbid, AuctionEndingSoon, AuctionCompleted, BelowReserve, AuctionApproved,
        SaleAccepted, AuctionVoided, PaymentCompleted, PaymentFailed, ItemShipped,
    )
}


def notice_from_record(record):
    return NOTICE_TYPES[NotificationType(record.type)].from_data(record.data or {})


class Mailer:
    """Outbound channel for notices. Fire-and-forget from the engine's side."""

    def send(self, user_id, notification_type, payload):
        raise NotImplementedError


class LoggingMailer(Mailer):
    def send(self, user_id, notification_type, payload):
        logger.info(f"[{notification_type.value}] to user {user_id}: {payload.message()}")


class TwilioMailer(Mailer):
    """Sends notices as text messages to the user's phone number."""

    def __init__(self, account_sid, auth_token, from_number):
        self.client = Client(account_sid, auth_token)
        self.from_number = from_number

    def send(self, user_id, notification_type, payload):
        user = db.session.get(User, user_id)
        if not user or not user.phone_number:
            logger.warning(f"User {user_id} does not have a valid phone number, skipping {notification_type.value}")
            return

        message = self.client.messages.create(
            body=f"{payload.title}: {payload.message()}",
            from_=self.from_number,
            to=user.phone_number
        )
        logger.info(f"SMS sent successfully: {message.sid}")


class NotificationDispatcher:
    PENDING_KEY = 'bidhouse.pending_notifications'

    def __init__(self, mailer, clock=utcnow, max_attempts=5, retry_backoff=timedelta(minutes=5)):
        self.mailer = mailer
        self.clock = clock
        self.max_attempts = max_attempts
        self.retry_backoff = retry_backoff

    def already_sent(self, notice, user_id=None):
        query = db.select(Notification.id).where(
            Notification.type == notice.type.value,
            Notification.reference == notice.reference,
        )
        if user_id is not None:
            query = query.where(Notification.user_id == user_id)
        return db.session.execute(query.limit(1)).first() is not None

    def notify(self, user_id, notice, per_recipient=True):
        """
        Records ``notice`` for ``user_id`` unless its dedup key was already used.

        With ``per_recipient`` the key is ``(type, reference, user_id)``,
        otherwise ``(type, reference)`` regardless of who received it.
        """
        if self.already_sent(notice, user_id if per_recipient else None):
            logger.info(f"Skipping {notice.type.value} {notice.reference} for user {user_id}, already sent")
            return NotifyResult.SKIPPED

        record = Notification(
            user_id=user_id,
            type=notice.type.value,
            reference=notice.reference,
            title=notice.title,
            message=notice.message()[:255],
            data=notice.to_data(),
            is_read=False,
            delivery_attempts=0
        )
        db.session.add(record)
        db.session.info.setdefault(self.PENDING_KEY, []).append((record, notice))
        return NotifyResult.SENT

    def discard_pending(self):
        db.session.info.pop(self.PENDING_KEY, None)

    def deliver_pending(self):
        """Hands the notices committed by the last unit of work to the mailer."""
        pending = db.session.info.pop(self.PENDING_KEY, [])
        attempts = [(record, self._send(record.user_id, notice)) for record, notice in pending]
        return self._record_attempts(attempts)

    def redeliver_undelivered(self, limit=100):
        """
        Retries undelivered records that are due, soonest first.

        Each failure pushes the next attempt back exponentially; a record that
        failed ``max_attempts`` times is no longer retried.
        """
        now = self.clock()
        records = db.session.execute(
            db.select(Notification)
            .where(
                Notification.delivered_at.is_(None),
                Notification.delivery_attempts < self.max_attempts,
                db.or_(Notification.next_attempt_at.is_(None), Notification.next_attempt_at <= now),
            )
            .order_by(Notification.next_attempt_at, Notification.id)
            .limit(limit)
        ).scalars().all()

        attempts = [(record, self._send(record.user_id, notice_from_record(record))) for record in records]
        delivered = self._record_attempts(attempts)
        if records:
            logger.info(f"Redelivered {delivered} of {len(records)} undelivered notifications")
        return delivered

    def _send(self, user_id, notice):
        try:
            self.mailer.send(user_id, notice.type, notice)
            return True
        except Exception:
            logger.exception(f"Failed to send {notice.type.value} {notice.reference} to user {user_id}")
            return False

    def _record_attempts(self, attempts):
        if not attempts:
            return 0
        now = self.clock()
        delivered = 0
        for record, sent in attempts:
            record.delivery_attempts = (record.delivery_attempts or 0) + 1
            if sent:
                record.delivered_at = now
                record.next_attempt_at = None
                delivered += 1
            elif record.delivery_attempts >= self.max_attempts:
                record.next_attempt_at = None
                logger.warning(f"Giving up on notification {record.id} after {record.delivery_attempts} attempts")
            else:
                record.next_attempt_at = now + self.retry_backoff * 2 ** (record.delivery_attempts - 1)
        try:
            db.session.commit()
        except Exception:
            # Left as they were; the redelivery pass picks them up again
            db.session.rollback()
            logger.exception("Failed to record notification delivery attempts")
            return 0
        return delivered
