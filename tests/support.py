from datetime import datetime, timedelta
from decimal import Decimal

from bidhouse import create_app, db
from bidhouse.engine import AuctionEngine
from bidhouse.models import Auction, Notification, User, UserRole
from bidhouse.notifications import Mailer
from bidhouse.services import PaymentGateway, PayoutService
from bidhouse.settlement import FeeSchedule


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


class RecordingMailer(Mailer):
    def __init__(self):
        self.sent = []
        self.failures = []
        self.fail = False
        self.unreachable = set()

    def send(self, user_id, notification_type, payload):
        if self.fail or user_id in self.unreachable:
            self.failures.append((user_id, notification_type, payload))
            raise ConnectionError('mail relay unavailable')
        self.sent.append((user_id, notification_type, payload))

    def sent_to(self, user_id, notification_type=None):
        return [
            payload for recipient, sent_type, payload in self.sent
            if recipient == user_id and (notification_type is None or sent_type == notification_type)
        ]


class FakeGateway(PaymentGateway):
    def __init__(self):
        self.charges = []
        self.fail = False

    def initiate_charge(self, auction_id, amount, buyer_id):
        if self.fail:
            raise ConnectionError('gateway timeout')
        self.charges.append((auction_id, amount, buyer_id))
        return f"ch_{len(self.charges)}"


class FakePayoutService(PayoutService):
    def __init__(self):
        self.payouts = []
        self.fail = False

    def release_payout(self, seller_id, amount, payment_id):
        if self.fail:
            raise ConnectionError('payout provider unavailable')
        self.payouts.append((seller_id, amount, payment_id))
        return f"tr_{len(self.payouts)}"


class EngineTestSupport:
    """
    Builds an app on an in-memory database with an engine wired to fakes and
    a fixed clock. Creates a seller, a moderator and three buyers.
    """

    START = datetime(2026, 3, 2, 12, 0)

    def setUp(self):
        self.clock = FakeClock(self.START)
        self.mailer = RecordingMailer()
        self.gateway = FakeGateway()
        self.payouts = FakePayoutService()

        self.app = create_app('config.TestConfig')
        self.engine = AuctionEngine(
            mailer=self.mailer,
            gateway=self.gateway,
            payout_service=self.payouts,
            fees=FeeSchedule(Decimal('0.10'), Decimal('0.10'), 800),
            clock=self.clock,
            anti_sniping_window=timedelta(minutes=5),
            bid_max_retries=3,
            payment_window=timedelta(hours=24),
            ending_soon_lead=timedelta(hours=1),
        )
        self.app.extensions['bidhouse'] = self.engine
        self.app_context = self.app.app_context()
        self.app_context.push()
        db.create_all()

        self.seller = self.create_user('hatchery', UserRole.SELLER)
        self.moderator = self.create_user('moderator', UserRole.ADMIN)
        self.alice = self.create_user('alice')
        self.bob = self.create_user('bob')
        self.carol = self.create_user('carol')

    def tearDown(self):
        db.session.remove()
        db.drop_all()
        self.app_context.pop()

    @property
    def ledger(self):
        return self.engine.ledger

    @property
    def lifecycle(self):
        return self.engine.lifecycle

    @property
    def closing(self):
        return self.engine.closing

    @property
    def settlement(self):
        return self.engine.settlement

    def create_user(self, username, role=UserRole.BUYER):
        user = User(username=username, email=f"{username}@example.com", phone_number='+15555550100', role=role)
        db.session.add(user)
        db.session.commit()
        return user.id

    def create_active_auction(self, start_price=100, reserve_price=500, ends_in=timedelta(days=1),
                              title='Heritage Brahma Trio'):
        auction = self.lifecycle.create_auction(
            self.seller,
            title,
            start_price=start_price,
            reserve_price=reserve_price,
            start_date=self.clock.now - timedelta(hours=1),
            end_date=self.clock.now + ends_in,
        )
        self.lifecycle.submit_for_review(auction.id, self.seller)
        self.lifecycle.moderator_approve(auction.id, self.moderator)
        return auction.id

    def bid(self, auction_id, bidder_id, amount, after=timedelta(minutes=1)):
        self.clock.now += after
        return self.ledger.place_bid(auction_id, bidder_id, amount)

    def close(self, auction_id):
        """Moves the clock past the auction's end and runs the closing sweep."""
        self.clock.now = self.auction(auction_id).end_date + timedelta(minutes=1)
        return self.closing.close_expired_auctions()

    def auction(self, auction_id):
        return db.session.get(Auction, auction_id, populate_existing=True)

    def notifications(self, notification_type=None, user_id=None):
        query = db.select(Notification).order_by(Notification.id)
        if notification_type is not None:
            query = query.where(Notification.type == notification_type.value)
        if user_id is not None:
            query = query.where(Notification.user_id == user_id)
        return db.session.execute(query).scalars().all()
