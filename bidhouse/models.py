from enum import Enum

from bidhouse import db


class UserRole(str, Enum):
    BUYER = 'buyer'
    SELLER = 'seller'
    ADMIN = 'admin'
    SELLER_ADMIN = 'seller_admin'


class AuctionStatus(str, Enum):
    DRAFT = 'draft'
    PENDING_REVIEW = 'pending_review'
    ACTIVE = 'active'
    PENDING_SELLER_DECISION = 'pending_seller_decision'
    ENDED = 'ended'
    PENDING_FULFILLMENT = 'pending_fulfillment'
    FULFILLED = 'fulfilled'
    VOIDED = 'voided'


class PaymentStatus(str, Enum):
    PENDING = 'pending'
    PROCESSING = 'processing'
    COMPLETED = 'completed'
    FAILED = 'failed'


class PayoutStatus(str, Enum):
    NONE = 'none'
    PENDING = 'pending'
    RELEASING = 'releasing'
    RELEASED = 'released'


class SellerDecision(str, Enum):
    ACCEPT = 'accept'
    VOID = 'void'


def _enum_column(enum_cls, **kwargs):
    # Stored by value so the rows read the same as the status strings
    return db.Column(
        db.Enum(enum_cls, native_enum=False, length=32, values_callable=lambda members: [m.value for m in members]),
        **kwargs
    )


# User Model
class User(db.Model):
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    phone_number = db.Column(db.String(15), nullable=True)  # Optional for text messaging
    role = _enum_column(UserRole, nullable=False, default=UserRole.BUYER)
    created_at = db.Column(db.DateTime, server_default=db.func.now())

    @property
    def is_admin(self):
        return self.role in (UserRole.ADMIN, UserRole.SELLER_ADMIN)

    @property
    def is_seller(self):
        return self.role in (UserRole.SELLER, UserRole.SELLER_ADMIN)


# Auction Model
class Auction(db.Model):
    __tablename__ = 'auctions'

    id = db.Column(db.Integer, primary_key=True)
    seller_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=False, default='')
    category = db.Column(db.String(50), nullable=True)

    # Money is kept in integer cents
    start_price = db.Column(db.Integer, nullable=False)
    reserve_price = db.Column(db.Integer, nullable=False)
    current_price = db.Column(db.Integer, nullable=False)

    start_date = db.Column(db.DateTime, nullable=False)
    end_date = db.Column(db.DateTime, nullable=False, index=True)

    status = _enum_column(AuctionStatus, nullable=False, default=AuctionStatus.DRAFT, index=True)
    payment_status = _enum_column(PaymentStatus, nullable=False, default=PaymentStatus.PENDING)
    payment_due_date = db.Column(db.DateTime, nullable=True)
    payment_attempts = db.Column(db.Integer, nullable=False, default=0)
    winning_bidder_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    seller_decision = _enum_column(SellerDecision, nullable=True)
    approved = db.Column(db.Boolean, nullable=False, default=False)

    # Bumped on every accepted bid, compared on the conditional update
    version = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, server_default=db.func.now())

    bids = db.relationship('Bid', back_populates='auction', order_by='Bid.timestamp', lazy='select')
    payment = db.relationship('Payment', back_populates='auction', uselist=False)
    fulfillment = db.relationship('Fulfillment', back_populates='auction', uselist=False)

    def __repr__(self):
        return f"<Auction {self.id} {self.status.value if self.status else None}>"


# Bid Model
class Bid(db.Model):
    __tablename__ = 'bids'

    id = db.Column(db.Integer, primary_key=True)
    auction_id = db.Column(db.Integer, db.ForeignKey('auctions.id'), nullable=False, index=True)
    bidder_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    amount = db.Column(db.Integer, nullable=False)
    timestamp = db.Column(db.DateTime, nullable=False)

    auction = db.relationship('Auction', back_populates='bids')

    def __repr__(self):
        return f"<Bid {self.id} auction={self.auction_id} amount={self.amount}>"


# Payment Model
class Payment(db.Model):
    __tablename__ = 'payments'

    id = db.Column(db.Integer, primary_key=True)
    auction_id = db.Column(db.Integer, db.ForeignKey('auctions.id'), nullable=False, unique=True)
    buyer_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    seller_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)

    amount = db.Column(db.Integer, nullable=False)
    platform_fee = db.Column(db.Integer, nullable=False)
    insurance_fee = db.Column(db.Integer, nullable=False, default=0)
    total_charge = db.Column(db.Integer, nullable=False)
    seller_payout = db.Column(db.Integer, nullable=False)

    status = _enum_column(PaymentStatus, nullable=False, default=PaymentStatus.PENDING)
    gateway_reference = db.Column(db.String(255), nullable=True, unique=True)
    attempts = db.Column(db.Integer, nullable=False, default=1)

    payout_status = _enum_column(PayoutStatus, nullable=False, default=PayoutStatus.NONE)
    payout_reference = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime, server_default=db.func.now())
    updated_at = db.Column(db.DateTime, server_default=db.func.now(), onupdate=db.func.now())

    auction = db.relationship('Auction', back_populates='payment')


# Fulfillment Model
class Fulfillment(db.Model):
    __tablename__ = 'fulfillments'

    id = db.Column(db.Integer, primary_key=True)
    auction_id = db.Column(db.Integer, db.ForeignKey('auctions.id'), nullable=False, unique=True)
    shipping_carrier = db.Column(db.String(80), nullable=False)
    tracking_number = db.Column(db.String(120), nullable=False)
    shipping_date = db.Column(db.DateTime, nullable=False)
    estimated_delivery_date = db.Column(db.DateTime, nullable=True)
    notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, server_default=db.func.now())

    auction = db.relationship('Auction', back_populates='fulfillment')


# Notification Model
class Notification(db.Model):
    __tablename__ = 'notifications'
    __table_args__ = (
        db.UniqueConstraint('type', 'reference', 'user_id', name='uq_notification_dedup_key'),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    type = db.Column(db.String(40), nullable=False)
    reference = db.Column(db.String(80), nullable=False)
    title = db.Column(db.String(120), nullable=False)
    message = db.Column(db.String(255), nullable=False)
    data = db.Column(db.JSON, nullable=True)
    is_read = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, server_default=db.func.now())
    delivered_at = db.Column(db.DateTime, nullable=True)
    delivery_attempts = db.Column(db.Integer, nullable=False, default=0)
    next_attempt_at = db.Column(db.DateTime, nullable=True)

    def __repr__(self):
        return f"<Notification {self.type}:{self.reference} user={self.user_id}>"
