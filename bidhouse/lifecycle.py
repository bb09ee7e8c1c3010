import logging

from bidhouse import db
from bidhouse.errors import AuctionNotFound, InvalidAuction, InvalidStateTransition, NotAuthorized
from bidhouse.models import Auction, AuctionStatus, SellerDecision, User
from bidhouse.notifications import AuctionApproved, AuctionVoided, SaleAccepted
from bidhouse.state_machine import AuctionEvent, can_fire, check_guard, fire
from bidhouse.utils import locked_auction, unit_of_work, utcnow

logger = logging.getLogger(__name__)


def _is_cents(value):
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


class AuctionLifecycle:
    """Seller and moderator actions on an auction outside of bidding and settlement."""

    def __init__(self, dispatcher, ledger, settlement, clock=utcnow):
        self.dispatcher = dispatcher
        self.ledger = ledger
        self.settlement = settlement
        self.clock = clock

    def get_auction(self, auction_id):
        auction = db.session.get(Auction, auction_id, populate_existing=True)
        if auction is None:
            raise AuctionNotFound(auction_id)
        return auction

    def create_auction(self, seller_id, title, start_price, reserve_price, start_date, end_date,
                       description='', category=None):
        seller = db.session.get(User, seller_id)
        if seller is None or not seller.is_seller:
            raise NotAuthorized(f"User {seller_id} is not authorized to create auctions")

        # Validate prices and dates
        missing = [name for name, value in (('title', title), ('start_date', start_date), ('end_date', end_date)) if not value]
        if missing:
            raise InvalidAuction(f"Missing required fields: {', '.join(missing)}")
        if not _is_cents(start_price) or not _is_cents(reserve_price):
            raise InvalidAuction("Start and reserve price must be positive whole numbers of cents")
        if reserve_price < start_price:
            raise InvalidAuction("Reserve price must be greater than or equal to start price")
        if end_date <= start_date:
            raise InvalidAuction("End date must be after start date")

        with unit_of_work(self.dispatcher):
            auction = Auction(
                seller_id=seller_id,
                title=title,
                description=description,
                category=category,
                start_price=start_price,
                reserve_price=reserve_price,
                current_price=start_price,
                start_date=start_date,
                end_date=end_date,
                status=AuctionStatus.DRAFT,
                approved=False,
                version=0,
            )
            db.session.add(auction)
            db.session.flush()
            logger.info(f"Auction {auction.id} created by seller {seller_id}")
        return auction

    def submit_for_review(self, auction_id, seller_id):
        with unit_of_work(self.dispatcher):
            auction = self._get_locked(auction_id)
            fire(auction, AuctionEvent.SUBMIT_FOR_REVIEW, actor=seller_id)
            logger.info(f"Auction {auction_id} submitted for review")
        return auction

    def moderator_approve(self, auction_id, moderator_id):
        """
        Approves an auction under review. It goes live straight away when its
        window is open; otherwise it stays approved in review until the
        scheduler's activation pass opens it at its start date.
        """
        moderator = db.session.get(User, moderator_id)
        with unit_of_work(self.dispatcher):
            auction = self._get_locked(auction_id)
            now = self.clock()
            if not can_fire(auction, AuctionEvent.MODERATOR_APPROVE):
                raise InvalidStateTransition(auction_id, auction.status.value, AuctionEvent.MODERATOR_APPROVE.value)
            check_guard(auction, AuctionEvent.MODERATOR_APPROVE, now=now, actor=moderator)

            auction.approved = True
            if now >= auction.start_date:
                fire(auction, AuctionEvent.MODERATOR_APPROVE, now=now, actor=moderator)

            self.dispatcher.notify(
                auction.seller_id,
                AuctionApproved(auction_id=auction.id, auction_title=auction.title, start_date=auction.start_date),
            )
            logger.info(f"Auction {auction_id} approved by {moderator_id}, status {auction.status.value}")
        return auction

    def seller_accepts(self, auction_id, seller_id):
        """Accepts the highest bid of an auction that closed below its reserve."""
        with unit_of_work(self.dispatcher):
            auction = self._get_locked(auction_id)
            winning_bid = self.ledger.winning_bid(auction_id)
            if winning_bid is None:
                raise InvalidStateTransition(auction_id, auction.status.value, AuctionEvent.SELLER_ACCEPTS.value, 'auction has no bids')

            now = self.clock()
            fire(auction, AuctionEvent.SELLER_ACCEPTS, now=now, actor=seller_id)
            auction.winning_bidder_id = winning_bid.bidder_id
            auction.seller_decision = SellerDecision.ACCEPT
            due_date = self.settlement.open_payment_window(auction, now)

            self.dispatcher.notify(
                winning_bid.bidder_id,
                SaleAccepted(
                    auction_id=auction.id,
                    auction_title=auction.title,
                    amount=winning_bid.amount,
                    payment_window=auction.payment_attempts,
                    payment_due_date=due_date,
                ),
            )
            logger.info(f"Seller accepted {winning_bid.amount} on auction {auction_id}, payment due {due_date}")
        return auction

    def seller_voids(self, auction_id, seller_id):
        with unit_of_work(self.dispatcher):
            auction = self._get_locked(auction_id)
            fire(auction, AuctionEvent.SELLER_VOIDS, now=self.clock(), actor=seller_id)
            auction.seller_decision = SellerDecision.VOID

            notice = AuctionVoided(auction_id=auction.id, auction_title=auction.title)
            for bidder_id in self.ledger.bidder_ids(auction_id):
                self.dispatcher.notify(bidder_id, notice)
            logger.info(f"Seller voided auction {auction_id}")
        return auction

    def _get_locked(self, auction_id):
        auction = locked_auction(auction_id)
        if auction is None:
            raise AuctionNotFound(auction_id)
        return auction
