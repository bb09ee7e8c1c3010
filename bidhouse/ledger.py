"""
Append-only bid ledger.

A bid is accepted with a conditional update of the auction row: the update
only matches while the auction still has the version that was read, so of two
concurrent bidders exactly one moves the price and the other re-reads and
either retries or fails with :class:`~bidhouse.errors.BidTooLow`.
"""
from datetime import timedelta
import logging

from bidhouse import db
from bidhouse.errors import (
    AuctionNotActive,
    AuctionNotFound,
    AuctionWindowClosed,
    BidTooLow,
    InvalidBidAmount,
    SelfBiddingForbidden,
)
from bidhouse.models import Auction, AuctionStatus, Bid
from bidhouse.notifications import NewBid, Outbid
from bidhouse.utils import unit_of_work, utcnow

logger = logging.getLogger(__name__)


class _PriceConflict(Exception):
    pass


class BidLedger:
    def __init__(self, dispatcher, clock=utcnow, anti_sniping_window=timedelta(minutes=5), max_retries=3):
        self.dispatcher = dispatcher
        self.clock = clock
        self.anti_sniping_window = anti_sniping_window
        self.max_retries = max(1, max_retries)

    def place_bid(self, auction_id, bidder_id, amount):
        """
        Places a bid of ``amount`` cents and returns the stored :class:`Bid`.

        Raises AuctionNotFound, AuctionNotActive, AuctionWindowClosed,
        SelfBiddingForbidden, InvalidBidAmount or BidTooLow. A BidTooLow always
        carries the latest current price so the caller can bid again.
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidBidAmount(f"Bid amount must be a positive whole number of cents, got {amount!r}")

        for attempt in range(1, self.max_retries + 1):
            try:
                with unit_of_work(self.dispatcher):
                    return self._accept(auction_id, bidder_id, amount)
            except _PriceConflict:
                logger.info(f"Bid on auction {auction_id} lost a concurrent update (attempt {attempt}/{self.max_retries})")

        # Out of retries: report against the latest state
        auction = self._load(auction_id)
        self._check_bid(auction, bidder_id, amount, self.clock())
        db.session.rollback()
        raise BidTooLow(auction_id, amount, auction.current_price)

    def _accept(self, auction_id, bidder_id, amount):
        now = self.clock()
        auction = self._load(auction_id)
        self._check_bid(auction, bidder_id, amount, now)

        previous = self.winning_bid(auction_id)
        end_date = self._extended_end_date(auction, now)

        result = db.session.execute(
            db.update(Auction)
            .where(
                Auction.id == auction_id,
                Auction.version == auction.version,
                Auction.status == AuctionStatus.ACTIVE,
            )
            .values(current_price=amount, end_date=end_date, version=Auction.version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise _PriceConflict()

        bid = Bid(auction_id=auction_id, bidder_id=bidder_id, amount=amount, timestamp=now)
        db.session.add(bid)
        db.session.flush()

        if end_date != auction.end_date:
            logger.info(f"Bid {bid.id} landed inside the closing window, auction {auction_id} extended to {end_date}")

        self.dispatcher.notify(
            auction.seller_id,
            NewBid(auction_id=auction_id, auction_title=auction.title, bid_id=bid.id, amount=amount),
        )
        if previous and previous.bidder_id != bidder_id:
            self.dispatcher.notify(
                previous.bidder_id,
                Outbid(auction_id=auction_id, auction_title=auction.title, bid_id=bid.id, new_price=amount),
            )

        logger.info(f"Bid {bid.id} of {amount} accepted on auction {auction_id} from bidder {bidder_id}")
        return bid

    def _load(self, auction_id):
        auction = db.session.execute(
            db.select(Auction)
            .where(Auction.id == auction_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if auction is None:
            raise AuctionNotFound(auction_id)
        return auction

    def _check_bid(self, auction, bidder_id, amount, now):
        if auction.status != AuctionStatus.ACTIVE:
            raise AuctionNotActive(auction.id, auction.status.value)
        if now < auction.start_date or now > auction.end_date:
            raise AuctionWindowClosed(auction.id)
        if bidder_id == auction.seller_id:
            raise SelfBiddingForbidden(auction.id)
        if amount <= auction.current_price:
            raise BidTooLow(auction.id, amount, auction.current_price)

    def _extended_end_date(self, auction, now):
        window = self.anti_sniping_window
        if window and auction.end_date - now <= window:
            return auction.end_date + window
        return auction.end_date

    def bids_for(self, auction_id):
        return db.session.execute(
            db.select(Bid).where(Bid.auction_id == auction_id).order_by(Bid.timestamp, Bid.id)
        ).scalars().all()

    def winning_bid(self, auction_id):
        """Highest amount wins, the earliest bid breaks a tie."""
        return db.session.execute(
            db.select(Bid)
            .where(Bid.auction_id == auction_id)
            .order_by(Bid.amount.desc(), Bid.timestamp.asc(), Bid.id.asc())
            .limit(1)
        ).scalars().first()

    def bidder_ids(self, auction_id):
        """Distinct bidders in the order of their first bid."""
        seen = []
        for bid in self.bids_for(auction_id):
            if bid.bidder_id not in seen:
                seen.append(bid.bidder_id)
        return seen
