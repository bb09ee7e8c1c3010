"""
Periodic passes over the auction table.

Each pass re-derives which auctions are due from the stored state and handles
every auction in its own transaction. Running a pass twice is harmless: closed
auctions are no longer active, and notifications are de-duplicated by the
dispatcher.
"""
from dataclasses import dataclass, field
from datetime import timedelta
import logging

from bidhouse import db
from bidhouse.models import Auction, AuctionStatus
from bidhouse.notifications import AuctionCompleted, AuctionEndingSoon, BelowReserve, NotifyResult
from bidhouse.state_machine import AuctionEvent, fire
from bidhouse.utils import locked_auction, unit_of_work, utcnow

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    processed: list = field(default_factory=list)
    skipped: list = field(default_factory=list)
    failed: list = field(default_factory=list)

    def __str__(self):
        return f"{len(self.processed)} processed, {len(self.skipped)} skipped, {len(self.failed)} failed"


class ClosingScheduler:
    def __init__(self, dispatcher, ledger, settlement, clock=utcnow, ending_soon_lead=timedelta(hours=1)):
        self.dispatcher = dispatcher
        self.ledger = ledger
        self.settlement = settlement
        self.clock = clock
        self.ending_soon_lead = ending_soon_lead

    def close_expired_auctions(self):
        now = self.clock()
        logger.info(f"Running close_expired_auctions at {now}")
        auction_ids = self._select_ids(
            Auction.status == AuctionStatus.ACTIVE,
            Auction.end_date < now,
        )
        logger.info(f"Found {len(auction_ids)} expired auctions")
        return self._for_each(auction_ids, self.close_auction, 'closing')

    def close_auction(self, auction_id):
        """
        Closes one auction whose end date has passed. Returns False when there
        was nothing to do, e.g. because an earlier run already closed it.
        """
        with unit_of_work(self.dispatcher):
            auction = locked_auction(auction_id)
            now = self.clock()
            if auction is None or auction.status != AuctionStatus.ACTIVE:
                logger.info(f"Auction {auction_id} is no longer active, skipping")
                return False
            if not now > auction.end_date:
                # Extended by a late bid since it was selected
                return False

            winning_bid = self.ledger.winning_bid(auction_id)
            bidder_ids = self.ledger.bidder_ids(auction_id)

            if winning_bid is None:
                fire(auction, AuctionEvent.CLOSING_SWEEP_NO_BIDS, now=now)
                seller_outcome = AuctionCompleted.UNSOLD
                bidder_outcome = None
            elif winning_bid.amount >= auction.reserve_price:
                fire(auction, AuctionEvent.CLOSING_SWEEP_RESERVE_MET, now=now)
                auction.winning_bidder_id = winning_bid.bidder_id
                self.settlement.open_payment_window(auction, now)
                seller_outcome = AuctionCompleted.SOLD
                bidder_outcome = AuctionCompleted.LOST
            else:
                fire(auction, AuctionEvent.CLOSING_SWEEP_BELOW_RESERVE, now=now)
                self.dispatcher.notify(
                    auction.seller_id,
                    BelowReserve(
                        auction_id=auction.id,
                        auction_title=auction.title,
                        high_bid=winning_bid.amount,
                        reserve_price=auction.reserve_price,
                    ),
                )
                seller_outcome = AuctionCompleted.AWAITING_DECISION
                bidder_outcome = AuctionCompleted.RESERVE_NOT_MET

            amount = winning_bid.amount if winning_bid else auction.current_price
            for bidder_id in bidder_ids:
                outcome = bidder_outcome
                if auction.winning_bidder_id == bidder_id:
                    outcome = AuctionCompleted.WON
                self._notify_completed(auction, bidder_id, outcome, amount)
            self._notify_completed(auction, auction.seller_id, seller_outcome, amount)

            logger.info(
                f"Closed auction {auction_id} as {auction.status.value}"
                f" (winner {auction.winning_bidder_id}, {len(bidder_ids)} bidders)"
            )
            return True

    def notify_ending_soon(self):
        """Tells bidders and the seller once that an auction is about to end."""
        now = self.clock()
        auction_ids = self._select_ids(
            Auction.status == AuctionStatus.ACTIVE,
            Auction.end_date > now,
            Auction.end_date <= now + self.ending_soon_lead,
        )
        return self._for_each(auction_ids, self._notify_ending_soon, 'ending soon')

    def _notify_ending_soon(self, auction_id):
        with unit_of_work(self.dispatcher):
            auction = db.session.get(Auction, auction_id, populate_existing=True)
            notice = AuctionEndingSoon(auction_id=auction.id, auction_title=auction.title, end_date=auction.end_date)
            results = [
                self.dispatcher.notify(user_id, notice)
                for user_id in self.ledger.bidder_ids(auction_id) + [auction.seller_id]
            ]
        return NotifyResult.SENT in results

    def activate_scheduled_auctions(self):
        """Opens approved auctions whose start date has arrived."""
        now = self.clock()
        auction_ids = self._select_ids(
            Auction.status == AuctionStatus.PENDING_REVIEW,
            Auction.approved.is_(True),
            Auction.start_date <= now,
            Auction.end_date >= now,
        )
        return self._for_each(auction_ids, self._activate, 'activation')

    def _activate(self, auction_id):
        with unit_of_work(self.dispatcher):
            auction = locked_auction(auction_id)
            if auction is None or auction.status != AuctionStatus.PENDING_REVIEW:
                return False
            fire(auction, AuctionEvent.WINDOW_OPENED, now=self.clock())
            logger.info(f"Auction {auction_id} is now active")
            return True

    def _notify_completed(self, auction, user_id, outcome, amount):
        self.dispatcher.notify(
            user_id,
            AuctionCompleted(
                auction_id=auction.id,
                auction_title=auction.title,
                outcome=outcome,
                amount=amount,
            ),
        )

    def _select_ids(self, *criteria):
        auction_ids = db.session.execute(
            db.select(Auction.id).where(*criteria).order_by(Auction.end_date, Auction.id)
        ).scalars().all()
        db.session.rollback()
        return auction_ids

    def _for_each(self, auction_ids, handler, label):
        # One auction failing must not stop the rest of the pass
        report = SweepReport()
        for auction_id in auction_ids:
            try:
                if handler(auction_id):
                    report.processed.append(auction_id)
                else:
                    report.skipped.append(auction_id)
            except Exception:
                db.session.rollback()
                logger.exception(f"Error in {label} pass for auction {auction_id}")
                report.failed.append(auction_id)
        if auction_ids:
            logger.info(f"{label.capitalize()} pass: {report}")
        return report
