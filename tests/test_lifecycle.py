from datetime import timedelta
import unittest

from bidhouse.errors import AuctionNotFound, InvalidAuction, InvalidStateTransition, NotAuthorized
from bidhouse.models import AuctionStatus, PaymentStatus, SellerDecision
from bidhouse.notifications import NotificationType
from tests.support import EngineTestSupport


class CreateAuctionTestCase(EngineTestSupport, unittest.TestCase):
    def create(self, seller_id=None, **kwargs):
        values = dict(
            title='Blue Orpington Hatching Eggs',
            start_price=2500,
            reserve_price=4000,
            start_date=self.clock.now,
            end_date=self.clock.now + timedelta(days=5),
        )
        values.update(kwargs)
        return self.lifecycle.create_auction(seller_id or self.seller, **values)

    def test_new_auction_is_a_draft(self):
        auction = self.create(category='eggs')
        auction = self.lifecycle.get_auction(auction.id)
        self.assertEqual(auction.status, AuctionStatus.DRAFT)
        self.assertEqual(auction.current_price, 2500)
        self.assertEqual(auction.version, 0)
        self.assertFalse(auction.approved)
        self.assertEqual(auction.payment_status, PaymentStatus.PENDING)
        self.assertEqual(auction.payment_attempts, 0)
        self.assertIsNone(auction.payment_due_date)

    def test_only_sellers_create_auctions(self):
        with self.assertRaises(NotAuthorized):
            self.create(seller_id=self.alice)

    def test_invalid_auctions(self):
        cases = {
            'reserve below start': dict(reserve_price=2000),
            'zero start price': dict(start_price=0),
            'fractional price': dict(start_price=25.5),
            'end before start': dict(end_date=self.clock.now - timedelta(minutes=1)),
            'missing title': dict(title=''),
        }
        for name, kwargs in cases.items():
            with self.subTest(name):
                with self.assertRaises(InvalidAuction):
                    self.create(**kwargs)

    def test_get_unknown_auction(self):
        with self.assertRaises(AuctionNotFound):
            self.lifecycle.get_auction(404)


class ReviewTestCase(EngineTestSupport, unittest.TestCase):
    def setUp(self):
        super().setUp()
        self.auction_id = self.lifecycle.create_auction(
            self.seller, 'Lavender Orpington Pullets', start_price=3000, reserve_price=3000,
            start_date=self.clock.now, end_date=self.clock.now + timedelta(days=2),
        ).id

    def test_submit_and_approve(self):
        with self.assertRaises(NotAuthorized):
            self.lifecycle.submit_for_review(self.auction_id, self.alice)
        with self.assertRaises(InvalidStateTransition):
            self.lifecycle.moderator_approve(self.auction_id, self.moderator)

        self.lifecycle.submit_for_review(self.auction_id, self.seller)
        self.assertEqual(self.auction(self.auction_id).status, AuctionStatus.PENDING_REVIEW)

        with self.assertRaises(NotAuthorized):
            self.lifecycle.moderator_approve(self.auction_id, self.seller)

        self.lifecycle.moderator_approve(self.auction_id, self.moderator)
        auction = self.auction(self.auction_id)
        self.assertEqual(auction.status, AuctionStatus.ACTIVE)
        self.assertTrue(auction.approved)
        self.assertEqual(len(self.mailer.sent_to(self.seller, NotificationType.AUCTION_APPROVED)), 1)

    def test_approval_after_window_passed(self):
        self.lifecycle.submit_for_review(self.auction_id, self.seller)
        self.clock.advance(days=3)
        with self.assertRaises(InvalidStateTransition):
            self.lifecycle.moderator_approve(self.auction_id, self.moderator)
        self.assertFalse(self.auction(self.auction_id).approved)


class SellerDecisionTestCase(EngineTestSupport, unittest.TestCase):
    def setUp(self):
        super().setUp()
        self.auction_id = self.create_active_auction(start_price=100, reserve_price=500)
        self.bid(self.auction_id, self.alice, 300)
        self.bid(self.auction_id, self.bob, 450)

    def test_accept_opens_payment_window_for_highest_bidder(self):
        self.close(self.auction_id)
        self.lifecycle.seller_accepts(self.auction_id, self.seller)

        auction = self.auction(self.auction_id)
        self.assertEqual(auction.status, AuctionStatus.ENDED)
        self.assertEqual(auction.winning_bidder_id, self.bob)
        self.assertEqual(auction.seller_decision, SellerDecision.ACCEPT)
        self.assertEqual(auction.payment_status, PaymentStatus.PENDING)
        self.assertEqual(auction.payment_due_date, self.clock.now + timedelta(hours=24))

        accepted = self.mailer.sent_to(self.bob, NotificationType.SALE_ACCEPTED)
        self.assertEqual(len(accepted), 1)
        self.assertEqual(accepted[0].amount, 450)
        self.assertEqual(accepted[0].payment_due_date, auction.payment_due_date)

    def test_void_notifies_every_bidder(self):
        self.close(self.auction_id)
        self.lifecycle.seller_voids(self.auction_id, self.seller)

        auction = self.auction(self.auction_id)
        self.assertEqual(auction.status, AuctionStatus.VOIDED)
        self.assertEqual(auction.seller_decision, SellerDecision.VOID)
        voided = {n.user_id for n in self.notifications(NotificationType.AUCTION_VOIDED)}
        self.assertEqual(voided, {self.alice, self.bob})

        with self.subTest('a voided auction is final'):
            with self.assertRaises(InvalidStateTransition):
                self.lifecycle.seller_accepts(self.auction_id, self.seller)

    def test_decisions_need_the_seller_and_a_closed_auction(self):
        with self.assertRaises(InvalidStateTransition):
            self.lifecycle.seller_accepts(self.auction_id, self.seller)

        self.close(self.auction_id)
        with self.assertRaises(NotAuthorized):
            self.lifecycle.seller_voids(self.auction_id, self.bob)
        self.assertEqual(self.auction(self.auction_id).status, AuctionStatus.PENDING_SELLER_DECISION)


if __name__ == '__main__':
    unittest.main()
