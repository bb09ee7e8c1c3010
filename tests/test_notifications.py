from datetime import datetime, timedelta
import unittest

from bidhouse import db
from bidhouse.models import Notification
from bidhouse.notifications import (
    AuctionCompleted,
    AuctionEndingSoon,
    BelowReserve,
    ItemShipped,
    NotificationType,
    NotifyResult,
    PaymentFailed,
    format_cents,
    notice_from_record,
)
from bidhouse.utils import unit_of_work
from tests.support import EngineTestSupport


class NoticeTestCase(unittest.TestCase):
    def test_format_cents(self):
        self.assertEqual(format_cents(123456), '$1,234.56')
        self.assertEqual(format_cents(5), '$0.05')

    def test_messages(self):
        below = BelowReserve(auction_id=7, auction_title='Ayam Cemani Pair', high_bid=45000, reserve_price=60000)
        self.assertEqual(below.shortfall, 15000)
        self.assertIn('$150.00 below your reserve', below.message())

        won = AuctionCompleted(auction_id=7, auction_title='Ayam Cemani Pair', outcome=AuctionCompleted.WON, amount=60000)
        self.assertIn('You won', won.message())
        unsold = AuctionCompleted(auction_id=7, auction_title='Ayam Cemani Pair', outcome=AuctionCompleted.UNSOLD, amount=100)
        self.assertIn('without bids', unsold.message())

    def test_references(self):
        ending = AuctionEndingSoon(auction_id=7, auction_title='Ayam Cemani Pair', end_date=datetime(2026, 3, 2))
        self.assertEqual(ending.reference, '7')

        failed = PaymentFailed(
            auction_id=7, auction_title='Ayam Cemani Pair', amount=45000, reason='declined',
            payment_window=2, back_to_decision=True,
        )
        self.assertEqual(failed.reference, '7:2')


class DispatcherTestCase(EngineTestSupport, unittest.TestCase):
    def setUp(self):
        super().setUp()
        self.dispatcher = self.engine.dispatcher
        self.notice = AuctionEndingSoon(auction_id=1, auction_title='Ayam Cemani Pair', end_date=datetime(2026, 3, 3, 12))

    def test_delivered_after_commit(self):
        with unit_of_work(self.dispatcher):
            result = self.dispatcher.notify(self.alice, self.notice)
            self.assertEqual(self.mailer.sent, [])

        self.assertEqual(result, NotifyResult.SENT)
        self.assertEqual(self.mailer.sent, [(self.alice, NotificationType.AUCTION_ENDING_SOON, self.notice)])
        record = self.notifications(NotificationType.AUCTION_ENDING_SOON)[0]
        self.assertEqual(record.reference, '1')
        self.assertEqual(record.title, 'Auction Ending Soon')
        self.assertFalse(record.is_read)
        self.assertEqual(record.delivered_at, self.clock.now)

    def test_same_key_is_sent_once(self):
        with unit_of_work(self.dispatcher):
            self.dispatcher.notify(self.alice, self.notice)
        with unit_of_work(self.dispatcher):
            self.assertEqual(self.dispatcher.notify(self.alice, self.notice), NotifyResult.SKIPPED)
            self.assertEqual(self.dispatcher.notify(self.bob, self.notice), NotifyResult.SENT)
            self.assertEqual(self.dispatcher.notify(self.carol, self.notice, per_recipient=False), NotifyResult.SKIPPED)

        self.assertEqual([user_id for user_id, _, _ in self.mailer.sent], [self.alice, self.bob])
        self.assertEqual(len(self.notifications()), 2)

    def test_rolled_back_transaction_sends_nothing(self):
        with self.assertRaises(RuntimeError):
            with unit_of_work(self.dispatcher):
                self.dispatcher.notify(self.alice, self.notice)
                raise RuntimeError('transition failed')

        self.assertEqual(self.mailer.sent, [])
        self.assertEqual(self.notifications(), [])

        with unit_of_work(self.dispatcher):
            self.assertEqual(self.dispatcher.notify(self.alice, self.notice), NotifyResult.SENT)

    def test_mailer_failure_keeps_record_for_redelivery(self):
        shipped = ItemShipped(
            auction_id=1,
            auction_title='Ayam Cemani Pair',
            shipping_carrier='USPS',
            tracking_number='9400111899223817',
            shipping_date=datetime(2026, 3, 4, 8, 30),
            estimated_delivery_date=datetime(2026, 3, 6),
        )
        self.mailer.fail = True
        with unit_of_work(self.dispatcher):
            self.dispatcher.notify(self.bob, shipped)

        record = self.notifications(NotificationType.ITEM_SHIPPED)[0]
        self.assertIsNone(record.delivered_at)
        self.assertEqual(record.delivery_attempts, 1)
        self.assertEqual(record.next_attempt_at, self.clock.now + timedelta(minutes=5))

        self.mailer.fail = False
        with self.subTest('not retried before its next attempt is due'):
            self.assertEqual(self.dispatcher.redeliver_undelivered(), 0)
            self.assertEqual(self.mailer.sent, [])

        self.clock.advance(minutes=5)
        self.assertEqual(self.dispatcher.redeliver_undelivered(), 1)
        self.assertEqual(self.mailer.sent, [(self.bob, NotificationType.ITEM_SHIPPED, shipped)])
        self.assertIsNotNone(db.session.get(Notification, record.id, populate_existing=True).delivered_at)
        self.assertEqual(self.dispatcher.redeliver_undelivered(), 0)

    def ending_soon(self, auction_id):
        return AuctionEndingSoon(auction_id=auction_id, auction_title='Welsummer Cockerel', end_date=datetime(2026, 3, 3, 12))

    def test_unreachable_recipient_does_not_block_others(self):
        self.mailer.fail = True
        with unit_of_work(self.dispatcher):
            for auction_id in (1, 2, 3):
                self.dispatcher.notify(self.carol, self.ending_soon(auction_id))
            self.dispatcher.notify(self.bob, self.ending_soon(4))
        self.mailer.fail = False
        self.mailer.unreachable = {self.carol}

        self.clock.advance(minutes=5)
        self.assertEqual(self.dispatcher.redeliver_undelivered(limit=3), 0)

        # carol's records now wait twice as long, bob's is due
        self.clock.advance(minutes=5)
        self.assertEqual(self.dispatcher.redeliver_undelivered(limit=3), 1)
        self.assertEqual(len(self.mailer.sent_to(self.bob)), 1)
        self.assertEqual(
            {n.delivery_attempts for n in self.notifications(user_id=self.carol)}, {2}
        )

    def test_gives_up_after_max_attempts(self):
        self.mailer.unreachable = {self.carol}
        with unit_of_work(self.dispatcher):
            self.dispatcher.notify(self.carol, self.ending_soon(1))

        for _ in range(10):
            self.clock.advance(days=1)
            self.dispatcher.redeliver_undelivered()

        record = self.notifications(user_id=self.carol)[0]
        self.assertIsNone(record.delivered_at)
        self.assertIsNone(record.next_attempt_at)
        self.assertEqual(record.delivery_attempts, 5)
        self.assertEqual(len(self.mailer.failures), 5)

    def test_notice_from_record(self):
        with unit_of_work(self.dispatcher):
            self.dispatcher.notify(self.alice, self.notice)
        record = self.notifications(NotificationType.AUCTION_ENDING_SOON)[0]
        self.assertEqual(notice_from_record(record), self.notice)


if __name__ == '__main__':
    unittest.main()
