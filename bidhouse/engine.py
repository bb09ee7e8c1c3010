from datetime import timedelta

from bidhouse.closing import ClosingScheduler
from bidhouse.ledger import BidLedger
from bidhouse.lifecycle import AuctionLifecycle
from bidhouse.notifications import LoggingMailer, NotificationDispatcher, TwilioMailer
from bidhouse.services import SandboxPaymentGateway, SandboxPayoutService
from bidhouse.settlement import FeeSchedule, SettlementCoordinator
from bidhouse.utils import utcnow


class AuctionEngine:
    """Wires the ledger, lifecycle, closing and settlement components together."""

    def __init__(self, mailer, gateway, payout_service, fees, clock=utcnow,
                 anti_sniping_window=timedelta(minutes=5), bid_max_retries=3,
                 payment_window=timedelta(hours=24), ending_soon_lead=timedelta(hours=1),
                 notification_max_attempts=5, notification_retry_backoff=timedelta(minutes=5)):
        self.clock = clock
        self.dispatcher = NotificationDispatcher(
            mailer, clock=clock, max_attempts=notification_max_attempts, retry_backoff=notification_retry_backoff
        )
        self.ledger = BidLedger(
            self.dispatcher, clock=clock, anti_sniping_window=anti_sniping_window, max_retries=bid_max_retries
        )
        self.settlement = SettlementCoordinator(
            self.dispatcher, self.ledger, gateway, payout_service, fees, clock=clock, payment_window=payment_window
        )
        self.lifecycle = AuctionLifecycle(self.dispatcher, self.ledger, self.settlement, clock=clock)
        self.closing = ClosingScheduler(
            self.dispatcher, self.ledger, self.settlement, clock=clock, ending_soon_lead=ending_soon_lead
        )

    @classmethod
    def from_config(cls, config, mailer=None, gateway=None, payout_service=None, clock=utcnow):
        if mailer is None:
            if config.get('MAILER') == 'twilio':
                mailer = TwilioMailer(
                    config['TWILIO_ACCOUNT_SID'], config['TWILIO_AUTH_TOKEN'], config['TWILIO_PHONE_NUMBER']
                )
            else:
                mailer = LoggingMailer()

        return cls(
            mailer=mailer,
            gateway=gateway or SandboxPaymentGateway(),
            payout_service=payout_service or SandboxPayoutService(),
            fees=FeeSchedule.from_config(config),
            clock=clock,
            anti_sniping_window=timedelta(minutes=config['ANTI_SNIPING_WINDOW_MINUTES']),
            bid_max_retries=config['BID_MAX_RETRIES'],
            payment_window=timedelta(hours=config['PAYMENT_WINDOW_HOURS']),
            ending_soon_lead=timedelta(minutes=config['ENDING_SOON_LEAD_MINUTES']),
            notification_max_attempts=config['NOTIFICATION_MAX_ATTEMPTS'],
            notification_retry_backoff=timedelta(minutes=config['NOTIFICATION_RETRY_MINUTES']),
        )
