"""
Payment gateway and payout collaborators.

The engine only needs a reference back from each call; the gateway reports
the outcome of a charge asynchronously through
:meth:`bidhouse.settlement.SettlementCoordinator.on_gateway_callback`.
"""
import logging
from uuid import uuid4

logger = logging.getLogger(__name__)


class PaymentGateway:
    def initiate_charge(self, auction_id, amount, buyer_id):
        """Starts a charge of ``amount`` cents and returns the gateway reference."""
        raise NotImplementedError


class PayoutService:
    def release_payout(self, seller_id, amount, payment_id):
        """Transfers ``amount`` cents to the seller and returns the transfer reference."""
        raise NotImplementedError


class SandboxPaymentGateway(PaymentGateway):
    def initiate_charge(self, auction_id, amount, buyer_id):
        reference = f"sandbox_{uuid4().hex}"
        logger.info(f"Sandbox charge {reference} of {amount} for auction {auction_id} by buyer {buyer_id}")
        return reference


class SandboxPayoutService(PayoutService):
    def release_payout(self, seller_id, amount, payment_id):
        reference = f"sandbox_tr_{uuid4().hex}"
        logger.info(f"Sandbox payout {reference} of {amount} to seller {seller_id} for payment {payment_id}")
        return reference
