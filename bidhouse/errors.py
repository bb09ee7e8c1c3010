"""
Exceptions raised by the auction engine.

Validation errors are surfaced to the caller as-is and are never retried.
State machine errors mean the requested event is illegal for the auction's
current status. Collaborator errors wrap failures of the payment gateway; the
state is left where it was so the call can be retried.
"""


class BidhouseError(Exception):
    pass


# Validation

class ValidationError(BidhouseError):
    pass


class InvalidBidAmount(ValidationError):
    pass


class InvalidAuction(ValidationError):
    pass


class AuctionWindowClosed(ValidationError):
    def __init__(self, auction_id, message=None):
        self.auction_id = auction_id
        super().__init__(message or f"Auction {auction_id} is not open for bidding at this time")


class SelfBiddingForbidden(ValidationError):
    def __init__(self, auction_id):
        self.auction_id = auction_id
        super().__init__(f"You cannot bid on your own auction ({auction_id})")


class BidTooLow(ValidationError):
    def __init__(self, auction_id, amount, current_price):
        self.auction_id = auction_id
        self.amount = amount
        self.current_price = current_price
        super().__init__(
            f"Bid of {amount} on auction {auction_id} must be higher than the current price of {current_price}"
        )


class NotAuthorized(ValidationError):
    pass


class UnknownGatewayStatus(ValidationError):
    pass


class AuctionNotFound(ValidationError):
    def __init__(self, auction_id):
        self.auction_id = auction_id
        super().__init__(f"Auction {auction_id} not found")


class PaymentNotFound(ValidationError):
    pass


# State machine

class InvalidStateTransition(BidhouseError):
    def __init__(self, auction_id, status, event, reason=None):
        self.auction_id = auction_id
        self.status = status
        self.event = event
        message = f"Cannot apply {event} to auction {auction_id} in status {status}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class AuctionNotActive(InvalidStateTransition):
    def __init__(self, auction_id, status):
        super().__init__(auction_id, status, 'place_bid', 'auction is not active')


class AlreadyFulfilled(InvalidStateTransition):
    def __init__(self, auction_id):
        super().__init__(auction_id, 'fulfilled', 'seller_submits_tracking', 'fulfillment was already submitted')


# External collaborators

class GatewayError(BidhouseError):
    pass

