from contextlib import contextmanager
from datetime import datetime, timezone
import logging

from bidhouse import db

logger = logging.getLogger(__name__)


def utcnow():
    """Naive UTC now, the form datetimes are stored in."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@contextmanager
def unit_of_work(dispatcher=None):
    """
    Commits the session on success and rolls it back on any error.

    Notifications recorded inside the block are handed to the mailer only
    after the commit went through, so a rolled back transition never sends.
    """
    try:
        yield db.session
        db.session.commit()
    except Exception:
        db.session.rollback()
        if dispatcher is not None:
            dispatcher.discard_pending()
        raise

    if dispatcher is not None:
        dispatcher.deliver_pending()


def locked_auction(auction_id):
    """Loads an auction holding a row lock until the transaction ends."""
    from bidhouse.models import Auction

    return db.session.execute(
        db.select(Auction)
        .where(Auction.id == auction_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
