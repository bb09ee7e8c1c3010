"""
Background worker running the periodic auction passes.

    python -m bidhouse.scheduler_worker
"""
import logging
import time

from apscheduler.schedulers.background import BackgroundScheduler

from bidhouse import create_app, get_engine

logger = logging.getLogger(__name__)


def _in_app_context(app, func):
    def job():
        with app.app_context():
            return func()
    job.__name__ = func.__name__
    return job


def build_scheduler(app, engine=None):
    engine = engine or get_engine(app)
    interval = app.config['CLOSING_SWEEP_INTERVAL_MINUTES']

    scheduler = BackgroundScheduler(
        job_defaults={
            'coalesce': True,  # Combine missed runs into one
            'max_instances': 1,  # Only one instance of each job at a time
        }
    )
    jobs = [
        ('activate_scheduled_auctions', engine.closing.activate_scheduled_auctions),
        ('close_expired_auctions', engine.closing.close_expired_auctions),
        ('notify_ending_soon', engine.closing.notify_ending_soon),
        ('expire_overdue_payments', engine.settlement.expire_overdue_payments),
        ('release_pending_payouts', engine.settlement.release_pending_payouts),
        ('redeliver_notifications', engine.dispatcher.redeliver_undelivered),
    ]
    for job_id, func in jobs:
        scheduler.add_job(
            func=_in_app_context(app, func),
            trigger='interval',
            minutes=interval,
            id=job_id,
            replace_existing=True,
        )
    return scheduler


def run(app):
    scheduler = build_scheduler(app)
    scheduler.start()
    logger.info("Scheduler started")

    # Keep the process running
    try:
        while True:
            time.sleep(1)
    except (KeyboardInterrupt, SystemExit):
        scheduler.shutdown()
        logger.info("Scheduler stopped")


def main():
    app = create_app()
    logging.basicConfig(level=app.config['LOG_LEVEL'], format='%(asctime)s - %(message)s')
    run(app)


if __name__ == "__main__":
    main()
