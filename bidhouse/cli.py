import click


def register_commands(app):
    @app.cli.command('close-auctions')
    def close_auctions():
        """Run one activation, closing and ending-soon pass."""
        from bidhouse import get_engine

        closing = get_engine().closing
        activated = closing.activate_scheduled_auctions()
        closed = closing.close_expired_auctions()
        ending = closing.notify_ending_soon()
        click.echo(f"Activated: {activated}")
        click.echo(f"Closed: {closed}")
        click.echo(f"Ending soon: {ending}")

    @app.cli.command('expire-payments')
    def expire_payments():
        """Fail every sale whose payment window has passed."""
        from bidhouse import get_engine

        expired = get_engine().settlement.expire_overdue_payments()
        click.echo(f"Expired {len(expired)} overdue payments.")

    @app.cli.command('run-scheduler')
    def run_scheduler():
        """Run the periodic passes until interrupted."""
        from flask import current_app

        from bidhouse.scheduler_worker import run

        run(current_app._get_current_object())
