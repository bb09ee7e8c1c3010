from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

db = SQLAlchemy()
migrate = Migrate()


def create_app(config_object='config.Config'):
    app = Flask(__name__)
    app.config.from_object(config_object)

    # Initialize SQLAlchemy and Migrate
    db.init_app(app)
    migrate.init_app(app, db)

    # Import here to avoid circular imports
    from .engine import AuctionEngine
    from .cli import register_commands

    app.extensions['bidhouse'] = AuctionEngine.from_config(app.config)
    register_commands(app)

    return app


def get_engine(app=None):
    from flask import current_app

    return (app or current_app).extensions['bidhouse']
