import os
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY')  # Use environment variable
    SQLALCHEMY_DATABASE_URI = os.environ.get('SQLALCHEMY_DATABASE_URI', 'sqlite:///bidhouse.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False  # Disable to save resources

    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    # Fee rates are decimal fractions of the hammer price
    PLATFORM_FEE_RATE = Decimal(os.environ.get('PLATFORM_FEE_RATE', '0.10'))
    SELLER_FEE_RATE = Decimal(os.environ.get('SELLER_FEE_RATE', '0.10'))
    INSURANCE_FEE = int(os.environ.get('INSURANCE_FEE', 800))  # cents

    PAYMENT_WINDOW_HOURS = int(os.environ.get('PAYMENT_WINDOW_HOURS', 24))
    ANTI_SNIPING_WINDOW_MINUTES = int(os.environ.get('ANTI_SNIPING_WINDOW_MINUTES', 5))
    BID_MAX_RETRIES = int(os.environ.get('BID_MAX_RETRIES', 3))

    CLOSING_SWEEP_INTERVAL_MINUTES = int(os.environ.get('CLOSING_SWEEP_INTERVAL_MINUTES', 1))
    ENDING_SOON_LEAD_MINUTES = int(os.environ.get('ENDING_SOON_LEAD_MINUTES', 60))

    NOTIFICATION_MAX_ATTEMPTS = int(os.environ.get('NOTIFICATION_MAX_ATTEMPTS', 5))
    NOTIFICATION_RETRY_MINUTES = int(os.environ.get('NOTIFICATION_RETRY_MINUTES', 5))  # doubled after each failure

    # 'log' writes notices to the log, 'twilio' sends them as SMS
    MAILER = os.environ.get('MAILER', 'log')
    TWILIO_ACCOUNT_SID = os.environ.get('TWILIO_ACCOUNT_SID')
    TWILIO_AUTH_TOKEN = os.environ.get('TWILIO_AUTH_TOKEN')
    TWILIO_PHONE_NUMBER = os.environ.get('TWILIO_PHONE_NUMBER')


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    MAILER = 'log'
