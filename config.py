import os
from decimal import Decimal

import rules


def _env_decimal(name, default):
    value = os.environ.get(name)
    return Decimal(value) if value not in (None, '') else default


def _env_int(name, default):
    value = os.environ.get(name)
    return int(value) if value not in (None, '') else default


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY', 'library-dev-secret')  # In production, set the env var
    SQLALCHEMY_DATABASE_URI = os.environ.get('SQLALCHEMY_DATABASE_URI', 'sqlite:///library.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    UPLOAD_FOLDER = os.environ.get('UPLOAD_FOLDER', 'uploads')
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    LIBRARY_FINE_PER_DAY = _env_decimal('LIBRARY_FINE_PER_DAY', rules.FINE_PER_DAY)
    LIBRARY_LOST_BOOK_PENALTY = _env_decimal('LIBRARY_LOST_BOOK_PENALTY', rules.LOST_BOOK_PENALTY)
    # None means fines accrue without a ceiling
    LIBRARY_MAX_FINE = _env_decimal('LIBRARY_MAX_FINE', None)
    LIBRARY_RESERVATION_HOLD_DAYS = _env_int('LIBRARY_RESERVATION_HOLD_DAYS', rules.RESERVATION_HOLD_DAYS)
    LIBRARY_PICKUP_WINDOW_DAYS = _env_int('LIBRARY_PICKUP_WINDOW_DAYS', rules.PICKUP_WINDOW_DAYS)
    LIBRARY_MAX_ACTIVE_RESERVATIONS = _env_int('LIBRARY_MAX_ACTIVE_RESERVATIONS', rules.MAX_ACTIVE_RESERVATIONS)
    LIBRARY_DEFAULT_SUSPENSION_DAYS = _env_int('LIBRARY_DEFAULT_SUSPENSION_DAYS', rules.DEFAULT_SUSPENSION_DAYS)
    LIBRARY_DUE_SOON_DAYS = _env_int('LIBRARY_DUE_SOON_DAYS', rules.DUE_SOON_DAYS)


class TestConfig(Config):
    TESTING = True
    SECRET_KEY = 'test-secret'
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    LOG_LEVEL = 'WARNING'
