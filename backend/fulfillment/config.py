# backend/fulfillment/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///fulfillment.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Money Value Engine defaults (see services.money_service.MoneySettings)
    CURRENCY_SYMBOL = os.environ.get("CURRENCY_SYMBOL", "NT$")
    DEFAULT_TAX_RATE_PERCENT = float(os.environ.get("DEFAULT_TAX_RATE_PERCENT", "5"))

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Attempts for locked read-modify-write operations (transfer status, shipping cost)
    CONCURRENCY_RETRY_ATTEMPTS = int(os.environ.get("CONCURRENCY_RETRY_ATTEMPTS", "3"))


class TestConfig(Config):
    TESTING = True
    SECRET_KEY = "test"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    LOG_LEVEL = "DEBUG"
