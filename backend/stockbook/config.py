# backend/stockbook/config.py
from __future__ import annotations
import os


def _int_list(value: str) -> list[int]:
    return [int(part) for part in value.split(",") if part.strip()]


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/stockbook.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",  # optional alternative location
        "sqlite:///stockbook.sqlite3",  # default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Price tier used when a sale does not name one
    DEFAULT_PRICE_TIER = os.environ.get("DEFAULT_PRICE_TIER", "regular")

    PRICE_BREAKDOWN_QUANTITIES = _int_list(
        os.environ.get("PRICE_BREAKDOWN_QUANTITIES", "1,5,10,25,50,100")
    )

    # Attempts for run_with_retry on lock/version conflicts
    RETRY_ATTEMPTS = int(os.environ.get("RETRY_ATTEMPTS", "3"))


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    LOG_LEVEL = "DEBUG"
    RETRY_ATTEMPTS = 1
