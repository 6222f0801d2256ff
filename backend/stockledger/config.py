# backend/stockledger/config.py
from __future__ import annotations
import os


class Config:
    # SQLite DB stored in backend/instance/stockledger.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///stockledger.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Engine defaults; tenants may override both through TenantSetting rows
    NEAR_EXPIRY_DAYS = int(os.environ.get("NEAR_EXPIRY_DAYS", "30"))
    RECONCILIATION_TOLERANCE_CENTS = int(os.environ.get("RECONCILIATION_TOLERANCE_CENTS", "0"))

    # Retries for deadlocks / lock timeouts / version conflicts
    DB_RETRY_ATTEMPTS = int(os.environ.get("DB_RETRY_ATTEMPTS", "3"))
