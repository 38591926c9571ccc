"""Ballotbox — Application configuration via environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class BallotSettings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "BALLOTBOX_",
        "extra": "ignore",
    }

    # ── Audit trail ────────────────────────────────────────────
    database_url: str = "sqlite:///ballotbox_audit.db"

    # ── Ledgers ────────────────────────────────────────────────
    default_voting_hours: int = 24
    rights_transferable: bool = True

    # ── Settlement ─────────────────────────────────────────────
    scheduler_poll_seconds: int = 15
    randomness_timeout_seconds: int = 3600
    randomness_max_attempts: int = 3

    # ── Logging ────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "json"


settings = BallotSettings()
