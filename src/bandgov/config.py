"""Application settings via pydantic-settings. Loads from environment and .env file."""

from __future__ import annotations

from pydantic import model_validator
from pydantic_settings import BaseSettings

# Default cron expression for the expired-proposal sweep.
_DEFAULT_SWEEP_CRON = "*/5 * * * *"


class Settings(BaseSettings):
    """Band governance configuration.

    All values can be overridden via environment variables or .env file.
    """

    # Database
    database_url: str = "sqlite+aiosqlite:///bandgov.db"

    # Environment
    bandgov_env: str = "development"

    # Scheduling
    bandgov_auto_sweep: bool = True
    bandgov_sweep_cron: str = _DEFAULT_SWEEP_CRON

    # Governance
    bandgov_default_voting_period_days: int = 7
    bandgov_effect_timeout_seconds: float = 10.0

    # Logging
    bandgov_log_level: str = "INFO"

    model_config = {"env_prefix": "", "env_file": ".env", "extra": "ignore"}

    @model_validator(mode="after")
    def _check_effect_timeout(self) -> Settings:
        """A handler call must always be bounded."""
        if self.bandgov_effect_timeout_seconds <= 0:
            msg = "BANDGOV_EFFECT_TIMEOUT_SECONDS must be a positive number of seconds"
            raise ValueError(msg)
        return self

    @model_validator(mode="after")
    def _reject_memory_db_in_production(self) -> Settings:
        """In production, an in-memory database would silently lose all governance state."""
        if self.bandgov_env == "production" and ":memory:" in self.database_url:
            msg = "DATABASE_URL must point at a persistent database in production"
            raise ValueError(msg)
        return self

    def effective_sweep_cron(self) -> str | None:
        """Return the cron expression that should drive the expiry sweep.

        Returns ``None`` when automatic sweeping is disabled. The scheduler
        should not start a job and proposals close only by manual action.
        """
        if not self.bandgov_auto_sweep:
            return None
        return self.bandgov_sweep_cron
