"""Voting service configuration."""

import os
import secrets
from typing import Optional

from pydantic import BaseModel, Field, model_validator

ENV_PREFIX = "BF_"

# Development-only access codes. Production deployments must set their own.
DEV_MASTER_ACCESS_CODE = "bfethcc8master"
DEV_USER_ACCESS_CODE = "BFethcc8"


class VotingConfig(BaseModel):
    """Configuration for the ledger, match store, coordinator and sync layers."""

    min_vote_interval_ms: int = Field(ge=0, default=5000)
    operation_timeout_seconds: float = Field(gt=0, default=8.0)
    increment_max_attempts: int = Field(ge=1, default=5)
    increment_backoff_seconds: float = Field(ge=0, default=0.01)
    subscriber_timeout_seconds: float = Field(gt=0, default=8.0)
    snapshot_schedule: str = "*/5 * * * *"          # Cron expression
    snapshot_min_interval_seconds: int = Field(ge=0, default=60)
    master_access_code: str = DEV_MASTER_ACCESS_CODE
    user_access_code: str = DEV_USER_ACCESS_CODE
    session_secret: str = Field(default_factory=lambda: secrets.token_hex(32))
    session_ttl_seconds: int = Field(gt=0, default=3600)
    database_path: str = ":memory:"
    media_dir: Optional[str] = None                 # None = keep media in memory
    media_gateway: str = "gateway.pinata.cloud"
    log_environment: str = "development"            # "production" = JSON logs, own access codes

    @model_validator(mode="after")
    def _require_production_codes(self) -> "VotingConfig":
        if self.log_environment == "production":
            for name, dev_value in (
                ("master_access_code", DEV_MASTER_ACCESS_CODE),
                ("user_access_code", DEV_USER_ACCESS_CODE),
            ):
                if getattr(self, name) == dev_value:
                    raise ValueError(
                        f"{ENV_PREFIX}{name.upper()} must be set in production"
                    )
        return self

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "VotingConfig":
        """Build a config from BF_* environment variables; unset keys keep defaults."""
        env = os.environ if environ is None else environ
        values = {}
        for name in cls.model_fields:
            raw = env.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is not None and raw != "":
                values[name] = raw
        return cls.model_validate(values)
