"""Runtime settings.

Loads from environment variables and .env file, following the
pydantic-settings pattern. Rule thresholds live in the YAML rule file
(see rules_config.py); this module only covers deployment and timing knobs.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings


class PondSettings(BaseSettings):
    """Configuration for the pond monitoring core and its HTTP surface."""

    # ----- Rules -----
    rules_path: str | None = Field(
        default=None,
        description="Path to a rule YAML file. Packaged tilapia.yaml if unset.",
    )
    timezone: str = Field(
        default="Asia/Manila",
        description="Timezone used for 'today' and daily metric keys.",
    )

    # ----- Storage (Supabase PostgREST) -----
    supabase_url: str = Field(
        default="",
        description="Supabase project URL. Empty selects the in-memory store.",
    )
    supabase_service_key: str = Field(
        default="",
        description="Supabase service role key.",
    )

    # ----- Evaluation timing -----
    evaluation_interval_seconds: float = Field(
        default=300.0,
        description="Coarse timer for mortality, growth and offline evaluators.",
    )
    sweep_interval_seconds: float = Field(
        default=5.0,
        description="How often expired ephemeral findings are auto-resolved.",
    )
    offline_clear_delay_seconds: float = Field(
        default=5.0,
        description="Grace period before water findings are cleared on offline.",
    )
    notice_ttl_minutes: float = Field(
        default=5.0,
        description="Lifetime of ephemeral notices (recovered, feeding, ABW logged).",
    )
    default_snooze_hours: float = Field(default=6.0, description="Default snooze length.")

    # ----- Server -----
    host: str = Field(default="0.0.0.0", description="Bind host.")
    port: int = Field(default=8010, description="Bind port.")
    dev_mode: bool = Field(
        default=False,
        description="Dev mode: error details in responses, CORS wildcard.",
    )
    log_level: str = Field(default="INFO", description="Root log level for the CLI.")

    model_config = {
        "env_prefix": "POND_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> PondSettings:
    """Get cached settings singleton."""
    return PondSettings()
