"""Centralised application settings loaded from environment / .env file."""

from __future__ import annotations

import os
from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


def _resolve_db_dir() -> Path:
    """Return (and create) the directory that holds the SQLite file."""
    d = Path(os.getenv("CGM_AGENT_DATA_DIR", str(_PROJECT_ROOT / "data")))
    d.mkdir(parents=True, exist_ok=True)
    return d


_DEFAULT_DB_URL = f"sqlite+aiosqlite:///{_resolve_db_dir() / 'cgm_agent.db'}"


class Settings(BaseSettings):
    """All runtime configuration for the cgm-agent worker.

    Values are read from environment variables first, then from a *.env* file
    located at the project root.  Every variable lives in a flat namespace;
    ``ANALYSIS_INTERVAL_MINUTES=5`` overrides :attr:`analysis_interval_minutes`.
    """

    model_config = SettingsConfigDict(
        env_file=str(_PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── LLM ───────────────────────────────────────────────────
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_max_tokens: int = 4096
    openai_request_timeout: float = 120.0
    comparison_model: str = "gpt-5-mini"
    extraction_model: str = "gpt-4o-mini"
    daily_summary_model: str = "gpt-5-mini"

    # ── Database ──────────────────────────────────────────────
    database_url: str = _DEFAULT_DB_URL

    # ── Window segmentation ───────────────────────────────────
    default_lookback_minutes: int = 180
    default_lookahead_minutes: int = 240
    minimum_lookahead_minutes: int = 180

    # ── Change detection & cooldown ───────────────────────────
    stats_change_epsilon: float = 0.01
    reanalysis_cooldown_minutes: int = 30

    # ── Target band (mg/dL) ───────────────────────────────────
    target_range_low: float = 70.0
    target_range_high: float = 180.0

    # ── Loops ─────────────────────────────────────────────────
    analysis_interval_minutes: int = 15
    measurement_poll_interval_minutes: int = 5
    marker_poll_interval_minutes: int = 5
    startup_delay_seconds: int = 0
    daily_summary_interval_minutes: int = 30
    daily_summary_startup_delay_seconds: int = 60

    # ── Job queues ────────────────────────────────────────────
    job_error_max_length: int = 2000
    chat_error_max_length: int = 500

    # ── Notifications ─────────────────────────────────────────
    webhook_url: str = ""

    # ── Display ───────────────────────────────────────────────
    display_timezone: str = "Europe/Warsaw"

    # ── Agent behaviour ───────────────────────────────────────
    agent_log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    @property
    def analyzer_configured(self) -> bool:
        return bool(self.openai_api_key.strip())

    @property
    def default_lookback(self) -> timedelta:
        return timedelta(minutes=self.default_lookback_minutes)

    @property
    def default_lookahead(self) -> timedelta:
        return timedelta(minutes=self.default_lookahead_minutes)

    @property
    def minimum_lookahead(self) -> timedelta:
        return timedelta(minutes=self.minimum_lookahead_minutes)

    @property
    def reanalysis_cooldown(self) -> timedelta:
        """Cooldown between non-forced analyses of one window, clamped to at least one minute."""
        return timedelta(minutes=max(1, self.reanalysis_cooldown_minutes))


@lru_cache
def get_settings() -> Settings:
    """Return a cached :class:`Settings` singleton."""
    return Settings()


def reload_settings() -> Settings:
    """Drop the cached settings and read the environment / .env again.

    Periodic loops call this once per cycle so operators can change
    intervals without restarting the process.
    """
    get_settings.cache_clear()
    return get_settings()
