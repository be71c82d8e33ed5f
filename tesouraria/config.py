"""
Configuration management using Pydantic Settings.
All parameters are loaded from environment variables with sensible defaults.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Dict, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


APP_BASE_PATH = Path(os.environ.get(
    "TESOURARIA_BASE_PATH",
    os.environ.get("APP_BASE_PATH", Path.home() / ".tesouraria")
))
ENV_FILE_PATH = APP_BASE_PATH / ".env"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE_PATH),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: str = Field(default="development")
    app_debug: bool = Field(default=False)
    app_log_level: str = Field(default="INFO")

    # Server
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8000)

    # Database
    database_url: str = Field(default="sqlite:///./data/tesouraria.db")
    database_echo: bool = Field(default=False)
    transaction_retry_attempts: int = Field(default=3)

    # Candidate generation
    score_min: float = Field(default=0.7)
    date_window_days: int = Field(default=5)
    amount_tolerance_cents: int = Field(default=0)
    max_batch_size: int = Field(default=10)
    max_split_size: int = Field(default=10)
    max_group_candidates: int = Field(default=30)
    max_subset_solutions: int = Field(default=64)
    max_search_states: int = Field(default=200_000)
    default_lookback_days: int = Field(default=90)
    excluded_description_patterns: List[str] = Field(default_factory=lambda: ["CONTAMAX"])

    # Scoring
    weight_amount: float = Field(default=0.45)
    weight_date: float = Field(default=0.25)
    weight_description: float = Field(default=0.15)
    weight_shape: float = Field(default=0.15)
    temporal_decay_alpha: float = Field(default=0.1)
    batch_shape_factor: float = Field(default=0.6)
    split_shape_factor: float = Field(default=0.6)
    model_version: str = Field(default="v1")

    # Suggestion lifecycle
    suppress_rejected_pairings: bool = Field(default=True)
    high_confidence_score: float = Field(default=0.9)

    # Counting sessions
    counting_tolerance_cents: int = Field(default=0)
    counting_compare_level: str = Field(default="category")
    allow_divergent_override: bool = Field(default=False)
    require_independent_reviewer: bool = Field(default=True)
    sync_lookback_days: int = Field(default=7)

    def scoring_weights(self) -> Dict[str, float]:
        """
        Return the score weights normalised to sum to 1.
        """
        raw = {
            "amount": self.weight_amount,
            "date": self.weight_date,
            "description": self.weight_description,
            "shape": self.weight_shape,
        }
        total = sum(raw.values())
        if total <= 0:
            raise ValueError("Scoring weights must sum to a positive value")
        return {name: value / total for name, value in raw.items()}

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
