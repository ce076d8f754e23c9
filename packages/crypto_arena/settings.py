"""
Application settings and configuration management.

Uses pydantic-settings for validation and environment variable loading.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ArenaSettings(BaseSettings):
    """Arena settings loaded from environment variables or .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Decision oracle (OpenAI-compatible chat completion endpoint)
    minimax_api_key: Optional[str] = Field(
        default=None, description="API key for the decision oracle"
    )
    minimax_group_id: Optional[str] = Field(
        default=None, description="Optional MiniMax group id query parameter"
    )
    oracle_base_url: str = Field(
        default="https://api.minimax.chat/v1/text/chatcompletion_v2",
        description="Chat completion endpoint",
    )
    oracle_model: str = Field(default="MiniMax-Text-01", description="Model name")
    decision_timeout_seconds: float = Field(
        default=30.0, description="Per-decision timeout inside a tick"
    )

    # Backtest defaults
    default_fee_rate: float = Field(default=0.001, description="0.1% taker fee")
    default_initial_capital: float = Field(default=10_000.0)
    default_step_minutes: int = Field(default=15)
    default_interval: str = Field(default="1m")

    # Market store
    database_path: str = Field(
        default="data/market-v2.db", description="Path to DuckDB kline store"
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_file: Optional[str] = Field(default=None, description="Optional log file")

    @property
    def has_oracle_credentials(self) -> bool:
        """True when a real oracle can be called."""
        return bool(self.minimax_api_key)


@lru_cache()
def get_settings() -> ArenaSettings:
    """Get cached settings instance."""
    return ArenaSettings()
