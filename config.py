"""
Configuration management for InvestMate.
Uses pydantic-settings for type-safe, centralized configuration.
"""

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Every tunable of the engine. Values come from the process environment
    or a .env file; field names match the variable names case-insensitively.
    """

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        extra='ignore'
    )

    # Database
    database_url: str = "sqlite:///investmate.db"
    db_echo: bool = False

    # OpenAI / Cloud LLM Configuration
    openai_api_key: Optional[str] = None
    openai_model: Optional[str] = None
    openai_base_url: Optional[str] = None

    # Local LLM Configuration (Ollama)
    local_model: str = "qwen2.5:14b"
    local_llm_url: str = "http://localhost:11434/v1"
    llm_mode: str = "cloud"
    default_language: str = "en"

    # Market data providers
    finnhub_api_key: Optional[str] = None
    finnhub_base_url: str = "https://finnhub.io/api/v1"
    tencent_quote_url: str = "http://sqt.gtimg.cn/utf8"
    provider_timeout_seconds: float = 15.0
    provider_max_attempts: int = 3
    retry_wait_multiplier: float = 1.0
    retry_wait_max_seconds: float = 10.0
    quote_refresh_concurrency: int = 5

    # Information ingestion
    crawl_timeout_seconds: float = 30.0
    analysis_timeout_seconds: float = 60.0
    analysis_max_chars: int = 4000
    min_content_chars: int = 50
    pending_stale_minutes: int = 30

    # Allocation bands used by risk assessment and advice
    stock_allocation_max: float = 0.9
    stock_allocation_min: float = 0.3
    cash_allocation_max: float = 0.5
    aggressive_stock_allocation: float = 0.8
    moderate_stock_allocation: float = 0.5
    min_diversification_score: float = 30.0
    diversification_full_count: int = 10
    position_concentration_limit: float = 0.3
    risk_free_rate: float = 0.025

    # Portfolio risk insights
    risk_mode: str = "retail"  # "retail" flags single assets above 10%, "advanced" above 5%
    correlation_lookback_days: int = 90
    high_correlation_threshold: float = 0.5

    # Fixed exchange rates into USD
    hkd_to_usd: float = 0.128
    cny_to_usd: float = 0.138

    @property
    def is_finnhub_configured(self) -> bool:
        """Finnhub needs an API key; without one the adapter is not registered."""
        return bool(self.finnhub_api_key)

    @property
    def exchange_rates_to_usd(self) -> dict:
        """Fixed conversion table keyed by currency code."""
        return {
            "USD": 1.0,
            "HKD": self.hkd_to_usd,
            "CNY": self.cny_to_usd,
        }


# Global settings instance, only touched from entry points
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Settings for entry points, built once from the environment."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Rebuild the cached settings after the environment changed."""
    global _settings
    _settings = Settings()
    return _settings
