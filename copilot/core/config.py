"""Configuration management."""
import os
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv(override=False)


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore"  # Ignore extra environment variables
    )

    # Database
    database_url: str = os.getenv("DATABASE_URL") or os.getenv("TEST_DATABASE_URL", "sqlite:///./copilot.db")
    test_database_url: Optional[str] = os.getenv("TEST_DATABASE_URL")

    # Environment: "development", "test", "production"
    app_env: str = os.getenv("APP_ENV", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Simulated account
    account_value_usd: float = float(os.getenv("ACCOUNT_VALUE_USD", "10000"))
    initial_usdc_balance: float = float(os.getenv("INITIAL_USDC_BALANCE", "4000"))

    # Draft sizing
    default_risk_percent: float = float(os.getenv("DEFAULT_RISK_PERCENT", "3"))
    default_leverage: float = float(os.getenv("DEFAULT_LEVERAGE", "1"))
    max_leverage: float = float(os.getenv("MAX_LEVERAGE", "20"))
    min_size_usd: float = float(os.getenv("MIN_SIZE_USD", "100"))

    # High-risk gate
    high_risk_leverage_threshold: float = float(os.getenv("HIGH_RISK_LEVERAGE_THRESHOLD", "10"))
    max_risk_per_trade_pct: float = float(os.getenv("MAX_RISK_PER_TRADE_PCT", "5"))

    # Conversation / execution
    execution_delay_seconds: float = float(os.getenv("EXECUTION_DELAY_SECONDS", "1.5"))
    idempotency_window_seconds: int = int(os.getenv("IDEMPOTENCY_WINDOW_SECONDS", "10"))
    clarification_retry_cap: int = int(os.getenv("CLARIFICATION_RETRY_CAP", "3"))

    # Blocked drafts re-enter the queue automatically when the account is funded.
    # When off, the user must resubmit via the explicit retry action.
    auto_retry_blocked: bool = os.getenv("AUTO_RETRY_BLOCKED", "false").lower() == "true"

    # Invariant violations raise when strict, log and no-op otherwise.
    # Unset means strict everywhere except APP_ENV=production.
    strict_invariants: Optional[bool] = None

    def invariants_are_strict(self) -> bool:
        """Resolve strict-invariant mode from explicit flag or environment."""
        if self.strict_invariants is not None:
            return self.strict_invariants
        from copilot.core.test_utils import is_test_mode
        return is_test_mode() or self.app_env.lower() != "production"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get settings singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Reset settings singleton. Used for test isolation."""
    global _settings
    _settings = None
