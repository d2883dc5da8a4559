"""
Centralized configuration for the Lead Engagement Engine.

All settings are loaded from environment variables via .env file.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    """Application settings."""

    # Dealership
    dealership_name: str = Field(default="Jason Pilger Chevrolet", env="DEALERSHIP_NAME")
    salesperson_name: str = Field(default="Finn", env="SALESPERSON_NAME")
    dealership_timezone: str = Field(default="America/Chicago", env="DEALERSHIP_TIMEZONE")
    default_vehicle_price: float = Field(default=35000.0, env="DEFAULT_VEHICLE_PRICE")

    # AWS / Bedrock
    aws_region: str = Field(default="us-east-1", env="AWS_REGION")
    bedrock_llm_model_id: str = Field(
        default="us.anthropic.claude-sonnet-4-20250514-v1:0", env="BEDROCK_LLM_MODEL_ID"
    )

    # OpenAI
    openai_api_key: Optional[str] = Field(default=None, env="OPENAI_API_KEY")
    openai_llm_model: str = Field(default="gpt-4o-mini", env="OPENAI_LLM_MODEL")

    # LLM provider selection
    llm_provider: str = Field(default="openai", env="LLM_PROVIDER")  # bedrock | openai | none
    max_tokens: int = Field(default=200, env="MAX_TOKENS")
    temperature: float = Field(default=0.4, env="TEMPERATURE")

    # SMS gateway (Twilio)
    twilio_account_sid: Optional[str] = Field(default=None, env="TWILIO_ACCOUNT_SID")
    twilio_auth_token: Optional[str] = Field(default=None, env="TWILIO_AUTH_TOKEN")
    twilio_from_number: Optional[str] = Field(default=None, env="TWILIO_FROM_NUMBER")
    twilio_status_callback_url: Optional[str] = Field(default=None, env="TWILIO_STATUS_CALLBACK_URL")
    gateway_timeout_seconds: float = Field(default=10.0, env="GATEWAY_TIMEOUT_SECONDS")

    # Database
    database_url: str = Field(default="sqlite:///./engagement.db", env="DATABASE_URL")
    database_pool_size: int = Field(default=5, env="DATABASE_POOL_SIZE")
    database_max_overflow: int = Field(default=10, env="DATABASE_MAX_OVERFLOW")

    # Sweep timing
    send_delay_min_seconds: float = Field(default=1.0, env="SEND_DELAY_MIN_SECONDS")
    send_delay_max_seconds: float = Field(default=3.0, env="SEND_DELAY_MAX_SECONDS")
    followup_min_hours: float = Field(default=2.0, env="FOLLOWUP_MIN_HOURS")
    followup_max_hours: float = Field(default=3.0, env="FOLLOWUP_MAX_HOURS")
    advancement_threshold_hours: float = Field(default=2.0, env="ADVANCEMENT_THRESHOLD_HOURS")
    sweep_lead_limit: int = Field(default=50, env="SWEEP_LEAD_LIMIT")
    claim_ttl_seconds: int = Field(default=300, env="CLAIM_TTL_SECONDS")
    max_ai_messages_per_24h: int = Field(default=2, env="MAX_AI_MESSAGES_PER_24H")
    ai_takeover_delay_minutes: int = Field(default=7, env="AI_TAKEOVER_DELAY_MINUTES")
    trigger_cooldown_hours: float = Field(default=0.0, env="TRIGGER_COOLDOWN_HOURS")

    # Compliance
    rate_limit_max_sends: int = Field(default=1, env="RATE_LIMIT_MAX_SENDS")
    rate_limit_window_minutes: int = Field(default=10, env="RATE_LIMIT_WINDOW_MINUTES")
    auto_suppress_after_failures: int = Field(default=3, env="AUTO_SUPPRESS_AFTER_FAILURES")
    consent_hard_gate: bool = Field(default=False, env="CONSENT_HARD_GATE")
    enforce_business_hours: bool = Field(default=False, env="ENFORCE_BUSINESS_HOURS")
    business_hours_start: int = Field(default=9, env="BUSINESS_HOURS_START")
    business_hours_end: int = Field(default=19, env="BUSINESS_HOURS_END")

    # Learning
    learning_batch_size: int = Field(default=3, env="LEARNING_BATCH_SIZE")

    # API
    api_host: str = Field(default="0.0.0.0", env="API_HOST")
    api_port: int = Field(default=8000, env="API_PORT")
    api_title: str = Field(default="Lead Engagement Engine API", env="API_TITLE")
    api_version: str = Field(default="1.0.0", env="API_VERSION")

    # Logging
    log_level: str = Field(default="INFO", env="LOG_LEVEL")
    debug: bool = Field(default=False, env="DEBUG")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"

    @property
    def is_bedrock(self) -> bool:
        return self.llm_provider.lower() == "bedrock"

    @property
    def is_openai(self) -> bool:
        return self.llm_provider.lower() == "openai"

    @property
    def gateway_configured(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token and self.twilio_from_number)


@lru_cache()
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
