"""Runtime configuration with pydantic-settings"""
from enum import Enum
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class MissingTaxPolicy(str, Enum):
    """What to do when an invoice states no tax figure"""
    ZERO = "zero"
    DERIVE = "derive"


class Provider(str, Enum):
    GEMINI = "gemini"
    OLLAMA = "ollama"


class Settings(BaseSettings):
    """Pipeline settings, read from RECEIPT_LEDGER_* environment variables.

    An instance is created once at the entry point and passed explicitly
    to the batch processor and recognizers.
    """

    model_config = SettingsConfigDict(
        env_prefix="RECEIPT_LEDGER_",
        env_file=".env",
        extra="ignore",
    )

    # Vision model
    provider: Provider = Provider.GEMINI
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.5-flash"
    ollama_model: str = "qwen3-vl"
    ollama_host: Optional[str] = None
    request_timeout_seconds: float = 120.0

    # Rate limiting
    request_delay_seconds: float = 0.5
    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    backoff_factor: float = 2.0

    # Normalization
    missing_tax_policy: MissingTaxPolicy = MissingTaxPolicy.ZERO

    # API
    max_upload_mb: int = 20
    log_level: str = "INFO"
