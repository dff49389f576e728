#!/usr/bin/env python3
"""
Receipt OCR Configuration Settings
==================================

Configuration using Pydantic for validation.
Every setting can be overridden via environment variables or a .env file.

Usage:
    from receipt_ocr_chile.settings import get_settings
    settings = get_settings()
    print(settings.OCR_RATE_LIMIT_PER_SECOND)
"""

import os
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    OCR core settings with environment variable support.
    """

    # ==========================================================================
    # ENVIRONMENT
    # ==========================================================================
    ENVIRONMENT: str = Field(default="development", description="development, production or test")
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    LOG_JSON: Optional[bool] = Field(default=None, description="Force JSON logs (auto in production)")
    LOG_FILE: Optional[str] = Field(default=None, description="Optional JSON log file")

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def upper_log_level(cls, v):
        return str(v).upper()

    # ==========================================================================
    # GOOGLE VISION
    # ==========================================================================
    GOOGLE_CLOUD_PROJECT: str = Field(default="", description="Google Cloud project ID")
    GOOGLE_APPLICATION_CREDENTIALS: str = Field(default="", description="Service account JSON path")

    # Published Vision quotas
    OCR_RATE_LIMIT_PER_SECOND: int = Field(default=10, ge=1, description="Recognizer calls per second")
    OCR_RATE_LIMIT_PER_MINUTE: int = Field(default=1800, ge=1, description="Recognizer calls per minute")

    # ==========================================================================
    # CACHE
    # ==========================================================================
    OCR_CACHE_ENABLED: bool = Field(default=True, description="Cache parsed receipts")
    OCR_CACHE_TTL_SECONDS: int = Field(default=24 * 60 * 60, ge=1, description="Cache entry lifetime")
    OCR_CACHE_KEY_STRATEGY: str = Field(default="fingerprint", description="fingerprint or sha256")
    REDIS_URL: str = Field(default="", description="Redis URL; in-memory cache when empty")

    @field_validator("OCR_CACHE_KEY_STRATEGY")
    @classmethod
    def check_key_strategy(cls, v):
        if v not in ("fingerprint", "sha256"):
            raise ValueError("OCR_CACHE_KEY_STRATEGY must be 'fingerprint' or 'sha256'")
        return v

    # ==========================================================================
    # DOWNLOADS
    # ==========================================================================
    OCR_DOWNLOAD_TIMEOUT: float = Field(default=30.0, gt=0, description="Image download budget in seconds")
    OCR_MAX_IMAGE_BYTES: int = Field(default=10 * 1024 * 1024, ge=1, description="Largest accepted image")

    # ==========================================================================
    # PARSER
    # ==========================================================================
    OCR_PREFER_KEYWORD_TOTAL: bool = Field(
        default=False, description="Let a TOTAL line beat larger non-keyword amounts"
    )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"


# ==========================================================================
# ENVIRONMENT-SPECIFIC CONFIGS
# ==========================================================================

class DevelopmentSettings(Settings):
    LOG_LEVEL: str = "DEBUG"


class ProductionSettings(Settings):
    LOG_LEVEL: str = "INFO"
    LOG_JSON: Optional[bool] = True


class TestSettings(Settings):
    LOG_LEVEL: str = "DEBUG"
    OCR_CACHE_ENABLED: bool = True
    REDIS_URL: str = ""


@lru_cache()
def get_settings() -> Settings:
    """
    Get settings based on environment.

    Cached to avoid re-reading environment variables.
    """
    env = os.environ.get("ENVIRONMENT", "development")

    if env == "production":
        return ProductionSettings()
    elif env == "test":
        return TestSettings()
    else:
        return DevelopmentSettings()


def validate_settings(settings: Settings = None) -> bool:
    """
    Check that the settings can build a working service.

    Raises:
        ValueError: listing every problem found
    """
    settings = settings or get_settings()
    errors = []

    if settings.GOOGLE_APPLICATION_CREDENTIALS and not os.path.exists(settings.GOOGLE_APPLICATION_CREDENTIALS):
        errors.append(f"GOOGLE_APPLICATION_CREDENTIALS not found: {settings.GOOGLE_APPLICATION_CREDENTIALS}")

    if settings.is_production and settings.OCR_CACHE_ENABLED and not settings.REDIS_URL:
        errors.append("REDIS_URL is required for the OCR cache in production")

    if settings.OCR_RATE_LIMIT_PER_SECOND > settings.OCR_RATE_LIMIT_PER_MINUTE:
        errors.append("OCR_RATE_LIMIT_PER_SECOND cannot exceed OCR_RATE_LIMIT_PER_MINUTE")

    if errors:
        error_msg = "\n".join(f"  - {e}" for e in errors)
        raise ValueError(f"Configuration errors:\n{error_msg}")

    return True


__all__ = [
    "Settings",
    "DevelopmentSettings",
    "ProductionSettings",
    "TestSettings",
    "get_settings",
    "validate_settings",
]
