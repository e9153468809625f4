"""Configuration management for the voice profile service."""

from typing import List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore"  # Ignore extra environment variables
    )

    # Server configuration
    port: int = 8000
    host: str = "0.0.0.0"

    # Supabase configuration
    supabase_url: str = "http://localhost:54321"
    supabase_anon_key: str = "local-anon-key"

    # Voice verification settings
    default_noise_threshold: float = 0.65
    default_language: str = "pt-BR"

    # Enrollment and capture settings
    max_recording_seconds: float = 15.0
    capture_sample_rate: int = 16000
    capture_connect_timeout: float = 10.0
    min_completion_ratio: float = 0.7

    # Background feature extraction
    use_extraction_worker: bool = True
    extraction_workers: int = 1

    # Logging and observability configuration
    log_level: str = "INFO"
    enable_tracing: bool = True
    otlp_endpoint: Optional[str] = None
    cors_origins: List[str] = ["*"]

    @field_validator('supabase_url')
    @classmethod
    def validate_supabase_url(cls, v):
        if not v:
            raise ValueError('SUPABASE_URL environment variable is required')
        return v

    @field_validator('supabase_anon_key')
    @classmethod
    def validate_supabase_anon_key(cls, v):
        if not v:
            raise ValueError('SUPABASE_ANON_KEY environment variable is required')
        return v

    @field_validator('default_noise_threshold')
    @classmethod
    def validate_noise_threshold(cls, v):
        if not 0.4 <= v <= 0.9:
            raise ValueError('DEFAULT_NOISE_THRESHOLD must be between 0.4 and 0.9')
        return v

    @field_validator('min_completion_ratio')
    @classmethod
    def validate_min_completion_ratio(cls, v):
        if not 0.0 <= v <= 1.0:
            raise ValueError('MIN_COMPLETION_RATIO must be between 0.0 and 1.0')
        return v

    @field_validator('max_recording_seconds')
    @classmethod
    def validate_max_recording_seconds(cls, v):
        if v <= 0:
            raise ValueError('MAX_RECORDING_SECONDS must be positive')
        return v


# Global settings instance
settings = Settings()
