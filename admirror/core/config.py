"""
Configuration management for AdMirror
"""

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

# Load environment variables
load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


class Config:
    """Application configuration"""

    # Supabase
    SUPABASE_URL: str = os.getenv('SUPABASE_URL', '')
    SUPABASE_SERVICE_KEY: str = os.getenv('SUPABASE_SERVICE_KEY', '')

    # Anthropic (creative tagging)
    ANTHROPIC_API_KEY: str = os.getenv('ANTHROPIC_API_KEY', '')
    TAGGING_MODEL: str = os.getenv('TAGGING_MODEL', 'claude-sonnet-4-20250514')

    # Groq Whisper (video transcription)
    GROQ_API_KEY: str = os.getenv('GROQ_API_KEY', '')
    WHISPER_MODEL: str = os.getenv('WHISPER_MODEL', 'whisper-large-v3-turbo')

    # Tagging pipeline policy
    TAGGING_MAX_RETRIES: int = int(os.getenv('TAGGING_MAX_RETRIES', '3'))
    IMAGE_TAGGING_BATCH_SIZE: int = int(os.getenv('IMAGE_TAGGING_BATCH_SIZE', '200'))
    VIDEO_TAGGING_BATCH_SIZE: int = int(os.getenv('VIDEO_TAGGING_BATCH_SIZE', '10'))
    VIDEO_TIME_BUDGET_SECONDS: float = float(os.getenv('VIDEO_TIME_BUDGET_SECONDS', '250'))
    TAGGING_LEASE_SECONDS: int = int(os.getenv('TAGGING_LEASE_SECONDS', '900'))
    RATE_LIMIT_CONSUMES_RETRY: bool = _env_bool('RATE_LIMIT_CONSUMES_RETRY', 'true')

    # Video media scratch space
    VIDEO_TEMP_DIR: str = os.getenv('VIDEO_TEMP_DIR', '/tmp/video-tagging')

    @classmethod
    def validate(cls) -> bool:
        """Validate required configuration"""
        required = {
            'SUPABASE_URL': cls.SUPABASE_URL,
            'SUPABASE_SERVICE_KEY': cls.SUPABASE_SERVICE_KEY,
        }

        missing = [k for k, v in required.items() if not v]

        if missing:
            raise ValueError(f"Missing required configuration: {', '.join(missing)}")

        return True

    @classmethod
    def get(cls, key: str, default: Optional[str] = None) -> Optional[str]:
        """Get configuration value"""
        return getattr(cls, key, default)


class TaggingPolicy(BaseModel):
    """Retry, batching and lease policy shared by the tagging pipelines.

    An attempt that fails moves the retry count to ``retry_count + 1``; once
    that reaches ``max_retries`` the ad is marked ``skipped`` instead of
    ``failed`` and is never selected again.
    """

    max_retries: int = Field(default=3, ge=1)
    image_batch_size: int = Field(default=200, ge=1)
    video_batch_size: int = Field(default=10, ge=1)
    video_time_budget_seconds: float = Field(default=250.0, gt=0)
    rate_limit_consumes_retry: bool = True
    rate_limit_backoff_base_seconds: float = Field(default=1.0, ge=0)
    rate_limit_backoff_max_seconds: float = Field(default=30.0, ge=0)
    use_leases: bool = True
    lease_seconds: int = Field(default=900, ge=1)

    @classmethod
    def from_config(cls) -> "TaggingPolicy":
        return cls(
            max_retries=Config.TAGGING_MAX_RETRIES,
            image_batch_size=Config.IMAGE_TAGGING_BATCH_SIZE,
            video_batch_size=Config.VIDEO_TAGGING_BATCH_SIZE,
            video_time_budget_seconds=Config.VIDEO_TIME_BUDGET_SECONDS,
            rate_limit_consumes_retry=Config.RATE_LIMIT_CONSUMES_RETRY,
            lease_seconds=Config.TAGGING_LEASE_SECONDS,
        )

    def next_status(self, retry_count: int) -> str:
        """Status for an ad whose retry count just became ``retry_count``."""
        return "skipped" if retry_count >= self.max_retries else "failed"

    def rate_limit_backoff(self, retry_count: int) -> float:
        """Seconds to wait after a rate-limited attempt."""
        return min(
            self.rate_limit_backoff_base_seconds * (2 ** retry_count),
            self.rate_limit_backoff_max_seconds,
        )
