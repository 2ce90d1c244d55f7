"""Runtime settings for aumai-imagebundle.

Settings are read from ``AUMAI_IMAGEBUNDLE_*`` environment variables or a
``.env`` file. Only the CLI consumes them; library entry points take
explicit arguments.
"""

from __future__ import annotations

import os
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

__all__ = ["Settings", "get_settings"]


def _default_gzip_concurrency() -> int:
    return 2 * (os.cpu_count() or 1)


class Settings(BaseSettings):
    """Tunables for the CLI and the compression pipeline."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="AUMAI_IMAGEBUNDLE_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    log_level: str = "WARNING"
    default_tag: str = "latest"

    # Gzip output is one member per block of this size, compressed on
    # gzip_concurrency threads.
    gzip_block_size: int = Field(default=256 << 10, gt=0)
    gzip_concurrency: int = Field(default_factory=_default_gzip_concurrency, gt=0)

    copy_buffer_size: int = Field(default=64 << 10, gt=0)
    pipe_depth: int = Field(default=16, gt=0)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide settings, loading them on first use."""
    return Settings()
