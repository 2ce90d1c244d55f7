"""Tests for aumai_imagebundle.config."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from aumai_imagebundle.config import Settings, get_settings


class TestSettings:
    def test_defaults(self) -> None:
        settings = Settings()
        assert settings.log_level == "WARNING"
        assert settings.default_tag == "latest"
        assert settings.gzip_block_size == 256 << 10
        assert settings.gzip_concurrency > 0
        assert settings.pipe_depth == 16

    def test_environment_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("AUMAI_IMAGEBUNDLE_PIPE_DEPTH", "4")
        monkeypatch.setenv("AUMAI_IMAGEBUNDLE_DEFAULT_TAG", "stable")
        settings = Settings()
        assert settings.pipe_depth == 4
        assert settings.default_tag == "stable"

    def test_invalid_value_rejected(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("AUMAI_IMAGEBUNDLE_PIPE_DEPTH", "0")
        with pytest.raises(ValidationError):
            Settings()

    def test_get_settings_is_cached(self) -> None:
        assert get_settings() is get_settings()
