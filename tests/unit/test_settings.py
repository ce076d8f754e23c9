# Copyright 2024 CryptoArena Contributors
# SPDX-License-Identifier: Apache-2.0

"""Tests for crypto_arena.settings."""

from crypto_arena.settings import ArenaSettings, get_settings


class TestArenaSettings:
    """Tests for ArenaSettings."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("MINIMAX_API_KEY", raising=False)
        monkeypatch.delenv("DECISION_TIMEOUT_SECONDS", raising=False)
        settings = ArenaSettings(_env_file=None)

        assert settings.default_fee_rate == 0.001
        assert settings.default_step_minutes == 15
        assert settings.decision_timeout_seconds == 30.0
        assert settings.has_oracle_credentials is False

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("MINIMAX_API_KEY", "k-123")
        monkeypatch.setenv("DECISION_TIMEOUT_SECONDS", "12.5")
        settings = ArenaSettings(_env_file=None)

        assert settings.minimax_api_key == "k-123"
        assert settings.decision_timeout_seconds == 12.5
        assert settings.has_oracle_credentials is True

    def test_get_settings_is_cached(self):
        get_settings.cache_clear()
        try:
            assert get_settings() is get_settings()
        finally:
            get_settings.cache_clear()
