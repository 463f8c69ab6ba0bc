"""
Tests for settings loading and lifecycle configuration.
"""

import pytest
from pydantic import ValidationError

from dotmac.billing_core.config import LifecycleConfig
from dotmac.billing_core.settings import (
    CombinationOrder,
    CrossIntervalPolicy,
    LogLevel,
    Settings,
    get_settings,
    reset_settings,
)


@pytest.fixture(autouse=True)
def fresh_settings():
    reset_settings()
    yield
    reset_settings()


@pytest.mark.unit
class TestSettings:
    def test_defaults(self):
        settings = Settings()

        assert settings.lifecycle.grace_period_days == 7
        assert settings.lifecycle.retry_intervals == [1, 3, 5]
        assert settings.proration.cross_interval_policy == CrossIntervalPolicy.PERIOD_END
        assert settings.promotions.combination_order == CombinationOrder.LIST_ORDER
        assert settings.observability.log_level == LogLevel.INFO

    def test_nested_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("BILLING_LIFECYCLE__GRACE_PERIOD_DAYS", "10")
        monkeypatch.setenv("BILLING_LIFECYCLE__RETRY_INTERVALS", "[2, 4]")
        monkeypatch.setenv("BILLING_PROMOTIONS__COMBINATION_ORDER", "largest_first")
        monkeypatch.setenv("BILLING_DATABASE__URL", "sqlite+aiosqlite:///:memory:")

        settings = Settings()

        assert settings.lifecycle.grace_period_days == 10
        assert settings.lifecycle.retry_intervals == [2, 4]
        assert settings.promotions.combination_order == CombinationOrder.LARGEST_FIRST
        assert settings.database.url == "sqlite+aiosqlite:///:memory:"

    def test_rejects_non_positive_retry_offsets(self, monkeypatch):
        monkeypatch.setenv("BILLING_LIFECYCLE__RETRY_INTERVALS", "[1, 0]")

        with pytest.raises(ValidationError):
            Settings()

    def test_get_settings_is_cached(self):
        assert get_settings() is get_settings()


@pytest.mark.unit
class TestLifecycleConfig:
    def test_from_settings(self, monkeypatch):
        monkeypatch.setenv("BILLING_LIFECYCLE__RETRY_INTERVALS", "[1, 2, 3, 4]")
        monkeypatch.setenv("BILLING_PRORATION__CROSS_INTERVAL_POLICY", "reject")

        config = LifecycleConfig.from_settings(Settings())

        assert config.retry_intervals == (1, 2, 3, 4)
        assert config.max_retries == 4
        assert config.cross_interval_policy == CrossIntervalPolicy.REJECT

    @pytest.mark.parametrize("intervals", [(), (0,), (1, -2)])
    def test_rejects_bad_retry_intervals(self, intervals):
        with pytest.raises(ValidationError):
            LifecycleConfig(retry_intervals=intervals)

    def test_is_frozen(self):
        config = LifecycleConfig()

        with pytest.raises(ValidationError):
            config.grace_period_days = 3
