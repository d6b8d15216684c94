"""Tests for settings validation and tracking configuration."""

import pytest
from pydantic import ValidationError

from allotrack.core.config import Settings
from allotrack.core.exceptions import NotFoundError, PersistenceError, ServiceResult
from allotrack.services.allotment.engine import TrackingConfig


def make_settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


class TestSettings:
    def test_log_level_is_normalised(self):
        assert make_settings(log_level="debug").log_level == "DEBUG"

    def test_invalid_log_level_rejected(self):
        with pytest.raises(ValidationError):
            make_settings(log_level="verbose")

    def test_invalid_log_format_rejected(self):
        with pytest.raises(ValidationError):
            make_settings(log_format="xml")

    def test_source_urls_lose_trailing_slash(self):
        settings = make_settings(exchange_api_url="https://x.test/api/", aggregator_api_url="https://a.test/")
        assert settings.exchange_api_url == "https://x.test/api"
        assert settings.aggregator_api_url == "https://a.test"

    def test_batch_size_bounds(self):
        with pytest.raises(ValidationError):
            make_settings(batch_size=0)

    def test_environment_flags(self):
        assert make_settings(environment="development").is_development
        assert make_settings().is_production


class TestTrackingConfig:
    def test_defaults(self):
        config = TrackingConfig()
        assert config.active_check_interval == 120
        assert config.passive_check_interval == 900
        assert config.batch_size == 5
        assert config.active_attempt_cap == 50

    def test_from_settings(self):
        config = TrackingConfig.from_settings(
            make_settings(active_check_interval=30, batch_size=10, archive_retention_days=3, shutdown_timeout=5)
        )
        assert config.shutdown_timeout == 5
        assert config.active_check_interval == 30
        assert config.batch_size == 10
        assert config.archive_retention_days == 3
        assert config.scheduler_timezone == "UTC"


class TestServiceResult:
    def test_ok(self):
        assert ServiceResult.ok({"tracked": 1}).to_dict() == {"success": True, "data": {"tracked": 1}}

    def test_fail_with_app_exception(self):
        result = ServiceResult.fail(NotFoundError(message="Offering not tracked"))
        assert not result.success
        assert result.error == {"error": "NOT_FOUND", "message": "Offering not tracked", "retryable": False}

    def test_fail_wraps_foreign_exceptions(self):
        result = ServiceResult.fail(RuntimeError("boom"))
        assert result.error["error"] == "INTERNAL_ERROR"
        assert result.error["message"] == "boom"

    def test_retryable_flag(self):
        assert PersistenceError().to_dict()["retryable"] is True
