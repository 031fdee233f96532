"""Unit tests for settings helpers."""

from __future__ import annotations

from app.config import Settings


def test_retry_policy_defaults_by_environment() -> None:
    development = Settings(environment="development").get_retry_policy()
    production = Settings(environment="production").get_retry_policy()

    assert development == {
        "max_retries": 2,
        "initial_delay_seconds": 0.5,
        "max_delay_seconds": 5.0,
        "backoff_multiplier": 1.5,
    }
    assert production["max_retries"] == 3
    assert production["initial_delay_seconds"] == 1.0
    assert production["max_delay_seconds"] == 15.0


def test_retry_policy_overrides() -> None:
    policy = Settings(generation_max_retries=0, generation_retry_initial_delay_ms=250).get_retry_policy()

    assert policy["max_retries"] == 0
    assert policy["initial_delay_seconds"] == 0.25


def test_poll_interval_by_environment() -> None:
    assert Settings(environment="development").get_poll_interval() == 5.0
    assert Settings(environment="production").get_poll_interval() == 15.0
    assert Settings(poll_interval_seconds=2.0).get_poll_interval() == 2.0


def test_step_webhook_urls() -> None:
    settings = Settings(
        generation_webhook_audience_architect=" https://gen.test/aa ",
        generation_webhook_landing_page="",
    )

    assert settings.get_step_webhook_url("audienceArchitect") == "https://gen.test/aa"
    assert settings.get_step_webhook_url("landingPage") is None
    assert settings.get_step_webhook_url("unknown") is None


def test_database_url_is_normalized_to_asyncpg() -> None:
    settings = Settings(database_url="postgres://user:pw@db:5432/app")

    assert settings.database_url == "postgresql+asyncpg://user:pw@db:5432/app"


def test_cors_origins_accepts_comma_separated_values() -> None:
    settings = Settings(cors_origins="https://a.test, https://b.test")

    assert settings.cors_origins == ["https://a.test", "https://b.test"]
