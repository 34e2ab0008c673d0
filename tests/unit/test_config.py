"""
Unit tests for configuration objects.

Tests cover:
- Defaults
- Validation in __post_init__
- to_dict/from_dict round trips including nested configs
- Immutability
"""

from dataclasses import FrozenInstanceError

import pytest

from liveshift.config import ApplierConfig, DrainConfig, MigrationConfig, SessionConfig
from liveshift.models import TableFilter
from liveshift.retry import RetryConfig


class TestDrainConfig:
    def test_defaults(self) -> None:
        config = DrainConfig()

        assert config.quiet_period_seconds == 30.0
        assert config.sustained_window_seconds == 10.0
        assert config.drain_timeout_seconds == 900.0

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"quiet_period_seconds": -1},
            {"sustained_window_seconds": -0.5},
            {"drain_timeout_seconds": 0},
            {"sample_interval_seconds": 0},
            {"max_samples": 0},
        ],
    )
    def test_rejects_invalid_values(self, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            DrainConfig(**kwargs)

    def test_round_trip(self) -> None:
        config = DrainConfig(quiet_period_seconds=5.0, max_samples=10)

        assert DrainConfig.from_dict(config.to_dict()) == config

    def test_is_frozen(self) -> None:
        config = DrainConfig()

        with pytest.raises(FrozenInstanceError):
            config.quiet_period_seconds = 1.0  # type: ignore[misc]


class TestSessionConfig:
    def test_defaults(self) -> None:
        config = SessionConfig()

        assert config.batch_size == 500
        assert config.max_reconnect_attempts == 10
        assert config.reconnect.max_delay == 10.0

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"batch_size": 0},
            {"poll_interval_seconds": 0},
            {"max_reconnect_attempts": -1},
            {"stop_timeout_seconds": 0},
        ],
    )
    def test_rejects_invalid_values(self, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            SessionConfig(**kwargs)

    def test_round_trip_with_nested_retry(self) -> None:
        config = SessionConfig(batch_size=10, reconnect=RetryConfig(max_retries=2))

        restored = SessionConfig.from_dict(config.to_dict())

        assert restored == config
        assert restored.reconnect.max_retries == 2

    def test_from_empty_dict_uses_defaults(self) -> None:
        assert SessionConfig.from_dict({}) == SessionConfig()


class TestApplierConfig:
    def test_round_trip(self) -> None:
        config = ApplierConfig(retry=RetryConfig(max_retries=3, initial_delay=0.1))

        assert ApplierConfig.from_dict(config.to_dict()) == config

    def test_from_empty_dict_uses_defaults(self) -> None:
        assert ApplierConfig.from_dict({}) == ApplierConfig()


class TestMigrationConfig:
    def test_default_filter_skips_bookkeeping_tables(self) -> None:
        table_filter = MigrationConfig().build_table_filter()

        assert table_filter.matches("chinook.artist")
        assert not table_filter.matches("_replicator_staging")

    def test_custom_filter(self) -> None:
        table_filter = MigrationConfig(table_filter="artist|album").build_table_filter()

        assert table_filter == TableFilter("artist|album")
        assert table_filter.matches("chinook.Album")
        assert not table_filter.matches("chinook.track")

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"table_filter": "("},
            {"verification_sample_limit": 0},
            {"staging_retention_seconds": -1},
            {"poll_interval_seconds": 0},
        ],
    )
    def test_rejects_invalid_values(self, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            MigrationConfig(**kwargs)

    def test_round_trip(self) -> None:
        config = MigrationConfig(
            table_filter="artist",
            drain=DrainConfig(quiet_period_seconds=1.0),
            session=SessionConfig(batch_size=50),
            applier=ApplierConfig(retry=RetryConfig(max_retries=1)),
        )

        assert MigrationConfig.from_dict(config.to_dict()) == config
