"""
Tests for configuration loading and visit models.
"""

from datetime import datetime, timezone

import pytest

from fingerprinting.core.models.config import FingerprintConfig, ModelConfig, PatternConfig
from fingerprinting.core.models.visits import (
    MAX_TIMESTAMP_MS, Browser, VisitObservation, VisitorRecord, now_ms
)


def test_defaults():
    """Default configuration matches the documented constants."""
    config = FingerprintConfig()

    assert config.features.vector_size == 40
    assert config.model.anomaly_threshold == 0.1
    assert config.model.seed == 42
    assert config.geo.cache_ttl_seconds == 1800
    assert config.geo.provider_timeout_seconds == 5.0
    assert config.geo.providers == ["geojs", "ipwhois", "ipapi"]
    assert config.patterns.session_timeout_ms == 30 * 60 * 1000
    assert config.patterns.min_session_ms == 5 * 60 * 1000
    assert config.store.backend == "memory"


def test_environment_overrides(monkeypatch):
    """Environment variables override individual settings."""
    monkeypatch.setenv("VECTOR_SIZE", "16")
    monkeypatch.setenv("MODEL_SEED", "7")
    monkeypatch.setenv("MODEL_WEIGHTS_DIR", "/tmp/weights")
    monkeypatch.setenv("GEO_PROVIDER_TIMEOUT", "2.5")
    monkeypatch.setenv("STORE_BACKEND", "redis")
    monkeypatch.setenv("REDIS_PORT", "6380")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("ENVIRONMENT", "staging")

    config = FingerprintConfig.from_env()

    assert config.features.vector_size == 16
    assert config.model.seed == 7
    assert config.model.weight_paths()["anomaly"].name == "anomaly.weights.h5"
    assert config.geo.provider_timeout_seconds == 2.5
    assert config.store.backend == "redis"
    assert config.store.redis_port == 6380
    assert config.logging.level == "DEBUG"
    assert config.logging.environment == "staging"


def test_invalid_vector_size_from_environment(monkeypatch):
    """Unsupported widths are rejected at load time."""
    monkeypatch.setenv("VECTOR_SIZE", "24")
    with pytest.raises(ValueError):
        FingerprintConfig.from_env()


def test_weight_paths_absent_without_directory():
    assert ModelConfig().weight_paths() is None


def test_observation_from_raw_defaults():
    """Missing fields get documented defaults."""
    observation = VisitObservation.from_raw({"browser": "edge"})

    assert observation.user_agent is None
    assert observation.screen_resolution == "1920x1080"
    assert observation.browser == Browser.EDGE
    assert observation.country == "Unknown"
    assert observation.country_code == "XX"
    assert observation.timestamp_ms > 0


def test_record_from_partial_document():
    """Store documents with missing fields are completed with defaults."""
    record = VisitorRecord.from_document({"visitorId": "abc", "lastVisit": "2024-03-01T12:00:00Z"})

    assert record.visitor_id == "abc"
    assert record.first_visit == datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
    assert record.visit_count == 1
    assert record.browser == "Unknown"
    assert record.preferences.language == "en"


def test_record_visit_timestamps_are_unique_and_sorted():
    record = VisitorRecord(
        visitor_id="abc",
        first_visit=datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc),
        last_visit=datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc),
        timestamp_ms=int(datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc).timestamp() * 1000),
    )
    assert len(record.visit_timestamps()) == 2
    assert record.visit_timestamps() == sorted(record.visit_timestamps())


def test_pattern_config_is_adjustable():
    assert PatternConfig(hourly_peak_multiplier=2.0).hourly_peak_multiplier == 2.0


@pytest.mark.parametrize("timestamp", [10 ** 17, float("inf"), float("nan"), -1, True])
def test_observation_replaces_out_of_range_timestamp(timestamp):
    """Timestamps datetime cannot represent fall back to now."""
    before = now_ms()
    observation = VisitObservation.from_raw({"timestamp": timestamp})

    assert before <= observation.timestamp_ms <= now_ms()


def test_observation_keeps_representable_timestamp():
    assert VisitObservation.from_raw({"timestamp": MAX_TIMESTAMP_MS}).timestamp_ms == MAX_TIMESTAMP_MS
    assert VisitObservation.from_raw({"timestamp": "1709301600000"}).timestamp_ms == 1709301600000
