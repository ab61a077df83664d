"""
Tests for behavioral pattern aggregation.
"""

from datetime import datetime, timedelta, timezone

import pytest

from fingerprinting.core.models.config import PatternConfig
from fingerprinting.core.models.visits import AnomalyScore, VisitorRecord, datetime_to_ms
from fingerprinting.core.processors.patterns import (
    HIGH_FREQUENCY_REASON, SPIKE_REASON, PatternAnalyzer, average_session_duration,
    browser_distribution, peak_hours_by_deviation, peak_hours_from_counts, returning_visitor_rate
)

NOW = datetime(2024, 3, 1, 15, 0, tzinfo=timezone.utc)
NOW_MS = datetime_to_ms(NOW)
MINUTE_MS = 60 * 1000


def _record(visitor_id, visit_count=1, last_visit=NOW, first_visit=None, browser="Chrome",
            country="Germany", timestamp=None):
    first_visit = first_visit or last_visit
    return VisitorRecord(
        visitor_id=visitor_id,
        first_visit=first_visit,
        last_visit=last_visit,
        visit_count=visit_count,
        browser=browser,
        country=country,
        timestamp_ms=timestamp if timestamp is not None else datetime_to_ms(last_visit),
    )


def test_single_spike_hour_is_the_only_peak():
    """Fifty visits at hour 14 and nothing else: only 14 is a peak."""
    counts = [0] * 24
    counts[14] = 50

    assert peak_hours_from_counts(counts, 1.5) == [14]
    assert peak_hours_by_deviation(counts, 1.0) == [14]


def test_count_equal_to_threshold_is_not_a_peak():
    """Strictly greater than the threshold is required on both paths."""
    counts = [2] * 24
    counts[0] = 3
    counts[1] = 1
    # mean == 2.0, threshold == 3.0
    assert peak_hours_from_counts(counts, 1.5) == []

    # Uniform traffic has zero deviation so nothing exceeds the mean
    assert peak_hours_by_deviation([4] * 24, 1.0) == []


def test_peak_multipliers_are_configurable():
    """Lower multipliers admit more hours."""
    counts = [1] * 24
    counts[3] = 2
    assert peak_hours_from_counts(counts, 2.0) == []
    assert peak_hours_from_counts(counts, 1.0) == [3]


def test_returning_visitor_rate():
    """Zero when nobody returned, grows with the returning share."""
    assert returning_visitor_rate([]) == 0.0
    assert returning_visitor_rate([_record("a"), _record("b")]) == 0.0
    assert returning_visitor_rate([_record("a", 3), _record("b")]) == 0.5
    assert returning_visitor_rate([_record("a", 3), _record("b", 2)]) == 1.0


def test_browser_distribution_counts_labels():
    """Empty browser labels are counted as Unknown."""
    records = [_record("a"), _record("b"), _record("c", browser="")]
    assert browser_distribution(records) == {"Chrome": 2, "Unknown": 1}


def test_session_duration_empty_and_floor():
    """No visits gives 0; a single instant counts as the five-minute floor."""
    assert average_session_duration([]) == 0.0
    assert average_session_duration([_record("a")]) == 5 * MINUTE_MS


def test_session_duration_splits_on_timeout():
    """A gap above thirty minutes starts a new session."""
    first = NOW - timedelta(hours=2)
    last = NOW
    # first visit, a visit 40 minutes later, last visit: three separate sessions
    record = _record("a", visit_count=3, first_visit=first, last_visit=last,
                     timestamp=datetime_to_ms(first) + 40 * MINUTE_MS)

    assert average_session_duration([record]) == 5 * MINUTE_MS


def test_session_duration_keeps_long_sessions():
    """Sessions longer than the floor contribute their span."""
    first = NOW - timedelta(minutes=20)
    record = _record("a", visit_count=2, first_visit=first, last_visit=NOW,
                     timestamp=datetime_to_ms(first) + 10 * MINUTE_MS)

    assert average_session_duration([record]) == 20 * MINUTE_MS


def test_analyze_replaces_stale_history_of_current_visitor():
    """Historical rows of the current visitor are not double counted."""
    analyzer = PatternAnalyzer(PatternConfig())
    current = _record("me", visit_count=2)
    history = [_record("me"), _record("other", browser="Firefox")]

    summary = analyzer.analyze(current, history, now_ms=NOW_MS)

    assert summary.browser_patterns == {"Chrome": 1, "Firefox": 1}
    assert summary.returning_visitor_rate == 0.5
    assert summary.peak_hours == [15]


def test_analyze_puts_current_anomaly_first():
    """The supplied visit score leads the anomaly list."""
    analyzer = PatternAnalyzer(PatternConfig())
    score = AnomalyScore(score=0.05, threshold=0.1, is_anomaly=False)

    summary = analyzer.analyze(_record("me"), [], current_anomaly=score, now_ms=NOW_MS)

    assert summary.anomalies[0] == score
    # one visit in one hour: 1 > 3 * (1/24) is a spike
    assert summary.anomalies[1].reasons == [SPIKE_REASON]


def test_high_frequency_visitor_is_flagged():
    """A visitor above 100 visits seen within 24h scores 0.8."""
    analyzer = PatternAnalyzer(PatternConfig())
    record = _record("busy", visit_count=150, last_visit=NOW - timedelta(hours=1))

    anomaly = analyzer.high_frequency([record], NOW_MS)

    assert anomaly is not None
    assert anomaly.score == 0.8
    assert anomaly.is_anomaly
    assert anomaly.reasons == [HIGH_FREQUENCY_REASON]


def test_high_frequency_ignores_stale_or_light_visitors():
    """Old activity or counts at the threshold do not trigger."""
    analyzer = PatternAnalyzer(PatternConfig())
    stale = _record("old", visit_count=150, last_visit=NOW - timedelta(days=2))
    light = _record("light", visit_count=100)

    assert analyzer.high_frequency([stale, light], NOW_MS) is None


def test_traffic_spike_score_is_ratio_to_threshold():
    """Score is max / (3 * mean)."""
    analyzer = PatternAnalyzer(PatternConfig())
    counts = [0] * 24
    counts[14] = 48
    # mean 2, threshold 6
    anomaly = analyzer.traffic_spike(counts)
    assert anomaly.score == pytest.approx(8.0)

    assert analyzer.traffic_spike([0] * 24) is None
    assert analyzer.traffic_spike([5] * 24) is None


def test_summarize_population():
    """Dashboard totals, distributions and both population anomalies."""
    analyzer = PatternAnalyzer(PatternConfig())
    records = [
        _record("a", visit_count=150, last_visit=NOW - timedelta(minutes=10),
                first_visit=NOW - timedelta(minutes=20), country="Germany"),
        _record("b", visit_count=1, last_visit=NOW - timedelta(minutes=5), country="France",
                browser="Firefox"),
        _record("c", visit_count=4, last_visit=NOW - timedelta(days=3), country="Germany"),
    ]

    summary = analyzer.summarize_population(records, NOW_MS)

    assert summary.total_visits == 155
    assert summary.unique_visitors == 3
    assert summary.active_visitors == 2
    assert sum(summary.hourly_visitors) == 2
    assert summary.hourly_visitors[14] == 2
    assert summary.top_countries[0].label == "Germany"
    assert summary.top_countries[0].count == 2
    assert summary.top_browsers[0].label == "Chrome"
    assert summary.patterns.peak_hours == [14]
    assert summary.patterns.returning_visitor_rate == pytest.approx(2 / 3)
    assert summary.patterns.average_session_duration == 600
    reasons = [anomaly.reasons[0] for anomaly in summary.patterns.anomalies]
    assert reasons == [SPIKE_REASON, HIGH_FREQUENCY_REASON]


def test_population_return_rate_counts_each_visitor_once():
    """Repeated rows for one visitor cannot push the rate above 1."""
    analyzer = PatternAnalyzer(PatternConfig())
    records = [_record("a", visit_count=3) for _ in range(3)] + [_record("b")]

    summary = analyzer.summarize_population(records, NOW_MS)

    assert summary.unique_visitors == 2
    assert summary.patterns.returning_visitor_rate == 0.5
    assert analyzer.summarize_population(records[:3], NOW_MS).patterns.returning_visitor_rate == 1.0


def test_summarize_empty_population():
    """No records gives zeroed analytics."""
    summary = PatternAnalyzer(PatternConfig()).summarize_population([], NOW_MS)
    assert summary.total_visits == 0
    assert summary.hourly_visitors == [0] * 24
    assert summary.patterns.returning_visitor_rate == 0.0
    assert summary.patterns.anomalies == []


def test_describe_visitor():
    """Behavior labels and a confidence clipped to [0, 1]."""
    analyzer = PatternAnalyzer(PatternConfig())
    record = _record("a", visit_count=3, browser="Firefox")
    anomaly = AnomalyScore(score=0.25, threshold=0.1, is_anomaly=True,
                           reasons=["Unusual browser fingerprint"])

    insight = analyzer.describe_visitor(record, anomaly, peak_hours=[15])

    assert insight.behavior_patterns == [
        "Returning visitor",
        "Visits during peak hours",
        "Prefers Firefox",
        "Unusual browser fingerprint",
    ]
    assert insight.anomaly_score.is_anomaly
    assert insight.anomaly_score.confidence == 1.0


def test_describe_first_time_visitor_confidence():
    """Confidence is the relative distance of the score from the threshold."""
    analyzer = PatternAnalyzer(PatternConfig())
    anomaly = AnomalyScore(score=0.05, threshold=0.1, is_anomaly=False)

    insight = analyzer.describe_visitor(_record("a", browser="Unknown"), anomaly)

    assert insight.behavior_patterns == ["First-time visitor"]
    assert insight.anomaly_score.confidence == pytest.approx(0.5)
