"""
Behavioral pattern aggregation.

Two aggregation paths share the helpers in this module:

- ``analyze`` works per visit: the current visitor plus a sample of
  historical records, peak hours by ``mean + k * std``.
- ``summarize_population`` works on hourly counts for the dashboard,
  peak hours by ``mean * k``.

Both are recomputed from scratch on every call; nothing is cached.
"""

import math
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence

import structlog

from fingerprinting.core.models.config import PatternConfig
from fingerprinting.core.models.visits import (
    AnomalyScore, AnomalyVerdict, Browser, CountEntry, PatternSummary, PopulationPatterns,
    PopulationSummary, VisitorInsight, VisitorRecord, datetime_to_ms, now_ms as current_ms
)
from fingerprinting.core.utils.metrics import ANOMALIES_FLAGGED, PATTERN_ANALYSES

logger = structlog.get_logger(__name__)

HOURS_PER_DAY = 24
DAY_MS = 24 * 60 * 60 * 1000

SPIKE_REASON = "Unusual spike in traffic detected"
HIGH_FREQUENCY_REASON = "High frequency of visits from same visitor ID"


def hour_of(timestamp_ms: int) -> int:
    """UTC hour of an epoch-millisecond timestamp."""
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).hour


def hourly_histogram(timestamps: Iterable[int]) -> List[int]:
    counts = [0] * HOURS_PER_DAY
    for timestamp_ms in timestamps:
        counts[hour_of(timestamp_ms)] += 1
    return counts


def peak_hours_by_deviation(counts: Sequence[int], multiplier: float = 1.0) -> List[int]:
    """Hours whose count is strictly above ``mean + multiplier * std``."""
    if not counts:
        return []
    mean = sum(counts) / len(counts)
    std = math.sqrt(sum((count - mean) ** 2 for count in counts) / len(counts))
    threshold = mean + multiplier * std
    return [hour for hour, count in enumerate(counts) if count > threshold]


def peak_hours_from_counts(counts: Sequence[int], multiplier: float = 1.5) -> List[int]:
    """Hours whose count is strictly above ``mean * multiplier``."""
    if not counts:
        return []
    mean = sum(counts) / len(counts)
    threshold = mean * multiplier
    return [hour for hour, count in enumerate(counts) if count > threshold]


def browser_distribution(records: Iterable[VisitorRecord]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for record in records:
        label = record.browser or Browser.UNKNOWN.value
        counts[label] = counts.get(label, 0) + 1
    return counts


def returning_visitor_rate(records: Iterable[VisitorRecord]) -> float:
    """Share of distinct visitors seen more than once; 0 for an empty population."""
    visit_counts: Dict[str, int] = {}
    for record in records:
        visit_counts[record.visitor_id] = max(visit_counts.get(record.visitor_id, 0), record.visit_count)

    if not visit_counts:
        return 0.0
    returning = sum(1 for count in visit_counts.values() if count > 1)
    return returning / len(visit_counts)


def average_session_duration(records: Iterable[VisitorRecord],
                             session_timeout_ms: int = 30 * 60 * 1000,
                             min_session_ms: int = 5 * 60 * 1000) -> float:
    """
    Average session length in milliseconds.

    Visits of each visitor are sorted by time and split into sessions
    wherever the gap exceeds ``session_timeout_ms``. Every session
    contributes at least ``min_session_ms``.
    """
    timestamps_by_visitor: Dict[str, set] = {}
    for record in records:
        timestamps_by_visitor.setdefault(record.visitor_id, set()).update(record.visit_timestamps())

    total = 0.0
    sessions = 0
    for timestamps in timestamps_by_visitor.values():
        ordered = sorted(timestamps)
        if not ordered:
            continue

        session_start = previous = ordered[0]
        for timestamp in ordered[1:]:
            if timestamp - previous > session_timeout_ms:
                total += max(min_session_ms, previous - session_start)
                sessions += 1
                session_start = timestamp
            previous = timestamp
        total += max(min_session_ms, previous - session_start)
        sessions += 1

    return total / sessions if sessions else 0.0


def top_counts(labels: Iterable[str], limit: int) -> List[CountEntry]:
    """Most frequent labels, count descending then label ascending."""
    counter = Counter(labels)
    ordered = sorted(counter.items(), key=lambda item: (-item[1], item[0]))
    return [CountEntry(label=label, count=count) for label, count in ordered[:limit]]


class PatternAnalyzer:
    """Aggregates visit histories into behavioral pattern summaries."""

    def __init__(self, config: PatternConfig):
        self.config = config

    def traffic_spike(self, counts: Sequence[int]) -> Optional[AnomalyScore]:
        """Spike when the busiest hour exceeds ``spike_multiplier`` times the mean."""
        if not counts:
            return None
        mean = sum(counts) / len(counts)
        threshold = mean * self.config.spike_multiplier
        busiest = max(counts)
        if threshold <= 0 or busiest <= threshold:
            return None

        ANOMALIES_FLAGGED.labels(source="traffic_spike").inc()
        return AnomalyScore(
            score=busiest / threshold,
            threshold=threshold,
            is_anomaly=True,
            reasons=[SPIKE_REASON]
        )

    def high_frequency(self, records: Iterable[VisitorRecord], now_ms: int) -> Optional[AnomalyScore]:
        """Flag any visitor above the visit threshold who was seen inside the window."""
        window_start = now_ms - self.config.high_frequency_window_hours * 60 * 60 * 1000
        suspicious = [
            record.visitor_id for record in records
            if record.visit_count > self.config.high_frequency_threshold
            and datetime_to_ms(record.last_visit) >= window_start
        ]
        if not suspicious:
            return None

        logger.info("High-frequency visitors detected", count=len(suspicious))
        ANOMALIES_FLAGGED.labels(source="high_frequency").inc()
        return AnomalyScore(
            score=self.config.high_frequency_score,
            threshold=float(self.config.high_frequency_threshold),
            is_anomaly=True,
            reasons=[HIGH_FREQUENCY_REASON]
        )

    def analyze(self, current_visit: VisitorRecord,
                historical: Sequence[VisitorRecord],
                current_anomaly: Optional[AnomalyScore] = None,
                now_ms: Optional[int] = None) -> PatternSummary:
        """
        Pattern summary for one visit against a historical sample.

        Historical records of the current visitor are replaced by the
        current record. Any aggregation failure yields an empty summary.
        """
        now_ms = now_ms if now_ms is not None else current_ms()
        try:
            population = [current_visit] + [
                record for record in historical if record.visitor_id != current_visit.visitor_id
            ]

            counts = hourly_histogram(record.timestamp_ms for record in population)

            anomalies: List[AnomalyScore] = []
            if current_anomaly is not None:
                anomalies.append(current_anomaly)
            for anomaly in (self.traffic_spike(counts), self.high_frequency(population, now_ms)):
                if anomaly is not None:
                    anomalies.append(anomaly)

            summary = PatternSummary(
                peak_hours=peak_hours_by_deviation(counts, self.config.peak_std_multiplier),
                browser_patterns=browser_distribution(population),
                returning_visitor_rate=returning_visitor_rate(population),
                average_visit_duration=average_session_duration(
                    population, self.config.session_timeout_ms, self.config.min_session_ms
                ),
                anomalies=anomalies,
            )
        except Exception as e:
            logger.error("Pattern analysis failed", error=str(e), visitor_id=current_visit.visitor_id)
            PATTERN_ANALYSES.labels(kind="visit", status="error").inc()
            return PatternSummary()

        PATTERN_ANALYSES.labels(kind="visit", status="success").inc()
        return summary

    def summarize_population(self, records: Sequence[VisitorRecord],
                             now_ms: Optional[int] = None) -> PopulationSummary:
        """Dashboard analytics over the stored visitor population."""
        now_ms = now_ms if now_ms is not None else current_ms()
        now = datetime.fromtimestamp(now_ms / 1000, tz=timezone.utc)
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        day_ago = now - timedelta(days=1)

        try:
            hourly = hourly_histogram(
                datetime_to_ms(record.last_visit) for record in records if record.last_visit >= day_ago
            )

            durations = []
            for record in records:
                duration = datetime_to_ms(record.last_visit) - datetime_to_ms(record.first_visit)
                if 0 < duration < self.config.session_timeout_ms:
                    durations.append(duration)
            average_ms = sum(durations) / len(durations) if durations else 0.0

            anomalies = [
                anomaly
                for anomaly in (self.traffic_spike(hourly), self.high_frequency(records, now_ms))
                if anomaly is not None
            ]

            unique_visitors = {record.visitor_id for record in records}

            summary = PopulationSummary(
                total_visits=sum(record.visit_count for record in records),
                unique_visitors=len(unique_visitors),
                active_visitors=sum(1 for record in records if record.last_visit >= midnight),
                hourly_visitors=hourly,
                top_browsers=top_counts(
                    (record.browser or Browser.UNKNOWN.value for record in records), self.config.top_n
                ),
                top_countries=top_counts((record.country for record in records), self.config.top_n),
                patterns=PopulationPatterns(
                    peak_hours=peak_hours_from_counts(hourly, self.config.hourly_peak_multiplier),
                    returning_visitor_rate=returning_visitor_rate(records),
                    average_session_duration=round(average_ms / 1000),
                    anomalies=anomalies,
                ),
            )
        except Exception as e:
            logger.error("Population summary failed", error=str(e), records=len(records))
            PATTERN_ANALYSES.labels(kind="population", status="error").inc()
            return PopulationSummary()

        PATTERN_ANALYSES.labels(kind="population", status="success").inc()
        return summary

    def describe_visitor(self, record: VisitorRecord, anomaly: AnomalyScore,
                         peak_hours: Sequence[int] = ()) -> VisitorInsight:
        """Narrow per-visitor view: behavior labels plus an anomaly verdict."""
        patterns = ["Returning visitor" if record.visit_count > 1 else "First-time visitor"]
        if record.last_visit.astimezone(timezone.utc).hour in set(peak_hours):
            patterns.append("Visits during peak hours")
        if record.browser and record.browser != Browser.UNKNOWN.value:
            patterns.append(f"Prefers {record.browser}")
        patterns.extend(anomaly.reasons)

        if anomaly.threshold > 0:
            confidence = abs(anomaly.score - anomaly.threshold) / anomaly.threshold
        else:
            confidence = 0.0

        return VisitorInsight(
            visitor_id=record.visitor_id,
            behavior_patterns=patterns,
            anomaly_score=AnomalyVerdict(
                is_anomaly=anomaly.is_anomaly,
                confidence=min(max(confidence, 0.0), 1.0),
            ),
        )
