"""
Visitor Intelligence Service

Application root that wires the engine components together:
- FeatureExtractor -> FingerprintModel for identifiers
- FeatureExtractor -> AnomalyModel for anomaly scores
- VisitorStore history -> PatternAnalyzer for behavioral patterns
- GeoResolver for country enrichment

Only configuration errors escape; every enrichment step degrades to its
documented default.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import structlog

from fingerprinting.core.geo.resolver import GeoResolver
from fingerprinting.core.ml.registry import AnomalyModel, FingerprintModel, ModelRegistry
from fingerprinting.core.models.config import FingerprintConfig, StoreConfig
from fingerprinting.core.models.visits import (
    AnomalyScore, Browser, PopulationSummary, Preferences, VisitObservation, VisitorInsight,
    VisitorRecord, VisitResult, now_ms
)
from fingerprinting.core.processors.features import FeatureExtractor, detect_browser
from fingerprinting.core.processors.patterns import PatternAnalyzer, hourly_histogram, peak_hours_by_deviation
from fingerprinting.core.stores.visitor_store import InMemoryVisitorStore, VisitorStore
from fingerprinting.core.utils.errors import ConfigurationError
from fingerprinting.core.utils.metrics import STORE_FETCH_FAILURES

logger = structlog.get_logger(__name__)


def build_store(config: StoreConfig) -> VisitorStore:
    """Instantiate the configured visitor store backend."""
    if config.backend == "memory":
        return InMemoryVisitorStore()
    if config.backend == "redis":
        from fingerprinting.core.stores.redis_store import RedisVisitorStore
        return RedisVisitorStore(config)
    raise ConfigurationError(f"Unknown store backend: {config.backend}")


class VisitorIntelligenceService:
    """Owns the model registry, geo resolver and visitor store for one process."""

    def __init__(self, config: FingerprintConfig,
                 store: Optional[VisitorStore] = None,
                 geo_resolver: Optional[GeoResolver] = None,
                 registry: Optional[ModelRegistry] = None):
        self.config = config
        self.extractor = FeatureExtractor(config.features)
        self.registry = registry or ModelRegistry(config.model, config.features.vector_size)
        self.extractor.check_compatible(self.registry.vector_size, "model registry")

        self.fingerprint_model = FingerprintModel(self.registry)
        self.anomaly_model = AnomalyModel(self.registry, config.model.anomaly_threshold)
        self.analyzer = PatternAnalyzer(config.patterns)
        self.store = store or build_store(config.store)
        self.geo = geo_resolver or GeoResolver(config.geo)

    async def start(self) -> None:
        """Initialize the networks and start background maintenance."""
        await self.registry.ensure_initialized()
        self.geo.start_maintenance()
        logger.info("Visitor intelligence service started", model_info=self.registry.get_model_info())

    async def close(self) -> None:
        await self.geo.close()
        await self.store.close()
        self.registry.dispose()
        logger.info("Visitor intelligence service stopped")

    # === Engine operations ===

    def identify(self, observation: Optional[VisitObservation]) -> str:
        """Pseudo-identifier for an observation."""
        return self.fingerprint_model.predict(self.extractor.extract(observation))

    def score(self, observation: Optional[VisitObservation]) -> AnomalyScore:
        return self.anomaly_model.score(self.extractor.extract(observation))

    async def fetch_history(self) -> List[VisitorRecord]:
        """Recent visitor sample; empty on store failure or timeout."""
        try:
            return await asyncio.wait_for(
                self.store.list_recent_visitors(self.config.patterns.history_limit),
                timeout=self.config.store.fetch_timeout_seconds
            )
        except asyncio.TimeoutError:
            STORE_FETCH_FAILURES.labels(reason="timeout").inc()
            logger.warning("Historical visitor fetch timed out",
                           timeout=self.config.store.fetch_timeout_seconds)
        except Exception as e:
            STORE_FETCH_FAILURES.labels(reason="error").inc()
            logger.warning("Could not fetch historical visitor data", error=str(e))
        return []

    async def evaluate_visit(self, observation: Optional[VisitObservation],
                             visitor_id: Optional[str] = None,
                             record: Optional[VisitorRecord] = None) -> VisitResult:
        """Identifier, anomaly score and pattern summary for one visit."""
        observation = observation or VisitObservation.from_raw(None)
        vector = self.extractor.extract(observation)

        identifier = visitor_id or self.fingerprint_model.predict(vector)
        anomaly = self.anomaly_model.score(vector)

        current = record or VisitorRecord.from_observation(identifier, observation)
        history = await self.fetch_history()
        patterns = self.analyzer.analyze(current, history, current_anomaly=anomaly)

        logger.info(
            "Visit evaluated",
            visitor_id=identifier,
            anomaly_score=anomaly.score,
            is_anomaly=anomaly.is_anomaly,
            history_size=len(history)
        )
        return VisitResult(visitor_id=identifier, anomaly=anomaly, patterns=patterns)

    # === Service operations ===

    async def record_visit(self, payload: Dict[str, Any],
                           client_address: Optional[str] = None) -> Tuple[VisitorRecord, VisitResult]:
        """
        Observe a visit and upsert the visitor.

        New visitors start with first/last visit now and a count of 1.
        Returning visitors get last visit now, refreshed country, any supplied
        browser/resolution/preferences, and a count increment only when
        ``should_increment_visit`` is set.
        """
        geo = await self.geo.resolve(client_address, payload.get("timezone"))

        user_agent = payload.get("user_agent")
        browser = payload.get("browser") or (detect_browser(user_agent).value if user_agent else None)

        current_ms = now_ms()
        observation = VisitObservation.from_raw({
            "user_agent": user_agent,
            "screen_resolution": payload.get("screen_resolution"),
            "browser": browser,
            "country": geo.country,
            "country_code": geo.country_code,
            "timestamp_ms": payload.get("timestamp") or current_ms,
        })

        visitor_id = payload.get("visitor_id") or self.identify(observation)
        existing = await self.store.find_by_visitor_id(visitor_id)
        now = datetime.now(timezone.utc)
        preferences = payload.get("preferences")

        if existing is None:
            fields = {
                "first_visit": now,
                "last_visit": now,
                "visit_count": 1,
                "browser": browser or Browser.UNKNOWN.value,
                "country": geo.country,
                "country_code": geo.country_code,
                "screen_resolution": observation.screen_resolution,
                "preferences": preferences or Preferences(),
                "timestamp_ms": current_ms,
            }
        else:
            fields = {
                "last_visit": now,
                "browser": browser,
                "country": geo.country,
                "country_code": geo.country_code,
                "screen_resolution": payload.get("screen_resolution"),
                "preferences": preferences,
                "timestamp_ms": current_ms,
            }
            if payload.get("should_increment_visit"):
                fields["visit_count"] = existing.visit_count + 1

        record = await self.store.upsert_visitor(visitor_id, fields)
        result = await self.evaluate_visit(observation, visitor_id=visitor_id, record=record)

        logger.info(
            "Visit recorded",
            visitor_id=visitor_id,
            new_visitor=existing is None,
            visit_count=record.visit_count,
            country_code=record.country_code
        )
        return record, result

    async def visitor_insight(self, visitor_id: str) -> Optional[VisitorInsight]:
        """Narrow behavior/anomaly view of a stored visitor; None when unknown."""
        record = await self.store.find_by_visitor_id(visitor_id)
        if record is None:
            return None

        observation = VisitObservation.from_raw({
            "screen_resolution": record.screen_resolution,
            "browser": record.browser,
            "country": record.country,
            "country_code": record.country_code,
            "timestamp_ms": record.timestamp_ms,
        })
        anomaly = self.score(observation)

        history = await self.fetch_history()
        population = [record] + [other for other in history if other.visitor_id != record.visitor_id]
        peak_hours = peak_hours_by_deviation(
            hourly_histogram(item.timestamp_ms for item in population),
            self.config.patterns.peak_std_multiplier
        )
        return self.analyzer.describe_visitor(record, anomaly, peak_hours)

    async def dashboard_summary(self, recent_limit: int = 5) -> Tuple[PopulationSummary, List[VisitorRecord]]:
        """Population analytics plus the most recently seen visitors."""
        records = await self.fetch_history()
        summary = self.analyzer.summarize_population(records)
        return summary, records[:recent_limit]

    async def check_fingerprint(self, fingerprint: str) -> Optional[VisitorRecord]:
        return await self.store.find_by_visitor_id(fingerprint)

    async def health(self) -> Dict[str, Any]:
        try:
            store_healthy = await self.store.health_check()
        except Exception as e:
            logger.warning("Store health check failed", error=str(e))
            store_healthy = False

        return {
            "store": {"status": "healthy" if store_healthy else "unhealthy", "backend": self.config.store.backend},
            "model": {"status": "healthy" if self.registry.is_initialized else "unhealthy",
                      **self.registry.get_model_info()},
            "geo_cache": self.geo.cache.get_stats(),
        }
