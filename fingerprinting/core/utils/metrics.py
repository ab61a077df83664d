"""
Shared Prometheus metrics for the fingerprinting engine.

This module provides centralized metric definitions to avoid
duplicate registrations across the geo, model and pattern modules.
"""

from prometheus_client import Counter, Gauge, Histogram

# Geolocation metrics
GEO_LOOKUPS = Counter(
    'geo_lookups_total',
    'Geolocation lookups by source',
    ['provider', 'status']
)

GEO_CACHE_HITS = Counter(
    'geo_cache_hits_total',
    'Total geolocation cache hits'
)

GEO_CACHE_MISSES = Counter(
    'geo_cache_misses_total',
    'Total geolocation cache misses'
)

GEO_CACHE_SIZE = Gauge(
    'geo_cache_entries',
    'Current number of cached geolocation entries'
)

# Model metrics
MODEL_INFERENCE_DURATION = Histogram(
    'fingerprint_model_inference_duration_seconds',
    'Time spent running a network forward pass',
    ['model']
)

MODEL_INITIALIZATIONS = Counter(
    'fingerprint_model_initializations_total',
    'Model registry initializations',
    ['status']
)

ANOMALY_SCORES = Histogram(
    'visit_anomaly_score',
    'Distribution of reconstruction-error anomaly scores',
    buckets=[0.0, 0.01, 0.025, 0.05, 0.1, 0.12, 0.15, 0.2, 0.3, 0.5, 1.0]
)

ANOMALIES_FLAGGED = Counter(
    'visit_anomalies_flagged_total',
    'Visits flagged as anomalous',
    ['source']
)

# Pattern metrics
PATTERN_ANALYSES = Counter(
    'pattern_analyses_total',
    'Pattern analyses computed',
    ['kind', 'status']
)

STORE_FETCH_FAILURES = Counter(
    'visitor_store_fetch_failures_total',
    'Historical visitor fetches that failed or timed out',
    ['reason']
)

# API metrics
REQUEST_COUNT = Counter(
    'fingerprinting_requests_total',
    'Total API requests',
    ['method', 'endpoint', 'status']
)

REQUEST_DURATION = Histogram(
    'fingerprinting_request_duration_seconds',
    'Request duration in seconds',
    ['endpoint']
)

ACTIVE_REQUESTS = Gauge(
    'fingerprinting_active_requests',
    'Number of in-flight requests'
)

ERROR_COUNT = Counter(
    'fingerprinting_errors_total',
    'Total API errors',
    ['error_type', 'endpoint']
)
