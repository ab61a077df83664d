"""
Fingerprinting Engine Configuration

Centralized configuration management for the fingerprinting engine and the
service that hosts it. Supports environment-based overrides for different
deployment environments.
"""

import os
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Vector widths the extractor and both networks agree on
SUPPORTED_VECTOR_SIZES = (16, 40)


class FeatureConfig(BaseModel):
    """Feature extraction settings."""

    vector_size: int = Field(
        default=40,
        description=(
            "Feature vector length shared with both models. At 16 the vector is "
            "truncated to the user-agent hash block, so screen, time and browser "
            "features are not used"
        )
    )
    hash_size: int = Field(default=16, description="Width of the user-agent hash block")
    max_screen_dimension: int = Field(default=3840, description="Reference maximum for screen normalization (4K width)")
    default_resolution: str = Field(default="1920x1080", description="Resolution used when parsing fails")
    padding_value: float = Field(default=0.5, description="Neutral value for padding and missing input")
    include_geo_feature: bool = Field(default=False, description="Append a country-code hash component")

    @field_validator("vector_size")
    @classmethod
    def check_vector_size(cls, value: int) -> int:
        if value not in SUPPORTED_VECTOR_SIZES:
            raise ValueError(f"vector_size must be one of {SUPPORTED_VECTOR_SIZES}, got {value}")
        return value


class ModelConfig(BaseModel):
    """Network configuration for fingerprinting and anomaly detection."""

    model_config = ConfigDict(protected_namespaces=())

    # Weight initialization and persistence
    seed: int = Field(default=42, description="Seed for deterministic weight initialization")
    weights_dir: Optional[str] = Field(default=None, description="Directory holding a persisted weight snapshot")
    model_version: str = Field(default="v1.0", description="Model version")

    # Fingerprint network
    hidden_units: int = Field(default=32, description="Hidden layer width of the fingerprint network")
    dropout_rate: float = Field(default=0.2, description="Dropout rate used during training only")

    # Autoencoder
    encoder_units: List[int] = Field(default_factory=lambda: [32, 16], description="Encoder layer widths")
    decoder_units: List[int] = Field(default_factory=lambda: [32], description="Decoder hidden layer widths")
    anomaly_threshold: float = Field(default=0.1, description="Reconstruction error above which a visit is anomalous")

    # Identifier serialization
    identifier_separator: str = Field(default="-", description="Separator between identifier components")
    identifier_precision: int = Field(default=6, description="Decimal places per identifier component")

    def weight_paths(self) -> Optional[dict]:
        """Weight file locations inside ``weights_dir``."""
        if not self.weights_dir:
            return None
        base = Path(self.weights_dir)
        return {
            "fingerprint": base / "fingerprint.weights.h5",
            "anomaly": base / "anomaly.weights.h5",
        }


class GeoConfig(BaseModel):
    """Geolocation resolution settings."""

    cache_ttl_seconds: int = Field(default=30 * 60, description="Geo cache entry lifetime")
    provider_timeout_seconds: float = Field(default=5.0, description="Per-provider lookup timeout")
    providers: List[str] = Field(
        default_factory=lambda: ["geojs", "ipwhois", "ipapi"],
        description="Lookup providers in priority order"
    )
    user_agent: str = Field(default="Anonymous Site Visitor/1.0", description="User-Agent sent to providers")


class PatternConfig(BaseModel):
    """Behavioral pattern aggregation settings."""

    session_timeout_minutes: int = Field(default=30, description="Gap that starts a new session")
    min_session_minutes: int = Field(default=5, description="Floor applied to every session duration")

    # Peak detection
    peak_std_multiplier: float = Field(default=1.0, description="Peak if count > mean + k * std (per-visit path)")
    hourly_peak_multiplier: float = Field(default=1.5, description="Peak if count > mean * k (hourly-count path)")

    # Anomaly aggregation
    spike_multiplier: float = Field(default=3.0, description="Traffic spike if max hourly count > k * mean")
    high_frequency_threshold: int = Field(default=100, description="Visits per visitor that count as high frequency")
    high_frequency_window_hours: int = Field(default=24, description="Window for the high-frequency check")
    high_frequency_score: float = Field(default=0.8, description="Score reported for high-frequency visitors")

    # History sampling
    history_limit: int = Field(default=1000, description="Maximum historical records per analysis")
    top_n: int = Field(default=10, description="Entries kept in top browser/country lists")

    @property
    def session_timeout_ms(self) -> int:
        return self.session_timeout_minutes * 60 * 1000

    @property
    def min_session_ms(self) -> int:
        return self.min_session_minutes * 60 * 1000


class StoreConfig(BaseModel):
    """Visitor store configuration."""

    backend: str = Field(default="memory", description="Store backend: memory or redis")
    fetch_timeout_seconds: float = Field(default=5.0, description="Timeout for historical fetches")

    # Redis settings
    redis_host: str = Field(default="redis", description="Redis host")
    redis_port: int = Field(default=6379, description="Redis port")
    redis_db: int = Field(default=0, description="Redis database number")
    redis_password: Optional[str] = Field(default=None, description="Redis password")
    key_prefix: str = Field(default="visitor", description="Prefix for visitor keys")
    socket_timeout: int = Field(default=5, description="Socket timeout seconds")


class APIConfig(BaseModel):
    """API configuration."""

    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8080, description="Server port")
    title: str = Field(default="Visitor Fingerprinting API", description="API title")
    description: str = Field(
        default="Cookie-free visitor fingerprinting with behavioral pattern and anomaly detection",
        description="API description"
    )
    version: str = Field(default="1.0.0", description="API version")
    cors_origins: List[str] = Field(default_factory=lambda: ["*"], description="CORS allowed origins")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="json", description="Log format: json or text")
    service_name: str = Field(default="fingerprinting", description="Service name")
    environment: str = Field(default="production", description="Environment")


class FingerprintConfig(BaseModel):
    """Complete engine and service configuration."""

    features: FeatureConfig = Field(default_factory=FeatureConfig)
    model: ModelConfig = Field(default_factory=ModelConfig)
    geo: GeoConfig = Field(default_factory=GeoConfig)
    patterns: PatternConfig = Field(default_factory=PatternConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    api: APIConfig = Field(default_factory=APIConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    environment: str = Field(default="production", description="Environment")

    @classmethod
    def from_env(cls) -> "FingerprintConfig":
        """Load configuration from environment variables."""
        config = cls()

        # Feature configuration
        if os.getenv("VECTOR_SIZE"):
            config.features = FeatureConfig(
                **{**config.features.model_dump(), "vector_size": int(os.getenv("VECTOR_SIZE"))}
            )
        if os.getenv("INCLUDE_GEO_FEATURE"):
            config.features.include_geo_feature = os.getenv("INCLUDE_GEO_FEATURE").lower() == "true"

        # Model configuration
        if os.getenv("MODEL_SEED"):
            config.model.seed = int(os.getenv("MODEL_SEED"))
        if os.getenv("MODEL_WEIGHTS_DIR"):
            config.model.weights_dir = os.getenv("MODEL_WEIGHTS_DIR")
        if os.getenv("MODEL_VERSION"):
            config.model.model_version = os.getenv("MODEL_VERSION")

        # Geo configuration
        if os.getenv("GEO_CACHE_TTL_SECONDS"):
            config.geo.cache_ttl_seconds = int(os.getenv("GEO_CACHE_TTL_SECONDS"))
        if os.getenv("GEO_PROVIDER_TIMEOUT"):
            config.geo.provider_timeout_seconds = float(os.getenv("GEO_PROVIDER_TIMEOUT"))

        # Store configuration
        if os.getenv("STORE_BACKEND"):
            config.store.backend = os.getenv("STORE_BACKEND")
        if os.getenv("REDIS_HOST"):
            config.store.redis_host = os.getenv("REDIS_HOST")
        if os.getenv("REDIS_PORT"):
            config.store.redis_port = int(os.getenv("REDIS_PORT"))
        if os.getenv("REDIS_PASSWORD"):
            config.store.redis_password = os.getenv("REDIS_PASSWORD")

        # API configuration
        if os.getenv("API_HOST"):
            config.api.host = os.getenv("API_HOST")
        if os.getenv("API_PORT"):
            config.api.port = int(os.getenv("API_PORT"))

        # Logging configuration
        if os.getenv("LOG_LEVEL"):
            config.logging.level = os.getenv("LOG_LEVEL")
        if os.getenv("LOG_FORMAT"):
            config.logging.format = os.getenv("LOG_FORMAT")
        if os.getenv("ENVIRONMENT"):
            config.environment = os.getenv("ENVIRONMENT")
            config.logging.environment = os.getenv("ENVIRONMENT")

        return config
