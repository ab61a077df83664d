"""
Visit and visitor data models.

These models define the values flowing through the fingerprinting engine:
inbound observations, stored visitor records and the derived anomaly and
pattern results handed back to the API layer.
"""

import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_RESOLUTION = "1920x1080"
UNKNOWN_COUNTRY = "Unknown"
UNKNOWN_COUNTRY_CODE = "XX"

# Last millisecond of 9999-12-31, the upper bound of datetime
MAX_TIMESTAMP_MS = 253402300799999


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def to_utc(value: Any) -> Optional[datetime]:
    """Coerce epoch milliseconds, ISO strings or datetimes to an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise ValueError(f"Unsupported timestamp value: {value!r}")


def coerce_timestamp_ms(value: Any) -> int:
    """Epoch milliseconds from a loose value, now when missing, malformed or out of range."""
    if value is None or isinstance(value, bool):
        return now_ms()
    try:
        timestamp_ms = int(value)
    except (TypeError, ValueError, OverflowError):
        return now_ms()
    if not 0 <= timestamp_ms <= MAX_TIMESTAMP_MS:
        return now_ms()
    return timestamp_ms


def datetime_to_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


class Browser(str, Enum):
    """Browser families encoded by the one-hot feature block."""
    CHROME = "Chrome"
    FIREFOX = "Firefox"
    SAFARI = "Safari"
    EDGE = "Edge"
    OPERA = "Opera"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, label: Any) -> "Browser":
        """Map a free-form label to a browser family, Unknown when unrecognized."""
        if isinstance(label, cls):
            return label
        if not label or not isinstance(label, str):
            return cls.UNKNOWN
        normalized = label.strip().lower()
        for member in cls:
            if member.value.lower() == normalized:
                return member
        return cls.UNKNOWN


class VisitObservation(BaseModel):
    """A single visit as seen by the request-handling layer."""

    model_config = ConfigDict(frozen=True)

    user_agent: Optional[str] = None
    screen_resolution: str = DEFAULT_RESOLUTION
    browser: Browser = Browser.UNKNOWN
    country: str = UNKNOWN_COUNTRY
    country_code: str = UNKNOWN_COUNTRY_CODE
    timestamp_ms: int = Field(default_factory=now_ms)

    @field_validator("browser", mode="before")
    @classmethod
    def parse_browser(cls, value: Any) -> Browser:
        return Browser.parse(value)

    @classmethod
    def from_raw(cls, data: Optional[Dict[str, Any]]) -> "VisitObservation":
        """
        Build an observation from a loosely-typed payload.

        Every missing or malformed field is replaced by its documented
        default so downstream code never re-checks optionality.
        """
        data = data or {}

        user_agent = data.get("user_agent") or data.get("userAgent")
        if not isinstance(user_agent, str) or not user_agent:
            user_agent = None

        resolution = data.get("screen_resolution") or data.get("screenResolution")
        if not isinstance(resolution, str) or not resolution:
            resolution = DEFAULT_RESOLUTION

        timestamp_ms = coerce_timestamp_ms(data.get("timestamp_ms", data.get("timestamp")))

        return cls(
            user_agent=user_agent,
            screen_resolution=resolution,
            browser=data.get("browser"),
            country=data.get("country") or UNKNOWN_COUNTRY,
            country_code=data.get("country_code") or data.get("countryCode") or UNKNOWN_COUNTRY_CODE,
            timestamp_ms=timestamp_ms,
        )


class Preferences(BaseModel):
    """Visitor display preferences."""
    theme: str = "light"
    language: str = "en"


class VisitorRecord(BaseModel):
    """Persisted visitor document as read from the visitor store."""

    visitor_id: str
    first_visit: datetime
    last_visit: datetime
    visit_count: int = Field(default=1, ge=1)
    browser: str = Browser.UNKNOWN.value
    country: str = UNKNOWN_COUNTRY
    country_code: str = UNKNOWN_COUNTRY_CODE
    screen_resolution: str = DEFAULT_RESOLUTION
    preferences: Preferences = Field(default_factory=Preferences)
    timestamp_ms: int = Field(default_factory=now_ms)

    @field_validator("first_visit", "last_visit", mode="before")
    @classmethod
    def parse_datetime(cls, value: Any) -> datetime:
        parsed = to_utc(value)
        if parsed is None:
            raise ValueError("visit timestamp is required")
        return parsed

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "VisitorRecord":
        """Build a record from a store document, filling defaults for missing fields."""
        current = now_ms()
        last_visit = document.get("last_visit") or document.get("lastVisit") or current
        first_visit = document.get("first_visit") or document.get("firstVisit") or last_visit

        return cls(
            visitor_id=document.get("visitor_id") or document.get("visitorId"),
            first_visit=first_visit,
            last_visit=last_visit,
            visit_count=document.get("visit_count") or document.get("visitCount") or 1,
            browser=document.get("browser") or Browser.UNKNOWN.value,
            country=document.get("country") or UNKNOWN_COUNTRY,
            country_code=document.get("country_code") or document.get("countryCode") or UNKNOWN_COUNTRY_CODE,
            screen_resolution=document.get("screen_resolution") or document.get("screenResolution") or DEFAULT_RESOLUTION,
            preferences=document.get("preferences") or Preferences(),
            timestamp_ms=document.get("timestamp_ms") or document.get("timestamp") or current,
        )

    @classmethod
    def from_observation(cls, visitor_id: str, observation: VisitObservation) -> "VisitorRecord":
        """Record describing a first-seen visitor."""
        seen_at = to_utc(observation.timestamp_ms)
        return cls(
            visitor_id=visitor_id,
            first_visit=seen_at,
            last_visit=seen_at,
            visit_count=1,
            browser=observation.browser.value,
            country=observation.country,
            country_code=observation.country_code,
            screen_resolution=observation.screen_resolution,
            timestamp_ms=observation.timestamp_ms,
        )

    def visit_timestamps(self) -> List[int]:
        """Distinct known visit instants for this record, in epoch milliseconds."""
        instants = {
            datetime_to_ms(self.first_visit),
            datetime_to_ms(self.last_visit),
            self.timestamp_ms,
        }
        return sorted(instants)


class GeoResponse(BaseModel):
    """Resolved location of a client."""
    country: str = UNKNOWN_COUNTRY
    country_code: str = UNKNOWN_COUNTRY_CODE
    region: Optional[str] = None
    city: Optional[str] = None

    @property
    def is_known(self) -> bool:
        return self.country_code != UNKNOWN_COUNTRY_CODE


class AnomalyScore(BaseModel):
    """Outcome of one anomaly evaluation."""

    score: float = Field(ge=0.0)
    threshold: float
    is_anomaly: bool
    reasons: List[str] = Field(default_factory=list)


class PatternSummary(BaseModel):
    """Aggregate behavioral patterns for a population snapshot."""

    peak_hours: List[int] = Field(default_factory=list)
    browser_patterns: Dict[str, int] = Field(default_factory=dict)
    returning_visitor_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    average_visit_duration: float = Field(default=0.0, ge=0.0, description="Milliseconds")
    anomalies: List[AnomalyScore] = Field(default_factory=list)


class AnomalyVerdict(BaseModel):
    """Compact anomaly result for single-visitor queries."""
    is_anomaly: bool
    confidence: float = Field(ge=0.0, le=1.0)


class VisitorInsight(BaseModel):
    """Per-visitor behavior description."""
    visitor_id: str
    behavior_patterns: List[str] = Field(default_factory=list)
    anomaly_score: AnomalyVerdict


class CountEntry(BaseModel):
    """One row of a top-N distribution."""
    label: str
    count: int


class PopulationPatterns(BaseModel):
    """Dashboard-level pattern block."""
    peak_hours: List[int] = Field(default_factory=list)
    returning_visitor_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    average_session_duration: float = Field(default=0.0, description="Seconds")
    anomalies: List[AnomalyScore] = Field(default_factory=list)


class PopulationSummary(BaseModel):
    """Visitor analytics for the dashboard."""
    total_visits: int = 0
    unique_visitors: int = 0
    active_visitors: int = 0
    hourly_visitors: List[int] = Field(default_factory=lambda: [0] * 24)
    top_browsers: List[CountEntry] = Field(default_factory=list)
    top_countries: List[CountEntry] = Field(default_factory=list)
    patterns: PopulationPatterns = Field(default_factory=PopulationPatterns)


class VisitResult(BaseModel):
    """Identifier plus patterns returned for a single visit event."""
    visitor_id: str
    anomaly: AnomalyScore
    patterns: PatternSummary
