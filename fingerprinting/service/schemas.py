"""
Request and Response Schemas for the Fingerprinting API

Pydantic models for the HTTP contract. Engine result types are reused
directly where the wire shape matches.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from fingerprinting.core.models.visits import (
    AnomalyScore, PatternSummary, PopulationSummary, Preferences, VisitorRecord
)


class HealthStatus(str, Enum):
    """Health status values."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class VisitRequest(BaseModel):
    """Visit report sent by the tracking client."""

    visitor_id: Optional[str] = Field(
        default=None,
        description="Known visitor identifier; derived from the visit when omitted",
        max_length=2048
    )
    user_agent: Optional[str] = Field(default=None, description="Client user-agent header")
    screen_resolution: Optional[str] = Field(default=None, description="Screen size as WxH", max_length=32)
    browser: Optional[str] = Field(default=None, description="Browser family label")
    timezone: Optional[str] = Field(default=None, description="IANA timezone reported by the client")
    preferences: Optional[Preferences] = Field(default=None, description="Display preferences")
    should_increment_visit: bool = Field(default=False, description="Count this report as a new visit")
    timestamp: Optional[int] = Field(default=None, description="Client epoch milliseconds", ge=0)

    model_config = ConfigDict(extra="ignore")


class VisitResponse(BaseModel):
    """Stored visitor plus the enrichment computed for this visit."""

    request_id: Optional[str] = Field(default=None, description="Request identifier")
    visitor: VisitorRecord
    anomaly: AnomalyScore
    patterns: PatternSummary


class FingerprintVisitor(BaseModel):
    """Minimal visitor data disclosed by a fingerprint check."""
    first_visit: datetime
    visit_count: int


class FingerprintCheckResponse(BaseModel):
    exists: bool
    visitor: Optional[FingerprintVisitor] = None


class DashboardResponse(PopulationSummary):
    """Population analytics plus the most recent visitors."""
    recent_visitors: List[VisitorRecord] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Health check response."""

    status: HealthStatus = Field(description="Overall health status")
    timestamp: datetime = Field(description="Health check timestamp")
    version: str = Field(description="Service version")
    components: Dict[str, Dict[str, Any]] = Field(description="Health status of individual components")
    uptime_seconds: float = Field(description="Service uptime in seconds")


class ErrorDetail(BaseModel):
    """Detailed error information."""

    error_code: str = Field(description="Error code")
    error_message: str = Field(description="Human-readable error message")
    error_type: str = Field(description="Error type/category")
    timestamp: datetime = Field(description="Error timestamp")
    request_id: Optional[str] = Field(default=None, description="Request ID where error occurred")


class ErrorResponse(BaseModel):
    """Error response model."""

    success: bool = Field(default=False, description="Request success status")
    error: ErrorDetail = Field(description="Error details")

    model_config = ConfigDict(extra="forbid")
