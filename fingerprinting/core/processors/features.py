"""
Visit feature extraction.

Converts a visit observation into the fixed-length numeric vector consumed
by both the fingerprint network and the anomaly autoencoder. Extraction is a
pure function of the observation and never raises on bad input.

Vector layout (vector_size=40):
    [0:16]   user-agent hash block
    [16:18]  screen width, height
    [18:24]  hour, minute, second as (sin, cos) pairs
    [24:30]  one-hot browser family
    [30]     country-code hash (only with include_geo_feature)
    [..]     neutral padding up to vector_size

With vector_size=16 only the user-agent hash block survives truncation.
"""

import math
from datetime import datetime, timezone
from typing import List, Optional, Tuple

import numpy as np
import structlog

from fingerprinting.core.models.config import FeatureConfig
from fingerprinting.core.models.visits import Browser, VisitObservation, coerce_timestamp_ms
from fingerprinting.core.utils.errors import VectorSizeMismatchError

logger = structlog.get_logger(__name__)

BROWSER_ORDER: Tuple[Browser, ...] = (
    Browser.CHROME,
    Browser.FIREFOX,
    Browser.SAFARI,
    Browser.EDGE,
    Browser.OPERA,
    Browser.UNKNOWN,
)


def hash_string(value: Optional[str], size: int = 16, neutral: float = 0.5) -> List[float]:
    """
    Fold a string into ``size`` buckets of character codes scaled to [0, 1].

    Collisions are expected; this is not a cryptographic hash.
    """
    if not value:
        return [neutral] * size

    buckets = [0] * size
    for i, char in enumerate(value):
        buckets[i % size] = (buckets[i % size] + ord(char)) % 256
    return [bucket / 255 for bucket in buckets]


def parse_resolution(resolution: Optional[str], default: str = "1920x1080") -> Tuple[int, int]:
    """Parse a ``"WxH"`` string, falling back to ``default`` when unusable."""
    try:
        width_text, height_text = str(resolution).lower().split("x")
        width, height = int(width_text.strip()), int(height_text.strip())
        if width <= 0 or height <= 0:
            raise ValueError("non-positive screen dimension")
        return width, height
    except (AttributeError, ValueError):
        width_text, height_text = default.split("x")
        return int(width_text), int(height_text)


def cyclical_time_features(timestamp_ms: int) -> List[float]:
    """
    Encode hour, minute and second as sine/cosine pairs rescaled into [0, 1].

    The circular encoding keeps 23:59 and 00:00 adjacent. Timestamps that
    datetime cannot represent are encoded as the current time.
    """
    moment = datetime.fromtimestamp(coerce_timestamp_ms(timestamp_ms) / 1000, tz=timezone.utc)
    features = []
    for value, period in ((moment.hour, 24), (moment.minute, 60), (moment.second, 60)):
        angle = 2 * math.pi * value / period
        features.append((math.sin(angle) + 1) / 2)
        features.append((math.cos(angle) + 1) / 2)
    return features


def browser_one_hot(browser: Browser) -> List[float]:
    """One-hot block over BROWSER_ORDER; exactly one entry is 1."""
    return [1.0 if browser == candidate else 0.0 for candidate in BROWSER_ORDER]


def detect_browser(user_agent: Optional[str]) -> Browser:
    """Classify a user-agent header into a browser family."""
    if not user_agent:
        return Browser.UNKNOWN
    if "Firefox/" in user_agent:
        return Browser.FIREFOX
    if "Edg/" in user_agent or "Edge/" in user_agent:
        return Browser.EDGE
    if "OPR/" in user_agent or "Opera" in user_agent:
        return Browser.OPERA
    if "Chrome/" in user_agent and "Chromium" not in user_agent:
        return Browser.CHROME
    if "Safari/" in user_agent and "Chrome/" not in user_agent:
        return Browser.SAFARI
    return Browser.UNKNOWN


class FeatureExtractor:
    """Build fixed-length feature vectors from visit observations."""

    def __init__(self, config: FeatureConfig):
        self.config = config
        self.vector_size = config.vector_size

    def extract(self, observation: Optional[VisitObservation]) -> np.ndarray:
        """
        Extract the feature vector for one visit.

        Args:
            observation: Parsed visit; ``None`` yields the vector of a visit
                with every field defaulted.

        Returns:
            float32 array of exactly ``vector_size`` values in [0, 1]
        """
        if observation is None:
            observation = VisitObservation.from_raw(None)

        width, height = parse_resolution(observation.screen_resolution, self.config.default_resolution)

        components: List[float] = []
        components.extend(hash_string(observation.user_agent, self.config.hash_size, self.config.padding_value))
        components.extend([
            width / self.config.max_screen_dimension,
            height / self.config.max_screen_dimension,
        ])
        components.extend(cyclical_time_features(observation.timestamp_ms))
        components.extend(browser_one_hot(observation.browser))

        if self.config.include_geo_feature:
            components.extend(hash_string(observation.country_code, 1, self.config.padding_value))

        vector = self._fit_length(components)
        return np.clip(np.asarray(vector, dtype=np.float32), 0.0, 1.0)

    def _fit_length(self, components: List[float]) -> List[float]:
        """Pad with the neutral value or truncate to the configured size."""
        if len(components) > self.vector_size:
            logger.debug(
                "Truncating feature vector",
                raw_length=len(components),
                vector_size=self.vector_size
            )
            return components[:self.vector_size]

        padding = [self.config.padding_value] * (self.vector_size - len(components))
        return components + padding

    def check_compatible(self, input_width: int, component: str = "model") -> None:
        """Raise if a model input layer cannot accept this extractor's vectors."""
        if input_width != self.vector_size:
            raise VectorSizeMismatchError(input_width, self.vector_size, component)
