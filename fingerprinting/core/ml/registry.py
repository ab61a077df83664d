"""
Model Registry and Inference for Visitor Fingerprinting

This module handles:
- Building (or loading) the fingerprint and anomaly networks once per process
- Guarding initialization against concurrent callers
- Identifier generation from feature vectors
- Reconstruction-error anomaly scoring with human-readable reasons
"""

import asyncio
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import structlog

from fingerprinting.core.models.config import ModelConfig
from fingerprinting.core.models.visits import AnomalyScore
from fingerprinting.core.utils.errors import ModelInitializationError, VectorSizeMismatchError
from fingerprinting.core.utils.metrics import (
    ANOMALIES_FLAGGED, ANOMALY_SCORES, MODEL_INFERENCE_DURATION, MODEL_INITIALIZATIONS
)

logger = structlog.get_logger(__name__)

# Optional numeric backend
try:
    from tensorflow import keras
    from fingerprinting.core.ml.networks import (
        build_autoencoder, build_fingerprint_network, compile_networks
    )
    KERAS_AVAILABLE = True
except ImportError:
    KERAS_AVAILABLE = False
    logger.warning("TensorFlow not available, model initialization will fail")

PROCESSING_ERROR_REASON = "Error processing visitor data"

# (multiple of threshold, reason), most severe first
ANOMALY_REASON_LEVELS = (
    (2.0, "Unusual browser fingerprint"),
    (1.5, "Suspicious screen resolution"),
    (1.2, "Atypical visit time"),
)


def anomaly_from_error(error: float, threshold: float) -> AnomalyScore:
    """Turn a reconstruction error into an AnomalyScore with ordered reasons."""
    score = max(float(error), 0.0)
    is_anomaly = score > threshold

    reasons: List[str] = []
    if is_anomaly:
        for multiple, reason in ANOMALY_REASON_LEVELS:
            if score > threshold * multiple:
                reasons.append(reason)

    return AnomalyScore(score=score, threshold=threshold, is_anomaly=is_anomaly, reasons=reasons)


class ModelRegistry:
    """Owns the process-wide network state: initialize once, reuse many."""

    def __init__(self, config: ModelConfig, vector_size: int):
        self.config = config
        self.vector_size = vector_size
        self.fingerprint_network = None
        self.anomaly_network = None
        self.initialized_at: Optional[float] = None

        self._lock = threading.Lock()
        self._init_future: Optional[asyncio.Future] = None
        self._weights_loaded = False

    @property
    def is_initialized(self) -> bool:
        return self.fingerprint_network is not None and self.anomaly_network is not None

    def initialize(self) -> None:
        """Build or load both networks. Safe to call repeatedly."""
        with self._lock:
            if self.is_initialized:
                return
            self._initialize_locked()

    async def ensure_initialized(self) -> None:
        """
        Initialize without blocking the event loop.

        Concurrent callers share the same in-flight initialization instead
        of starting a second one.
        """
        if self.is_initialized:
            return

        if self._init_future is None:
            loop = asyncio.get_running_loop()
            self._init_future = loop.run_in_executor(None, self.initialize)

        future = self._init_future
        try:
            await asyncio.shield(future)
        finally:
            if self._init_future is future and future.done():
                self._init_future = None

    def reinitialize(self) -> None:
        """Dispose current networks and build fresh ones."""
        with self._lock:
            self._dispose_locked()
            self._initialize_locked()

    def dispose(self) -> None:
        """Release network state."""
        with self._lock:
            self._dispose_locked()

    def _initialize_locked(self) -> None:
        if not KERAS_AVAILABLE:
            MODEL_INITIALIZATIONS.labels(status="error").inc()
            raise ModelInitializationError("No numeric backend available: install tensorflow")

        start_time = time.time()
        try:
            fingerprint, anomaly = self._build_networks()
            self._check_input_width(fingerprint, "fingerprint model")
            self._check_input_width(anomaly, "anomaly model")
            self._load_weights(fingerprint, anomaly)
        except VectorSizeMismatchError:
            MODEL_INITIALIZATIONS.labels(status="error").inc()
            raise
        except Exception as e:
            MODEL_INITIALIZATIONS.labels(status="error").inc()
            logger.error("Model initialization failed", error=str(e))
            raise ModelInitializationError(f"Failed to initialize models: {e}") from e

        self.fingerprint_network = fingerprint
        self.anomaly_network = anomaly
        self.initialized_at = time.time()
        MODEL_INITIALIZATIONS.labels(status="success").inc()

        logger.info(
            "Model registry initialized",
            vector_size=self.vector_size,
            seed=self.config.seed,
            weights_loaded=self._weights_loaded,
            init_ms=(time.time() - start_time) * 1000
        )

    def _build_networks(self):
        fingerprint = build_fingerprint_network(
            self.vector_size,
            hidden_units=self.config.hidden_units,
            dropout_rate=self.config.dropout_rate,
            seed=self.config.seed,
        )
        anomaly = build_autoencoder(
            self.vector_size,
            encoder_units=self.config.encoder_units,
            decoder_units=self.config.decoder_units,
            seed=self.config.seed,
        )
        compile_networks(fingerprint, anomaly)
        return fingerprint, anomaly

    def _check_input_width(self, network, component: str) -> None:
        input_width = int(network.inputs[0].shape[-1])
        if input_width != self.vector_size:
            raise VectorSizeMismatchError(input_width, self.vector_size, component)

    def _load_weights(self, fingerprint, anomaly) -> None:
        self._weights_loaded = False
        paths = self.config.weight_paths()
        if not paths:
            return

        if paths["fingerprint"].exists() and paths["anomaly"].exists():
            fingerprint.load_weights(str(paths["fingerprint"]))
            anomaly.load_weights(str(paths["anomaly"]))
            self._weights_loaded = True
            logger.info("Loaded weight snapshot", weights_dir=self.config.weights_dir)
        else:
            logger.warning(
                "Weight snapshot not found, using seeded initialization",
                weights_dir=self.config.weights_dir
            )

    def _dispose_locked(self) -> None:
        if self.fingerprint_network is None and self.anomaly_network is None:
            return
        self.fingerprint_network = None
        self.anomaly_network = None
        self.initialized_at = None
        if KERAS_AVAILABLE:
            keras.backend.clear_session()
        logger.info("Model registry disposed")

    def save_weights(self, directory: str) -> Dict[str, str]:
        """Persist a weight snapshot that later processes can load."""
        self.initialize()
        base = Path(directory)
        base.mkdir(parents=True, exist_ok=True)

        fingerprint_path = base / "fingerprint.weights.h5"
        anomaly_path = base / "anomaly.weights.h5"
        self.fingerprint_network.save_weights(str(fingerprint_path))
        self.anomaly_network.save_weights(str(anomaly_path))

        logger.info("Saved weight snapshot", directory=str(base))
        return {"fingerprint": str(fingerprint_path), "anomaly": str(anomaly_path)}

    def get_model_info(self) -> Dict[str, Any]:
        """Get model metadata."""
        return {
            "model_version": self.config.model_version,
            "vector_size": self.vector_size,
            "seed": self.config.seed,
            "initialized": self.is_initialized,
            "weights_loaded": self._weights_loaded,
            "backend_available": KERAS_AVAILABLE,
        }


class FingerprintModel:
    """Maps feature vectors to pseudo-identifiers."""

    def __init__(self, registry: ModelRegistry):
        self.registry = registry
        self.prediction_count = 0

    def predict_vector(self, vector: np.ndarray) -> np.ndarray:
        """Run the fingerprint network on one feature vector."""
        vector = np.asarray(vector, dtype=np.float32)
        if vector.shape[-1] != self.registry.vector_size:
            raise VectorSizeMismatchError(self.registry.vector_size, vector.shape[-1], "fingerprint model")

        # Transparent lazy initialization
        self.registry.initialize()

        with MODEL_INFERENCE_DURATION.labels(model="fingerprint").time():
            output = self.registry.fingerprint_network(vector.reshape(1, -1), training=False)
        self.prediction_count += 1
        return np.asarray(output)[0]

    def predict(self, vector: np.ndarray) -> str:
        """Serialize the network output into an identifier string."""
        output = self.predict_vector(vector)
        precision = self.registry.config.identifier_precision
        separator = self.registry.config.identifier_separator
        return separator.join(f"{float(value):.{precision}f}" for value in output)


class AnomalyModel:
    """Scores visits by autoencoder reconstruction error."""

    def __init__(self, registry: ModelRegistry, threshold: Optional[float] = None):
        self.registry = registry
        self.threshold = threshold if threshold is not None else registry.config.anomaly_threshold

    def reconstruction_error(self, vector: np.ndarray) -> float:
        """Mean squared error between the vector and its reconstruction."""
        self.registry.initialize()

        batch = np.asarray(vector, dtype=np.float32).reshape(1, -1)
        with MODEL_INFERENCE_DURATION.labels(model="anomaly").time():
            reconstruction = np.asarray(self.registry.anomaly_network(batch, training=False))
        return float(np.mean(np.square(batch - reconstruction)))

    def score(self, vector: np.ndarray) -> AnomalyScore:
        """
        Score one feature vector.

        Inference failures degrade to a zero score; vector-width mismatches
        and initialization failures are configuration errors and propagate.
        """
        vector = np.asarray(vector, dtype=np.float32)
        if vector.shape[-1] != self.registry.vector_size:
            raise VectorSizeMismatchError(self.registry.vector_size, vector.shape[-1], "anomaly model")

        # Initialization failures are fatal, unlike inference failures
        self.registry.initialize()

        try:
            error = self.reconstruction_error(vector)
            if not np.isfinite(error):
                raise ValueError(f"non-finite reconstruction error: {error}")
        except Exception as e:
            logger.error("Anomaly detection failed", error=str(e))
            return AnomalyScore(
                score=0.0,
                threshold=self.threshold,
                is_anomaly=False,
                reasons=[PROCESSING_ERROR_REASON]
            )

        result = anomaly_from_error(error, self.threshold)
        ANOMALY_SCORES.observe(result.score)
        if result.is_anomaly:
            ANOMALIES_FLAGGED.labels(source="autoencoder").inc()

        logger.debug(
            "Anomaly score computed",
            score=result.score,
            is_anomaly=result.is_anomaly,
            reasons=result.reasons
        )
        return result
