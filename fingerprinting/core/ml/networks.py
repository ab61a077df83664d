"""
Network definitions for fingerprinting and anomaly detection.

Both networks read the same fixed-width feature vector:

    Fingerprint network            Autoencoder
    -------------------            -----------
    Dense(32, relu)                Dense(32, relu)    encoder
    Dropout(0.2)                   Dense(16, relu)    encoder
    Dense(vector_size, sigmoid)    Dense(32, relu)    decoder
                                   Dense(vector_size, sigmoid)

The sigmoid output layers keep predictions on the same [0, 1] scale as the
input vector, so the fingerprint output can be serialized directly and the
autoencoder reconstruction can be compared against its input.
"""

from typing import Sequence

from tensorflow import keras


def _initializer(seed: int):
    return keras.initializers.GlorotNormal(seed=seed)


def build_fingerprint_network(vector_size: int,
                              hidden_units: int = 32,
                              dropout_rate: float = 0.2,
                              seed: int = 42) -> keras.Model:
    """Feature vector -> identifier vector of the same width."""
    return keras.Sequential([
        keras.Input(shape=(vector_size,), name="fingerprint_input"),
        keras.layers.Dense(hidden_units, activation="relu",
                           kernel_initializer=_initializer(seed),
                           name="fingerprint_dense_1"),
        # Only active when called with training=True
        keras.layers.Dropout(dropout_rate, name="fingerprint_dropout"),
        keras.layers.Dense(vector_size, activation="sigmoid",
                           kernel_initializer=_initializer(seed + 1),
                           name="fingerprint_dense_2"),
    ], name="fingerprint_model")


def build_autoencoder(vector_size: int,
                      encoder_units: Sequence[int] = (32, 16),
                      decoder_units: Sequence[int] = (32,),
                      seed: int = 42) -> keras.Model:
    """Symmetric dense autoencoder; reconstruction error is the anomaly signal."""
    layers: list = [keras.Input(shape=(vector_size,), name="anomaly_input")]
    offset = 100

    for i, units in enumerate(encoder_units, start=1):
        layers.append(keras.layers.Dense(units, activation="relu",
                                         kernel_initializer=_initializer(seed + offset + i),
                                         name=f"encoder_{i}"))
    offset += len(encoder_units)

    for i, units in enumerate(decoder_units, start=1):
        layers.append(keras.layers.Dense(units, activation="relu",
                                         kernel_initializer=_initializer(seed + offset + i),
                                         name=f"decoder_{i}"))
    offset += len(decoder_units)

    layers.append(keras.layers.Dense(vector_size, activation="sigmoid",
                                     kernel_initializer=_initializer(seed + offset + 1),
                                     name="reconstruction"))

    return keras.Sequential(layers, name="anomaly_model")


def compile_networks(fingerprint: keras.Model, autoencoder: keras.Model,
                     learning_rate: float = 0.001) -> None:
    """Attach optimizers and losses so the networks can be fine-tuned offline."""
    fingerprint.compile(
        optimizer=keras.optimizers.Adam(learning_rate=learning_rate),
        loss="binary_crossentropy",
    )
    autoencoder.compile(
        optimizer=keras.optimizers.Adam(learning_rate=learning_rate),
        loss="mean_squared_error",
    )
