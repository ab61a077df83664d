#!/usr/bin/env python3
"""
Command line entry points for the fingerprinting service.
"""

import json

import click
import structlog

from fingerprinting.core.ml.registry import AnomalyModel, FingerprintModel, ModelRegistry
from fingerprinting.core.models.config import FingerprintConfig
from fingerprinting.core.models.visits import VisitObservation
from fingerprinting.core.processors.features import FeatureExtractor, detect_browser
from fingerprinting.core.utils.log_config import configure_logging

logger = structlog.get_logger(__name__)


def _load_config(verbose: bool) -> FingerprintConfig:
    config = FingerprintConfig.from_env()
    if verbose:
        config.logging.level = "DEBUG"
        config.logging.format = "text"
    configure_logging(config.logging)
    return config


@click.group()
def main():
    """Cookie-free visitor fingerprinting."""


@main.command()
@click.option('--host', default=None, help='Bind host (defaults to API_HOST)')
@click.option('--port', default=None, type=int, help='Bind port (defaults to API_PORT)')
@click.option('--verbose', '-v', is_flag=True, help='Verbose logging')
def serve(host, port, verbose):
    """Run the HTTP API."""
    import uvicorn
    from fingerprinting.service.app import create_app

    config = _load_config(verbose)
    app = create_app(config)
    uvicorn.run(app, host=host or config.api.host, port=port or config.api.port)


@main.command('init-weights')
@click.option('--weights-dir', default=None, help='Output directory (defaults to MODEL_WEIGHTS_DIR)')
@click.option('--seed', default=None, type=int, help='Initialization seed (defaults to MODEL_SEED)')
@click.option('--verbose', '-v', is_flag=True, help='Verbose logging')
def init_weights(weights_dir, seed, verbose):
    """Build seeded networks and save a weight snapshot."""
    config = _load_config(verbose)
    target = weights_dir or config.model.weights_dir
    if not target:
        raise click.UsageError("Pass --weights-dir or set MODEL_WEIGHTS_DIR")

    if seed is not None:
        config.model.seed = seed
    # Build fresh weights instead of loading an existing snapshot
    config.model.weights_dir = None

    registry = ModelRegistry(config.model, config.features.vector_size)
    paths = registry.save_weights(target)
    click.echo(json.dumps({"seed": config.model.seed, "vector_size": registry.vector_size, **paths}, indent=2))


@main.command()
@click.option('--user-agent', default=None, help='User-agent string')
@click.option('--screen-resolution', default=None, help='Screen size as WxH')
@click.option('--browser', default=None, help='Browser family (detected from the user agent when omitted)')
@click.option('--timestamp', default=None, type=int, help='Epoch milliseconds')
@click.option('--verbose', '-v', is_flag=True, help='Verbose logging')
def fingerprint(user_agent, screen_resolution, browser, timestamp, verbose):
    """Print the identifier and anomaly score for one observation."""
    config = _load_config(verbose)
    observation = VisitObservation.from_raw({
        "user_agent": user_agent,
        "screen_resolution": screen_resolution,
        "browser": browser or detect_browser(user_agent).value,
        "timestamp": timestamp,
    })

    registry = ModelRegistry(config.model, config.features.vector_size)
    vector = FeatureExtractor(config.features).extract(observation)
    identifier = FingerprintModel(registry).predict(vector)
    anomaly = AnomalyModel(registry).score(vector)

    click.echo(json.dumps({
        "visitor_id": identifier,
        "anomaly": anomaly.model_dump(),
    }, indent=2))


if __name__ == '__main__':
    main()
