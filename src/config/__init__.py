"""Configuration loading for the challenge ingestion pipeline.

Configuration is loaded from a single YAML file (config/config.yaml by
default) with ${VAR} / ${VAR:-default} environment expansion, then validated
into typed dataclasses.

Usage:
    >>> from config import load_config
    >>> config = load_config()
    >>> config.rabbitmq.queue
    'challenges.ingest'
    >>> config.ingestion.batch_size
    50

Settings are resolved in the following priority (highest to lowest):

1. ``overrides`` passed to load_config()
2. Environment variables referenced from the YAML file
3. YAML values
4. Dataclass defaults
"""

from config.config import (
    IngestionConfig,
    PipelineConfig,
    RabbitMQConfig,
    StoreConfig,
    config_from_dict,
    get_config,
    load_config,
    reset_config,
    set_config,
)

__all__ = [
    "load_config",
    "get_config",
    "set_config",
    "reset_config",
    "config_from_dict",
    "PipelineConfig",
    "RabbitMQConfig",
    "IngestionConfig",
    "StoreConfig",
]
