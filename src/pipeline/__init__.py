"""
Pipeline: challenge ingestion from RabbitMQ into the challenge store.

Subpackages:
    challenges - Challenge schemas, store, batching, routing and the ingestion worker
    common     - Shared infrastructure (broker transport, health, metrics, signals)

Architecture:
    challenges.ingest -> ChallengeIngestionWorker -> challenge store
                                 | (on failure)
                                 +-> challenges.ingest        (retry, x-retry-count + 1)
                                 +-> challenges.ingest.dlq    (permanent or exhausted)

Dependencies:
    - core.*: logging, errors and utilities
    - aio-pika: RabbitMQ client
    - pydantic: message schema validation
    - psycopg / psycopg_pool: PostgreSQL store
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
