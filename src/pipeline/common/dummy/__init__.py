"""In-memory stand-ins for running the pipeline without external services."""

from pipeline.common.dummy.broker import InMemoryBroker, PublishedMessage

__all__ = ["InMemoryBroker", "PublishedMessage"]
