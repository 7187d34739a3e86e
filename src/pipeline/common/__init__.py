"""Common infrastructure shared by pipeline domains.

- types: Envelope, EnvelopeHeaders and the MessageBroker protocol
- transport: RabbitMQ broker (aio-pika)
- dummy: in-memory broker for tests and local runs
- health, metrics, signals: worker process plumbing

Import from submodules directly so that aio-pika and aiohttp are only
loaded by the code paths that need them.
"""

__all__: list[str] = []
