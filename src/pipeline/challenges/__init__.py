"""Challenge ingestion domain.

Import from submodules directly:
    from pipeline.challenges.schemas import decode, encode
    from pipeline.challenges.workers.ingestion_worker import ChallengeIngestionWorker
"""

__all__: list[str] = []
