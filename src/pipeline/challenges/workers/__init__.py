"""Challenge worker processes.

Import workers directly from submodules to avoid loading broker and store
dependencies at package import time:
    from pipeline.challenges.workers.ingestion_worker import ChallengeIngestionWorker
"""

__all__: list[str] = []
