"""
linkrewards/integration/

Glue around the core: ledger reads with retries, run orchestration and
artifact publication.
"""

from .ledger import DataSource, FetchedData, LedgerClient, SnapshotFileSource, StaticSource
from .orchestrator import RewardOrchestrator, RunResult, PipelineFailure, PipelineStage
from .publisher import ArtifactPublisher

__all__ = [
    "DataSource",
    "FetchedData",
    "LedgerClient",
    "SnapshotFileSource",
    "StaticSource",
    "RewardOrchestrator",
    "RunResult",
    "PipelineFailure",
    "PipelineStage",
    "ArtifactPublisher",
]
