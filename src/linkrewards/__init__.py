"""
linkrewards - Verifiable link-performance rewards

Turns per-link latency samples read from a ledger into a canonical
allocation input for a fair-value solver, and binds the solver's reward
set to its inputs with content hashes and a Merkle commitment.

Pipeline:
- SampleStore: window filtering and indexing of raw samples
- StatisticsEngine: RTT percentiles, jitter and packet loss per link
- LinkAggregator: device links rolled up into location links
- DemandBuilder: location-pair traffic from stake weights
- AllocationInputBuilder: canonical solver request
- VerificationCommitter: packet, Merkle root and inclusion proofs

Usage:
    from linkrewards import RewardConfig, RewardOrchestrator
    from linkrewards.integration.ledger import SnapshotFileSource
    from linkrewards.protocol.allocation import StaticOracle

    orchestrator = RewardOrchestrator(RewardConfig(), StaticOracle(rewards))
    result = orchestrator.run(SnapshotFileSource("snapshot.json"),
                              after_us, before_us, reward_pool=1_000_000)
    print(result.packet.merkle_root)
"""

from .config import SOFTWARE_VERSION

__version__ = SOFTWARE_VERSION

from .config import RewardConfig, CostParameters, SolverParameters
from .errors import (
    LinkRewardsError,
    ConfigError,
    InputError,
    EmptyWindowDataError,
    AggregationMismatchError,
    OracleError,
    CommitmentError,
    LedgerError,
)
from .integration.orchestrator import RewardOrchestrator, RunResult, PipelineFailure

__all__ = [
    "__version__",
    "RewardConfig",
    "CostParameters",
    "SolverParameters",
    "LinkRewardsError",
    "ConfigError",
    "InputError",
    "EmptyWindowDataError",
    "AggregationMismatchError",
    "OracleError",
    "CommitmentError",
    "LedgerError",
    "RewardOrchestrator",
    "RunResult",
    "PipelineFailure",
]
