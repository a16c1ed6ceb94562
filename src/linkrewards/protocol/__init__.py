"""
linkrewards/protocol/

Pipeline stages from raw samples to the canonical allocation input.
"""

from .samples import (
    LatencySample,
    LinkSampleSet,
    CircuitKey,
    DeviceInfo,
    LinkInfo,
    Topology,
    SampleStore,
    SampleIndex,
    derive_device_codes,
)
from .statistics import StatisticsEngine, PrivateLinkStats, StatMarker, nearest_rank
from .aggregation import LinkAggregator, PublicLinkStats
from .demand import DemandBuilder, Demand
from .allocation import (
    AllocationInputBuilder,
    AllocationInput,
    AllocationLink,
    AllocationOracle,
    RewardDistribution,
    StaticOracle,
    CommandOracle,
)

__all__ = [
    "LatencySample",
    "LinkSampleSet",
    "CircuitKey",
    "DeviceInfo",
    "LinkInfo",
    "Topology",
    "SampleStore",
    "SampleIndex",
    "derive_device_codes",
    "StatisticsEngine",
    "PrivateLinkStats",
    "StatMarker",
    "nearest_rank",
    "LinkAggregator",
    "PublicLinkStats",
    "DemandBuilder",
    "Demand",
    "AllocationInputBuilder",
    "AllocationInput",
    "AllocationLink",
    "AllocationOracle",
    "RewardDistribution",
    "StaticOracle",
    "CommandOracle",
]
