"""
linkrewards/protocol/aggregation.py

Rolls private (device-pair) link statistics up into public
(location-pair) links.

Public links are undirected: a private link A->B and B->A both land in
the group keyed by the alphabetically ordered location pair. Each policy
is written as accumulate / merge / finalize with a merge that is
commutative and associative, so the result does not depend on the order
of the input list.

Policies:
- weighted (default): sample-count weighted mean of mean/median/p95/p99,
  worst-case jitter, expected-count weighted packet loss
- worst_case: maximum of every field

Usage:
    from linkrewards.protocol.aggregation import LinkAggregator

    aggregator = LinkAggregator(policy="weighted")
    public = aggregator.aggregate(private_stats, topology.location_of)
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from decimal import Decimal
from functools import reduce
from typing import Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple

from ..errors import AggregationMismatchError, ConfigError, InputError
from .statistics import (
    DECIMAL_CONTEXT,
    PrivateLinkStats,
    StatMarker,
    StatValue,
    parse_stat,
    quantize_loss,
    quantize_rtt,
    serialize_stat,
)

logger = logging.getLogger("linkrewards.protocol.aggregation")

LocationPair = Tuple[str, str]


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True)
class PublicLinkStats:
    """Aggregated statistics for one unordered location pair."""
    origin_location: str
    target_location: str
    mean: StatValue
    median: StatValue
    p95: StatValue
    p99: StatValue
    jitter: StatValue
    packet_loss: StatValue
    sample_count: int
    contributing_device_count: int
    contributing_link_count: int = 0
    operators: Tuple[str, ...] = ()

    @property
    def key(self) -> LocationPair:
        return (self.origin_location, self.target_location)

    def to_dict(self) -> dict:
        return {
            "origin_location": self.origin_location,
            "target_location": self.target_location,
            "mean": serialize_stat(self.mean),
            "median": serialize_stat(self.median),
            "p95": serialize_stat(self.p95),
            "p99": serialize_stat(self.p99),
            "jitter": serialize_stat(self.jitter),
            "packet_loss": serialize_stat(self.packet_loss),
            "sample_count": self.sample_count,
            "contributing_device_count": self.contributing_device_count,
            "contributing_link_count": self.contributing_link_count,
            "operators": list(self.operators),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PublicLinkStats":
        values = dict(data)
        for name in ("mean", "median", "p95", "p99", "jitter", "packet_loss"):
            values[name] = parse_stat(values[name])
        values["operators"] = tuple(values.get("operators", ()))
        return cls(**values)


@dataclass(frozen=True)
class Membership:
    """Who contributed to a group. Merged by set union."""
    devices: FrozenSet[str] = frozenset()
    operators: FrozenSet[str] = frozenset()
    link_count: int = 0
    sample_count: int = 0

    def merge(self, other: "Membership") -> "Membership":
        return Membership(
            devices=self.devices | other.devices,
            operators=self.operators | other.operators,
            link_count=self.link_count + other.link_count,
            sample_count=self.sample_count + other.sample_count,
        )


def _max_known(a: Optional[Decimal], b: Optional[Decimal]) -> Optional[Decimal]:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


def _known(value) -> Optional[Decimal]:
    return None if isinstance(value, StatMarker) else Decimal(value)


# ============================================================================
# AGGREGATION POLICIES
# ============================================================================

@dataclass(frozen=True)
class WeightedPartial:
    """Running sums for the weighted policy."""
    mean_sum: Decimal = Decimal(0)
    mean_weight: int = 0
    median_sum: Decimal = Decimal(0)
    p95_sum: Decimal = Decimal(0)
    p99_sum: Decimal = Decimal(0)
    rank_weight: int = 0
    jitter: Optional[Decimal] = None
    loss_sum: Decimal = Decimal(0)
    loss_weight: Decimal = Decimal(0)
    loss_known: bool = False


class WeightedAggregationPolicy:
    """Sample-weighted means, worst-case jitter, expected-weighted loss."""

    name = "weighted"

    def accumulate(self, stats: PrivateLinkStats) -> WeightedPartial:
        n = Decimal(stats.sample_count)
        mul = DECIMAL_CONTEXT.multiply
        partial = {}

        mean = _known(stats.mean)
        if mean is not None:
            partial["mean_sum"] = mul(mean, n)
            partial["mean_weight"] = stats.sample_count

        if not isinstance(stats.median, StatMarker):
            partial["median_sum"] = mul(Decimal(stats.median), n)
            partial["p95_sum"] = mul(Decimal(stats.p95), n)
            partial["p99_sum"] = mul(Decimal(stats.p99), n)
            partial["rank_weight"] = stats.sample_count

        partial["jitter"] = _known(stats.jitter)

        loss = _known(stats.packet_loss)
        if loss is not None:
            partial["loss_known"] = True
            if stats.expected_count:
                partial["loss_sum"] = mul(loss, stats.expected_count)
                partial["loss_weight"] = stats.expected_count

        return WeightedPartial(**partial)

    def merge(self, a: WeightedPartial, b: WeightedPartial) -> WeightedPartial:
        add = DECIMAL_CONTEXT.add
        return WeightedPartial(
            mean_sum=add(a.mean_sum, b.mean_sum),
            mean_weight=a.mean_weight + b.mean_weight,
            median_sum=add(a.median_sum, b.median_sum),
            p95_sum=add(a.p95_sum, b.p95_sum),
            p99_sum=add(a.p99_sum, b.p99_sum),
            rank_weight=a.rank_weight + b.rank_weight,
            jitter=_max_known(a.jitter, b.jitter),
            loss_sum=add(a.loss_sum, b.loss_sum),
            loss_weight=add(a.loss_weight, b.loss_weight),
            loss_known=a.loss_known or b.loss_known,
        )

    def finalize(self, partial: WeightedPartial) -> Dict[str, StatValue]:
        insufficient = StatMarker.INSUFFICIENT_DATA

        def weighted(total: Decimal, weight: int) -> StatValue:
            if weight == 0:
                return insufficient
            return quantize_rtt(DECIMAL_CONTEXT.divide(total, Decimal(weight)))

        if not partial.loss_known:
            loss = StatMarker.UNKNOWN
        elif partial.loss_weight == 0:
            loss = Decimal(0)
        else:
            loss = quantize_loss(DECIMAL_CONTEXT.divide(partial.loss_sum, partial.loss_weight))

        return {
            "mean": weighted(partial.mean_sum, partial.mean_weight),
            "median": weighted(partial.median_sum, partial.rank_weight),
            "p95": weighted(partial.p95_sum, partial.rank_weight),
            "p99": weighted(partial.p99_sum, partial.rank_weight),
            "jitter": partial.jitter if partial.jitter is not None else insufficient,
            "packet_loss": loss,
        }


@dataclass(frozen=True)
class WorstCasePartial:
    """Running maxima for the worst-case policy."""
    mean: Optional[Decimal] = None
    median: Optional[Decimal] = None
    p95: Optional[Decimal] = None
    p99: Optional[Decimal] = None
    jitter: Optional[Decimal] = None
    packet_loss: Optional[Decimal] = None


class WorstCaseAggregationPolicy:
    """Every field is the maximum over contributing links."""

    name = "worst_case"
    FIELDS = ("mean", "median", "p95", "p99", "jitter", "packet_loss")

    def accumulate(self, stats: PrivateLinkStats) -> WorstCasePartial:
        return WorstCasePartial(**{name: _known(getattr(stats, name)) for name in self.FIELDS})

    def merge(self, a: WorstCasePartial, b: WorstCasePartial) -> WorstCasePartial:
        return WorstCasePartial(**{
            name: _max_known(getattr(a, name), getattr(b, name)) for name in self.FIELDS
        })

    def finalize(self, partial: WorstCasePartial) -> Dict[str, StatValue]:
        result = {}
        for name in self.FIELDS:
            value = getattr(partial, name)
            if value is None:
                result[name] = StatMarker.UNKNOWN if name == "packet_loss" else StatMarker.INSUFFICIENT_DATA
            else:
                result[name] = value
        return result


POLICIES = {
    WeightedAggregationPolicy.name: WeightedAggregationPolicy,
    WorstCaseAggregationPolicy.name: WorstCaseAggregationPolicy,
}


def get_policy(name: str):
    """Look up an aggregation policy by name."""
    try:
        return POLICIES[name]()
    except KeyError:
        raise ConfigError(f"Invalid aggregation policy: {name}. Valid options: {', '.join(POLICIES)}")


# ============================================================================
# LINK AGGREGATOR
# ============================================================================

class LinkAggregator:
    """
    Groups private links by location pair and reduces each group with a
    policy.
    """

    def __init__(self, policy="weighted", max_workers: int = 1):
        self.policy = get_policy(policy) if isinstance(policy, str) else policy
        self.max_workers = max_workers

    def aggregate(
        self,
        private: Sequence[PrivateLinkStats],
        location_of: Callable[[str], str],
        operator_of: Optional[Callable[[str], str]] = None,
    ) -> Tuple[PublicLinkStats, ...]:
        """
        Aggregate private links into public links.

        Args:
            private: Private link stats, in any order
            location_of: Device code -> location
            operator_of: Device code -> operator, for the operators field

        Returns:
            Public links sorted by (origin_location, target_location)

        Raises:
            AggregationMismatchError: If a device code has no location
        """
        groups: Dict[LocationPair, List[PrivateLinkStats]] = {}
        for stats in private:
            origin = self._resolve(location_of, stats.origin_code)
            target = self._resolve(location_of, stats.target_code)
            pair = (origin, target) if origin <= target else (target, origin)
            groups.setdefault(pair, []).append(stats)

        def reduce_group(item: Tuple[LocationPair, List[PrivateLinkStats]]) -> PublicLinkStats:
            pair, members = item
            return self._reduce(pair, members, operator_of)

        items = sorted(groups.items())
        if self.max_workers > 1 and len(items) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                public = list(pool.map(reduce_group, items))
        else:
            public = [reduce_group(item) for item in items]

        public.sort(key=lambda link: link.key)
        logger.info(
            f"Aggregated {len(private)} private links into {len(public)} public links "
            f"(policy={self.policy.name})"
        )
        return tuple(public)

    @staticmethod
    def _resolve(location_of: Callable[[str], str], code: str) -> str:
        try:
            location = location_of(code)
        except (KeyError, InputError):
            location = None
        if not location:
            raise AggregationMismatchError(f"Device {code} has no location", [code])
        return location

    def _reduce(
        self,
        pair: LocationPair,
        members: List[PrivateLinkStats],
        operator_of: Optional[Callable[[str], str]],
    ) -> PublicLinkStats:
        members = sorted(members, key=lambda s: s.key)
        partial = reduce(self.policy.merge, (self.policy.accumulate(s) for s in members))
        membership = reduce(
            Membership.merge,
            (
                Membership(
                    devices=frozenset((s.origin_code, s.target_code)),
                    operators=frozenset(
                        operator_of(code) for code in (s.origin_code, s.target_code)
                    ) if operator_of else frozenset(),
                    link_count=1,
                    sample_count=s.sample_count,
                )
                for s in members
            ),
        )
        fields = self.policy.finalize(partial)

        if len(members) == 1:
            logger.debug(f"Public link {pair[0]}-{pair[1]} has a single contributing link")

        return PublicLinkStats(
            origin_location=pair[0],
            target_location=pair[1],
            sample_count=membership.sample_count,
            contributing_device_count=len(membership.devices),
            contributing_link_count=membership.link_count,
            operators=tuple(sorted(membership.operators)),
            **fields,
        )
