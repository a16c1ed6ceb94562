"""
Tests for linkrewards/protocol/aggregation.py

Tests grouping by location pair, the combinators, and order independence.
"""

import random

import pytest
from decimal import Decimal

from linkrewards.errors import AggregationMismatchError, ConfigError
from linkrewards.protocol.aggregation import (
    LinkAggregator,
    PublicLinkStats,
    WeightedAggregationPolicy,
    WorstCaseAggregationPolicy,
    get_policy,
)
from linkrewards.protocol.statistics import PrivateLinkStats, StatMarker


# ============================================================================
# TEST DATA
# ============================================================================

LOCATIONS = {
    "CHI01": "chi", "CHI02": "chi", "CHI03": "chi",
    "NYC01": "nyc", "NYC02": "nyc",
    "AMS01": "ams",
}

OPERATORS = {
    "CHI01": "op-a", "CHI02": "op-b", "CHI03": "op-c",
    "NYC01": "op-a", "NYC02": "op-b",
    "AMS01": "op-c",
}


def create_stats(
    origin: str,
    target: str,
    mean="100",
    median=90,
    p95=150,
    p99=200,
    jitter="5",
    loss="0.1",
    count=10,
    expected="11",
) -> PrivateLinkStats:
    """Create private link stats with sensible defaults."""
    def dec(value):
        return value if isinstance(value, StatMarker) else Decimal(value)

    return PrivateLinkStats(
        origin_code=origin,
        target_code=target,
        mean=dec(mean),
        median=median,
        p95=p95,
        p99=p99,
        jitter=dec(jitter),
        packet_loss=dec(loss),
        sample_count=count,
        expected_count=Decimal(expected) if expected is not None else None,
    )


def random_stats(rng: random.Random, origin: str, target: str) -> PrivateLinkStats:
    median = rng.randint(0, 10_000)
    p95 = median + rng.randint(0, 5_000)
    p99 = p95 + rng.randint(0, 5_000)
    return create_stats(
        origin, target,
        mean=f"{rng.randint(0, 20_000)}.{rng.randint(0, 999):03d}",
        median=median, p95=p95, p99=p99,
        jitter=f"{rng.randint(0, 900)}.{rng.randint(0, 999):03d}",
        loss=f"0.{rng.randint(0, 999999):06d}",
        count=rng.randint(2, 5_000),
        expected=str(rng.randint(5_000, 10_000)),
    )


@pytest.fixture
def aggregator():
    return LinkAggregator()


# ============================================================================
# GROUPING TESTS
# ============================================================================

class TestGrouping:
    """Tests for grouping private links into public links."""

    def test_undirected_location_pair(self, aggregator):
        public = aggregator.aggregate(
            [create_stats("NYC01", "CHI01"), create_stats("CHI02", "NYC02")],
            LOCATIONS.get,
        )
        assert len(public) == 1
        assert public[0].key == ("chi", "nyc")
        assert public[0].contributing_link_count == 2
        assert public[0].contributing_device_count == 4

    def test_intra_location_link(self, aggregator):
        public = aggregator.aggregate([create_stats("CHI01", "CHI02")], LOCATIONS.get)
        assert public[0].key == ("chi", "chi")

    def test_output_sorted(self, aggregator):
        public = aggregator.aggregate([
            create_stats("NYC01", "NYC02"),
            create_stats("AMS01", "NYC01"),
            create_stats("CHI01", "AMS01"),
        ], LOCATIONS.get)
        assert [link.key for link in public] == [("ams", "chi"), ("ams", "nyc"), ("nyc", "nyc")]

    def test_operators_collected(self, aggregator):
        public = aggregator.aggregate(
            [create_stats("CHI01", "NYC02"), create_stats("CHI03", "NYC01")],
            LOCATIONS.get,
            OPERATORS.get,
        )
        assert public[0].operators == ("op-a", "op-b", "op-c")

    def test_single_contributor_degrades_gracefully(self, aggregator):
        stats = create_stats("CHI01", "NYC01")
        public = aggregator.aggregate([stats], LOCATIONS.get)[0]
        assert public.mean == stats.mean
        assert public.median == Decimal(stats.median)
        assert public.packet_loss == stats.packet_loss
        assert public.contributing_link_count == 1

    def test_unknown_location_is_mismatch(self, aggregator):
        with pytest.raises(AggregationMismatchError):
            aggregator.aggregate([create_stats("CHI01", "LAX01")], LOCATIONS.get)

    def test_empty_input(self, aggregator):
        assert aggregator.aggregate([], LOCATIONS.get) == ()


# ============================================================================
# COMBINATOR TESTS
# ============================================================================

class TestWeightedPolicy:
    """Tests for the default weighted combinator."""

    def test_sample_weighted_mean(self, aggregator):
        public = aggregator.aggregate([
            create_stats("CHI01", "NYC01", mean="100", count=1, median=100, p95=100, p99=100),
            create_stats("CHI02", "NYC02", mean="400", count=3, median=400, p95=400, p99=400),
        ], LOCATIONS.get)[0]
        assert public.mean == Decimal("325")
        assert public.median == Decimal("325")
        assert public.sample_count == 4

    def test_worst_case_jitter(self, aggregator):
        public = aggregator.aggregate([
            create_stats("CHI01", "NYC01", jitter="3"),
            create_stats("CHI02", "NYC02", jitter="9.5"),
        ], LOCATIONS.get)[0]
        assert public.jitter == Decimal("9.5")

    def test_expected_weighted_loss(self, aggregator):
        public = aggregator.aggregate([
            create_stats("CHI01", "NYC01", loss="0", expected="100"),
            create_stats("CHI02", "NYC02", loss="0.5", expected="300"),
        ], LOCATIONS.get)[0]
        assert public.packet_loss == Decimal("0.375")

    def test_unknown_loss_stays_unknown(self, aggregator):
        public = aggregator.aggregate([
            create_stats("CHI01", "NYC01", loss=StatMarker.UNKNOWN, expected=None),
        ], LOCATIONS.get)[0]
        assert public.packet_loss is StatMarker.UNKNOWN

    def test_insufficient_members_ignored(self, aggregator):
        public = aggregator.aggregate([
            create_stats(
                "CHI01", "NYC01", mean=StatMarker.INSUFFICIENT_DATA,
                median=StatMarker.INSUFFICIENT_DATA, p95=StatMarker.INSUFFICIENT_DATA,
                p99=StatMarker.INSUFFICIENT_DATA, jitter=StatMarker.INSUFFICIENT_DATA, count=0,
            ),
            create_stats("CHI02", "NYC02", mean="50", count=5),
        ], LOCATIONS.get)[0]
        assert public.mean == Decimal("50")
        assert public.jitter == Decimal("5")

    def test_all_insufficient(self, aggregator):
        marker = StatMarker.INSUFFICIENT_DATA
        public = aggregator.aggregate([
            create_stats("CHI01", "NYC01", mean=marker, median=marker, p95=marker,
                         p99=marker, jitter=marker, count=0),
        ], LOCATIONS.get)[0]
        assert public.mean is marker
        assert public.p99 is marker
        assert public.jitter is marker

    def test_merge_is_associative(self):
        policy = WeightedAggregationPolicy()
        rng = random.Random(5)
        a, b, c = (policy.accumulate(random_stats(rng, "CHI01", "NYC01")) for _ in range(3))
        assert policy.merge(policy.merge(a, b), c) == policy.merge(a, policy.merge(b, c))
        assert policy.merge(a, b) == policy.merge(b, a)


class TestWorstCasePolicy:
    """Tests for the worst-case combinator."""

    def test_max_of_every_field(self):
        aggregator = LinkAggregator(policy="worst_case")
        public = aggregator.aggregate([
            create_stats("CHI01", "NYC01", mean="100", p99=900, loss="0.2"),
            create_stats("CHI02", "NYC02", mean="300", p99=250, loss="0.1"),
        ], LOCATIONS.get)[0]
        assert public.mean == Decimal("300")
        assert public.p99 == Decimal("900")
        assert public.packet_loss == Decimal("0.2")

    def test_policy_lookup(self):
        assert isinstance(get_policy("weighted"), WeightedAggregationPolicy)
        assert isinstance(get_policy("worst_case"), WorstCaseAggregationPolicy)
        with pytest.raises(ConfigError):
            get_policy("median_of_medians")


# ============================================================================
# ORDER INDEPENDENCE TESTS
# ============================================================================

class TestPermutationInvariance:
    """aggregate() must not depend on input order."""

    @pytest.mark.parametrize("policy", ["weighted", "worst_case"])
    @pytest.mark.parametrize("seed", [0, 1, 2, 3, 4])
    def test_random_permutations(self, policy, seed):
        rng = random.Random(seed)
        codes = sorted(LOCATIONS)
        private = [
            random_stats(rng, origin, target)
            for origin in codes for target in codes if origin != target
        ]
        aggregator = LinkAggregator(policy=policy, max_workers=4)
        expected = aggregator.aggregate(private, LOCATIONS.get, OPERATORS.get)

        for _ in range(10):
            shuffled = list(private)
            rng.shuffle(shuffled)
            assert aggregator.aggregate(shuffled, LOCATIONS.get, OPERATORS.get) == expected

    def test_percentile_order_preserved(self):
        rng = random.Random(11)
        codes = sorted(LOCATIONS)
        private = [random_stats(rng, o, t) for o in codes for t in codes if o != t]
        for link in LinkAggregator().aggregate(private, LOCATIONS.get):
            assert link.median <= link.p95 <= link.p99

    def test_public_dict_round_trip(self, aggregator):
        public = aggregator.aggregate([create_stats("CHI01", "NYC01")], LOCATIONS.get, OPERATORS.get)[0]
        assert PublicLinkStats.from_dict(public.to_dict()) == public
