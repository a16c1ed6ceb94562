"""
linkrewards/protocol/statistics.py

Per-link latency statistics: RTT mean and percentiles, jitter, packet loss.

Rules:
- Percentiles use nearest rank on the ascending RTT sequence:
  index = ceil(p/100 * n) - 1, clamped to [0, n-1].
- Jitter is the mean absolute difference between consecutive received
  samples in timestamp order. Lost samples are skipped, not counted as
  zero-RTT deltas. The standard deviation and peak-to-peak spread of the
  signed deltas are kept as diagnostics next to the max and EWMA.
- Packet loss needs a sampling interval. Without one it is
  StatMarker.UNKNOWN, never a computed zero.
- Fewer than two received samples yields StatMarker.INSUFFICIENT_DATA for
  percentiles and jitter; zero samples also for mean, min and max.

Everything that can reach a hash is Decimal or int, computed in a fixed
decimal context so results are identical on every platform.

Usage:
    from linkrewards.protocol.statistics import StatisticsEngine

    engine = StatisticsEngine(sampling_interval_us=10_000_000)
    stats = engine.compute_all(sample_index)
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from decimal import Context, Decimal, ROUND_HALF_EVEN
from enum import Enum
from typing import Optional, Sequence, Tuple, Union

from .samples import CircuitKey, IndexedLink, SampleIndex

logger = logging.getLogger("linkrewards.protocol.statistics")


# ============================================================================
# CONSTANTS
# ============================================================================

DECIMAL_CONTEXT = Context(prec=34, rounding=ROUND_HALF_EVEN)

RTT_QUANTUM = Decimal("0.001")      # microseconds
LOSS_QUANTUM = Decimal("0.000001")  # fraction
EWMA_DIVISOR = 16                   # RFC 3550 jitter gain 1/16

PERCENTILES = (50, 95, 99)
MIN_SAMPLES_FOR_SPREAD = 2          # percentiles and jitter


class StatMarker(Enum):
    """Typed sentinel for statistics that cannot be computed."""
    INSUFFICIENT_DATA = "insufficient_data"
    UNKNOWN = "unknown"

    def __str__(self) -> str:
        return self.value


StatValue = Union[Decimal, StatMarker]
RankValue = Union[int, StatMarker]


def serialize_stat(value):
    """Wire form of a statistic: str for Decimal, marker name for markers."""
    if isinstance(value, StatMarker):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    return value


def parse_stat(value):
    """Inverse of serialize_stat for values read back from JSON."""
    if value in (StatMarker.INSUFFICIENT_DATA.value, StatMarker.UNKNOWN.value):
        return StatMarker(value)
    if isinstance(value, str):
        return Decimal(value)
    return value


def quantize_rtt(value: Decimal) -> Decimal:
    return value.quantize(RTT_QUANTUM, context=DECIMAL_CONTEXT)


def quantize_loss(value: Decimal) -> Decimal:
    return value.quantize(LOSS_QUANTUM, context=DECIMAL_CONTEXT)


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True)
class PrivateLinkStats:
    """Statistical fingerprint of one private link over one window."""
    origin_code: str
    target_code: str
    mean: StatValue
    median: RankValue
    p95: RankValue
    p99: RankValue
    jitter: StatValue
    packet_loss: StatValue
    sample_count: int
    min_rtt: RankValue = StatMarker.INSUFFICIENT_DATA
    max_rtt: RankValue = StatMarker.INSUFFICIENT_DATA
    jitter_max: RankValue = StatMarker.INSUFFICIENT_DATA
    jitter_ewma: StatValue = StatMarker.INSUFFICIENT_DATA
    jitter_stddev: StatValue = StatMarker.INSUFFICIENT_DATA
    jitter_peak_to_peak: RankValue = StatMarker.INSUFFICIENT_DATA
    lost_count: int = 0
    expected_count: Optional[Decimal] = None

    @property
    def key(self) -> CircuitKey:
        return CircuitKey(self.origin_code, self.target_code)

    def to_dict(self) -> dict:
        return {
            "origin_code": self.origin_code,
            "target_code": self.target_code,
            "mean": serialize_stat(self.mean),
            "median": serialize_stat(self.median),
            "p95": serialize_stat(self.p95),
            "p99": serialize_stat(self.p99),
            "jitter": serialize_stat(self.jitter),
            "packet_loss": serialize_stat(self.packet_loss),
            "sample_count": self.sample_count,
            "min_rtt": serialize_stat(self.min_rtt),
            "max_rtt": serialize_stat(self.max_rtt),
            "jitter_max": serialize_stat(self.jitter_max),
            "jitter_ewma": serialize_stat(self.jitter_ewma),
            "jitter_stddev": serialize_stat(self.jitter_stddev),
            "jitter_peak_to_peak": serialize_stat(self.jitter_peak_to_peak),
            "lost_count": self.lost_count,
            "expected_count": serialize_stat(self.expected_count),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PrivateLinkStats":
        values = dict(data)
        for name in (
            "mean", "median", "p95", "p99", "jitter", "packet_loss",
            "min_rtt", "max_rtt", "jitter_max", "jitter_ewma", "jitter_stddev",
            "jitter_peak_to_peak", "expected_count",
        ):
            if name in values:
                values[name] = parse_stat(values[name])
        return cls(**values)


# ============================================================================
# PRIMITIVES
# ============================================================================

def nearest_rank(sorted_values: Sequence[int], percentile: int) -> int:
    """
    Nearest-rank percentile of an ascending sequence.

    Args:
        sorted_values: Non-empty ascending values
        percentile: Integer percentile in [0, 100]

    Returns:
        The value at index ceil(p/100 * n) - 1, clamped to the sequence
    """
    n = len(sorted_values)
    # ceil(p * n / 100) in integer arithmetic
    index = -(-percentile * n // 100) - 1
    index = max(0, min(index, n - 1))
    return sorted_values[index]


@dataclass(frozen=True)
class JitterStats:
    """Delay variation over one link's received samples."""
    mean: StatValue
    max_delta: RankValue
    ewma: StatValue
    stddev: StatValue
    peak_to_peak: RankValue


def compute_jitter(rtts: Sequence[int]) -> JitterStats:
    """
    Packet-delay variation over consecutive received RTTs.

    The mean, max and EWMA are taken over absolute deltas. The standard
    deviation is the population deviation of the signed deltas, and
    peak-to-peak is the spread between the largest and smallest absolute
    delta.

    Args:
        rtts: Received RTTs in timestamp order

    Returns:
        JitterStats, all fields INSUFFICIENT_DATA below two samples
    """
    if len(rtts) < MIN_SAMPLES_FOR_SPREAD:
        marker = StatMarker.INSUFFICIENT_DATA
        return JitterStats(marker, marker, marker, marker, marker)

    ctx = DECIMAL_CONTEXT
    signed = [b - a for a, b in zip(rtts, rtts[1:])]
    deltas = [abs(d) for d in signed]
    count = Decimal(len(deltas))
    mean = ctx.divide(Decimal(sum(deltas)), count)

    ewma = Decimal(0)
    divisor = Decimal(EWMA_DIVISOR)
    for delta in deltas:
        step = ctx.divide(ctx.subtract(Decimal(delta), ewma), divisor)
        ewma = ctx.add(ewma, step)

    signed_mean = ctx.divide(Decimal(sum(signed)), count)
    squares = Decimal(0)
    for d in signed:
        diff = ctx.subtract(Decimal(d), signed_mean)
        squares = ctx.add(squares, ctx.multiply(diff, diff))
    variance = ctx.divide(squares, count)

    return JitterStats(
        mean=quantize_rtt(mean),
        max_delta=max(deltas),
        ewma=quantize_rtt(ewma),
        stddev=quantize_rtt(ctx.sqrt(variance)),
        peak_to_peak=max(deltas) - min(deltas),
    )


def compute_packet_loss(
    received: int,
    window_us: int,
    sampling_interval_us: Optional[int],
) -> Tuple[StatValue, Optional[Decimal]]:
    """
    Fraction of expected samples not received.

    Args:
        received: Received (non-lost) sample count
        window_us: Window length in microseconds
        sampling_interval_us: Declared probe cadence, or None

    Returns:
        (loss in [0, 1] or StatMarker.UNKNOWN, expected sample count or None)
    """
    if not sampling_interval_us:
        return StatMarker.UNKNOWN, None

    expected = DECIMAL_CONTEXT.divide(Decimal(window_us), Decimal(sampling_interval_us))
    missing = DECIMAL_CONTEXT.subtract(expected, Decimal(received))
    loss = DECIMAL_CONTEXT.divide(missing, expected)
    loss = min(max(loss, Decimal(0)), Decimal(1))
    return quantize_loss(loss), quantize_rtt(expected)


# ============================================================================
# STATISTICS ENGINE
# ============================================================================

class StatisticsEngine:
    """
    Computes PrivateLinkStats for every link of a SampleIndex.

    Links are independent, so they are fanned out over a thread pool and
    merged back in circuit-key order; arrival order never reaches the
    output.
    """

    def __init__(self, sampling_interval_us: Optional[int] = None, max_workers: int = 1):
        """
        Args:
            sampling_interval_us: Default probe cadence for links that do
                not declare their own
            max_workers: Thread pool size (1 computes inline)
        """
        self.sampling_interval_us = sampling_interval_us
        self.max_workers = max_workers

    def compute(self, link: IndexedLink, window_us: int) -> PrivateLinkStats:
        """Compute the fingerprint of one link."""
        rtts = [s.rtt_us for s in link.samples if s.rtt_us is not None]
        lost = len(link.samples) - len(rtts)
        n = len(rtts)
        interval = link.sampling_interval_us or self.sampling_interval_us
        loss, expected = compute_packet_loss(n, window_us, interval)
        jitter = compute_jitter(rtts)

        if n == 0:
            marker = StatMarker.INSUFFICIENT_DATA
            return PrivateLinkStats(
                origin_code=link.key.origin_code,
                target_code=link.key.target_code,
                mean=marker, median=marker, p95=marker, p99=marker,
                jitter=jitter.mean,
                packet_loss=loss,
                sample_count=0,
                lost_count=lost,
                expected_count=expected,
            )

        ordered = sorted(rtts)
        mean = quantize_rtt(DECIMAL_CONTEXT.divide(Decimal(sum(rtts)), Decimal(n)))
        if n >= MIN_SAMPLES_FOR_SPREAD:
            median, p95, p99 = (nearest_rank(ordered, p) for p in PERCENTILES)
        else:
            median = p95 = p99 = StatMarker.INSUFFICIENT_DATA

        return PrivateLinkStats(
            origin_code=link.key.origin_code,
            target_code=link.key.target_code,
            mean=mean,
            median=median,
            p95=p95,
            p99=p99,
            jitter=jitter.mean,
            packet_loss=loss,
            sample_count=n,
            min_rtt=ordered[0],
            max_rtt=ordered[-1],
            jitter_max=jitter.max_delta,
            jitter_ewma=jitter.ewma,
            jitter_stddev=jitter.stddev,
            jitter_peak_to_peak=jitter.peak_to_peak,
            lost_count=lost,
            expected_count=expected,
        )

    def compute_all(self, index: SampleIndex) -> Tuple[PrivateLinkStats, ...]:
        """
        Compute stats for every link in the index.

        Returns:
            Stats sorted by circuit key
        """
        window_us = index.window_us
        links = list(index.links)

        if self.max_workers > 1 and len(links) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                results = list(pool.map(lambda link: self.compute(link, window_us), links))
        else:
            results = [self.compute(link, window_us) for link in links]

        results.sort(key=lambda s: s.key)
        insufficient = sum(1 for s in results if s.sample_count < MIN_SAMPLES_FOR_SPREAD)
        logger.info(
            f"Computed statistics for {len(results)} links "
            f"({insufficient} with insufficient data)"
        )
        return tuple(results)
