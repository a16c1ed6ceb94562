"""
linkrewards/protocol/allocation.py

Canonical allocation input for the external fair-value solver, and the
oracle boundary that turns it into a reward distribution.

AllocationInputBuilder is pure assembly: it derives a cost and uptime per
link, sorts every list by endpoint codes, and checks that each demand
endpoint exists in the link set. Two runs over the same data produce
byte-identical canonical input whatever the upstream iteration order.

Oracles:
    AllocationOracle (abstract)
    ├── StaticOracle   (fixed mapping, replays and tests)
    └── CommandOracle  (external solver process, JSON over stdin/stdout)

Usage:
    from linkrewards.protocol.allocation import AllocationInputBuilder, CommandOracle

    builder = AllocationInputBuilder(topology, config)
    allocation_input = builder.build(private, public, demands, 1_000_000, Decimal("10"))
    rewards = CommandOracle(["shapley-solver", "--json"]).solve(allocation_input)
"""

import json
import logging
import shlex
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_FLOOR
from typing import Any, Mapping, Optional, Sequence, Tuple, Union

from ..blockchain.canonical import canonical_json
from ..config import (
    DEFAULT_BANDWIDTH_GBPS,
    JITTER_CEILING_MS,
    LATENCY_CEILING_MS,
    PENALTY_JITTER_US,
    PENALTY_RTT_US,
    CostParameters,
    SolverParameters,
)
from ..errors import AggregationMismatchError, InputError, OracleError
from .aggregation import PublicLinkStats
from .demand import Demand
from .samples import Topology
from .statistics import DECIMAL_CONTEXT, PrivateLinkStats, StatMarker

logger = logging.getLogger("linkrewards.protocol.allocation")


# ============================================================================
# CONSTANTS
# ============================================================================

LINK_TYPE_PRIVATE = "private"
LINK_TYPE_PUBLIC = "public"

PUBLIC_OPERATOR = "public"              # Location links have no owning operator
PUBLIC_BANDWIDTH_GBPS = Decimal(0)      # 0 = not capacity constrained

US_PER_MS = Decimal(1000)
COST_QUANTUM = Decimal("0.000001")

DEFAULT_SOLVER_TIMEOUT = 600.0          # seconds


# ============================================================================
# COST MODEL
# ============================================================================

def link_cost(
    mean_us: Union[Decimal, StatMarker],
    jitter_us: Union[Decimal, StatMarker],
    packet_loss: Union[Decimal, StatMarker],
    params: CostParameters,
) -> Decimal:
    """
    Cost of a link from its latency statistics.

    Latency and jitter are normalized against 1000 ms and 100 ms ceilings.
    Missing mean or jitter count as the full penalty; unknown loss adds
    nothing. Monotonic non-decreasing in mean RTT.

    Returns:
        Cost quantized to 1e-6
    """
    ctx = DECIMAL_CONTEXT
    mean = Decimal(PENALTY_RTT_US) if isinstance(mean_us, StatMarker) else Decimal(mean_us)
    jitter = Decimal(PENALTY_JITTER_US) if isinstance(jitter_us, StatMarker) else Decimal(jitter_us)
    loss = Decimal(0) if isinstance(packet_loss, StatMarker) else Decimal(packet_loss)

    latency_norm = min(ctx.divide(ctx.divide(mean, US_PER_MS), LATENCY_CEILING_MS), Decimal(1))
    jitter_norm = min(ctx.divide(ctx.divide(jitter, US_PER_MS), JITTER_CEILING_MS), Decimal(1))
    loss_norm = min(loss, Decimal(1))

    weighted = ctx.add(
        ctx.add(
            ctx.multiply(params.latency_weight, latency_norm),
            ctx.multiply(params.jitter_weight, jitter_norm),
        ),
        ctx.multiply(params.loss_weight, loss_norm),
    )
    return ctx.multiply(params.base_multiplier, weighted).quantize(COST_QUANTUM, context=ctx)


def link_uptime(packet_loss: Union[Decimal, StatMarker], sample_count: int) -> Decimal:
    """Uptime in [0, 1]: 1 - loss when loss is known, else 1 or 0 by presence of samples."""
    if isinstance(packet_loss, StatMarker):
        return Decimal(1) if sample_count > 0 else Decimal(0)
    return min(max(Decimal(1) - packet_loss, Decimal(0)), Decimal(1))


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True)
class AllocationLink:
    """One link as the solver sees it."""
    start: str
    end: str
    cost: Decimal
    bandwidth: Decimal
    operator1: str
    operator2: str
    uptime: Decimal
    shared: Optional[int]
    link_type: str

    @property
    def sort_key(self) -> Tuple[str, str, str, str]:
        return (self.start, self.end, self.operator1, self.operator2)

    def to_dict(self) -> dict:
        return {
            "start": self.start,
            "end": self.end,
            "cost": str(self.cost),
            "bandwidth": str(self.bandwidth),
            "operator1": self.operator1,
            "operator2": self.operator2,
            "uptime": str(self.uptime),
            "shared": self.shared,
            "link_type": self.link_type,
        }


@dataclass(frozen=True)
class AllocationInput:
    """Canonical solver request. Equal inputs serialize to equal bytes."""
    private_links: Tuple[AllocationLink, ...]
    public_links: Tuple[AllocationLink, ...]
    demand_matrix: Tuple[Demand, ...]
    reward_pool: int
    demand_multiplier: Decimal

    def to_dict(self) -> dict:
        return {
            "private_links": [link.to_dict() for link in self.private_links],
            "public_links": [link.to_dict() for link in self.public_links],
            "demand_matrix": [demand.to_dict() for demand in self.demand_matrix],
            "reward_pool": self.reward_pool,
            "demand_multiplier": str(self.demand_multiplier),
        }

    def to_canonical_bytes(self) -> bytes:
        return canonical_json(self)


@dataclass(frozen=True)
class RewardDistribution:
    """Solver response: operator identity -> integral reward amount."""
    rewards: Mapping[str, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(self.rewards.values())

    def to_dict(self) -> dict:
        return {operator: self.rewards[operator] for operator in sorted(self.rewards)}

    def check_pool(self, reward_pool: int) -> None:
        """
        Raises:
            OracleError: If the distribution pays out more than the pool
        """
        if self.total > reward_pool:
            raise OracleError(f"Solver distributed {self.total}, more than the pool of {reward_pool}")

    @classmethod
    def from_mapping(cls, rewards: Mapping[str, Any]) -> "RewardDistribution":
        """
        Validate a solver's amount mapping.

        Raises:
            OracleError: On non-string operators or non-integral/negative amounts
        """
        if not isinstance(rewards, Mapping):
            raise OracleError(f"Rewards must be a mapping, got {type(rewards).__name__}")
        result = {}
        for operator, amount in rewards.items():
            if not isinstance(operator, str) or not operator:
                raise OracleError(f"Invalid operator identity: {operator!r}")
            if isinstance(amount, bool) or not isinstance(amount, int):
                raise OracleError(f"Reward for {operator} must be an integer, got {amount!r}")
            if amount < 0:
                raise OracleError(f"Reward for {operator} is negative: {amount}")
            result[operator] = amount
        return cls(rewards=result)

    @classmethod
    def from_shares(cls, shares: Mapping[str, Any], reward_pool: int) -> "RewardDistribution":
        """
        Convert fractional shares of the pool to integral amounts, rounding down.

        Raises:
            OracleError: On malformed or negative shares
        """
        if not isinstance(shares, Mapping):
            raise OracleError(f"Shares must be a mapping, got {type(shares).__name__}")
        amounts = {}
        for operator, share in shares.items():
            try:
                value = Decimal(str(share))
            except InvalidOperation:
                raise OracleError(f"Share for {operator} is not numeric: {share!r}")
            if not value.is_finite() or value < 0:
                raise OracleError(f"Share for {operator} is invalid: {share!r}")
            amount = DECIMAL_CONTEXT.multiply(value, Decimal(reward_pool))
            amounts[operator] = int(amount.to_integral_value(rounding=ROUND_FLOOR))
        return cls.from_mapping(amounts)


# ============================================================================
# INPUT BUILDER
# ============================================================================

class AllocationInputBuilder:
    """Assembles the canonical AllocationInput."""

    def __init__(
        self,
        topology: Topology,
        cost_params: Optional[CostParameters] = None,
        default_bandwidth_gbps: Decimal = DEFAULT_BANDWIDTH_GBPS,
    ):
        self.topology = topology
        self.cost_params = cost_params or CostParameters()
        self.default_bandwidth_gbps = default_bandwidth_gbps

    def private_link(self, stats: PrivateLinkStats) -> AllocationLink:
        origin_id, origin = self.topology.device_by_code(stats.origin_code)
        target_id, target = self.topology.device_by_code(stats.target_code)
        info = self.topology.link_info(origin_id, target_id)
        return AllocationLink(
            start=stats.origin_code,
            end=stats.target_code,
            cost=link_cost(stats.mean, stats.jitter, stats.packet_loss, self.cost_params),
            bandwidth=info.bandwidth_gbps if info else self.default_bandwidth_gbps,
            operator1=origin.operator,
            operator2=target.operator,
            uptime=link_uptime(stats.packet_loss, stats.sample_count),
            shared=info.shared if info else None,
            link_type=LINK_TYPE_PRIVATE,
        )

    def public_link(self, stats: PublicLinkStats) -> AllocationLink:
        return AllocationLink(
            start=stats.origin_location,
            end=stats.target_location,
            cost=link_cost(stats.mean, stats.jitter, stats.packet_loss, self.cost_params),
            bandwidth=PUBLIC_BANDWIDTH_GBPS,
            operator1=PUBLIC_OPERATOR,
            operator2=PUBLIC_OPERATOR,
            uptime=link_uptime(stats.packet_loss, stats.sample_count),
            shared=None,
            link_type=LINK_TYPE_PUBLIC,
        )

    def build(
        self,
        private: Sequence[PrivateLinkStats],
        public: Sequence[PublicLinkStats],
        demand: Sequence[Demand],
        reward_pool: int,
        demand_multiplier: Decimal,
    ) -> AllocationInput:
        """
        Build the solver request.

        Args:
            private: Private link statistics, any order
            public: Public link statistics, any order
            demand: Demand entries, any order
            reward_pool: Pool in the smallest reward unit
            demand_multiplier: Multiplier the demands were built with

        Returns:
            AllocationInput with every list in canonical order

        Raises:
            AggregationMismatchError: If a demand endpoint is in neither link list
            InputError: On a negative or non-integral reward pool
        """
        if isinstance(reward_pool, bool) or not isinstance(reward_pool, int) or reward_pool < 0:
            raise InputError(f"reward_pool must be a non-negative integer, got {reward_pool!r}")

        private_links = sorted((self.private_link(s) for s in private), key=lambda link: link.sort_key)
        public_links = sorted((self.public_link(s) for s in public), key=lambda link: link.sort_key)
        demands = sorted(demand, key=lambda d: (d.start, d.end, d.demand_type))

        known = set()
        for link in private_links + public_links:
            known.add(link.start)
            known.add(link.end)
        missing = {d.start for d in demands if d.start not in known}
        missing |= {d.end for d in demands if d.end not in known}
        if missing:
            raise AggregationMismatchError(
                f"Demand references locations with no link: {', '.join(sorted(missing))}",
                missing,
            )

        allocation_input = AllocationInput(
            private_links=tuple(private_links),
            public_links=tuple(public_links),
            demand_matrix=tuple(demands),
            reward_pool=reward_pool,
            demand_multiplier=Decimal(demand_multiplier),
        )
        logger.info(
            f"Allocation input: {len(private_links)} private, {len(public_links)} public, "
            f"{len(demands)} demands, pool={reward_pool}"
        )
        return allocation_input


# ============================================================================
# ORACLES
# ============================================================================

class AllocationOracle(ABC):
    """Capability interface of the external fair-value solver."""

    version: str = "unknown"

    @abstractmethod
    def solve(self, allocation_input: AllocationInput) -> RewardDistribution:
        """
        Compute per-operator rewards.

        Raises:
            OracleError: On solver failure or a malformed response
        """
        pass


class StaticOracle(AllocationOracle):
    """Returns a fixed distribution regardless of input."""

    def __init__(self, rewards: Mapping[str, int], version: str = "static"):
        self._distribution = RewardDistribution.from_mapping(rewards)
        self.version = version

    def solve(self, allocation_input: AllocationInput) -> RewardDistribution:
        return self._distribution

    @classmethod
    def from_file(cls, path: str) -> "StaticOracle":
        """Load {"rewards": {...}, "solver_version": "..."} or a bare mapping."""
        try:
            with open(path, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise OracleError(f"Cannot read rewards file {path}: {e}")
        if isinstance(data, dict) and "rewards" in data:
            return cls(data["rewards"], version=data.get("solver_version", "static"))
        return cls(data)


class CommandOracle(AllocationOracle):
    """
    Runs an external solver process.

    The request written to stdin is
    {"input": <AllocationInput>, "parameters": <SolverParameters>}.
    The solver answers on stdout with {"rewards": {operator: int}} or
    {"shares": {operator: "0.25"}}, optionally with "solver_version".
    """

    def __init__(
        self,
        command: Union[str, Sequence[str]],
        parameters: Optional[SolverParameters] = None,
        timeout: float = DEFAULT_SOLVER_TIMEOUT,
        version: Optional[str] = None,
    ):
        self.command = shlex.split(command) if isinstance(command, str) else list(command)
        self.parameters = parameters or SolverParameters()
        self.timeout = timeout
        self.version = version or "external"

    def _request(self, allocation_input: AllocationInput) -> bytes:
        return canonical_json({
            "input": allocation_input,
            "parameters": self.parameters.to_dict(),
        })

    def solve(self, allocation_input: AllocationInput) -> RewardDistribution:
        logger.info(f"Invoking solver: {' '.join(self.command)}")
        try:
            completed = subprocess.run(
                self.command,
                input=self._request(allocation_input),
                capture_output=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            raise OracleError(f"Solver timed out after {self.timeout}s")
        except OSError as e:
            raise OracleError(f"Cannot start solver: {e}")

        if completed.returncode != 0:
            stderr = completed.stderr.decode("utf-8", errors="replace").strip()
            raise OracleError(f"Solver exited with {completed.returncode}: {stderr[:500]}")

        try:
            response = json.loads(completed.stdout)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise OracleError(f"Solver returned malformed JSON: {e}")
        return self.parse_response(response, allocation_input.reward_pool)

    def parse_response(self, response: Any, reward_pool: int) -> RewardDistribution:
        """Interpret a decoded solver response."""
        if not isinstance(response, dict):
            raise OracleError("Solver response must be a JSON object")
        if response.get("solver_version"):
            self.version = str(response["solver_version"])
        if "rewards" in response:
            return RewardDistribution.from_mapping(response["rewards"])
        if "shares" in response:
            return RewardDistribution.from_shares(response["shares"], reward_pool)
        raise OracleError("Solver response has neither 'rewards' nor 'shares'")
