"""
linkrewards/integration/orchestrator.py

Sequences one reward run over a closed time window:

    START -> FETCHED -> STATTED -> AGGREGATED -> DEMANDED -> INPUT
          -> ALLOCATED -> COMMITTED -> DONE

Each stage takes the previous stage's immutable output and returns a new
RunContext. Any failure stops the run at that stage and raises
PipelineFailure; nothing is committed or published for a failed run.

The epoch of a run is its window end (before_us), so repeated runs over
the same window address the same epoch.

Usage:
    from linkrewards import RewardConfig, RewardOrchestrator

    orchestrator = RewardOrchestrator(RewardConfig(), oracle)
    result = orchestrator.run(source, after_us, before_us, reward_pool=1_000_000)
"""

import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Tuple

from ..blockchain.merkle import MerkleCommitment
from ..blockchain.verification import StageArtifacts, VerificationCommitter, VerificationPacket
from ..config import RewardConfig
from ..errors import EmptyWindowDataError, InputError, LinkRewardsError
from ..metrics import PipelineMetrics
from ..protocol.aggregation import LinkAggregator, PublicLinkStats
from ..protocol.allocation import (
    AllocationInput,
    AllocationInputBuilder,
    AllocationOracle,
    RewardDistribution,
)
from ..protocol.demand import Demand, DemandBuilder
from ..protocol.samples import SampleIndex, SampleStore
from ..protocol.statistics import PrivateLinkStats, StatisticsEngine
from .ledger import DataSource, FetchedData

logger = logging.getLogger("linkrewards.integration.orchestrator")


class PipelineStage(Enum):
    """States of a reward run."""
    START = "start"
    FETCHED = "fetched"
    STATTED = "statted"
    AGGREGATED = "aggregated"
    DEMANDED = "demanded"
    INPUT = "input"
    ALLOCATED = "allocated"
    COMMITTED = "committed"
    DONE = "done"
    FAILED = "failed"


class PipelineFailure(LinkRewardsError):
    """A run aborted at `stage` because of `error`."""

    def __init__(self, stage: PipelineStage, error: BaseException, transitions=None):
        super().__init__(f"Run failed at {stage.value}: {type(error).__name__}: {error}")
        self.stage = stage
        self.error = error
        self.transitions = list(transitions or [])


@dataclass(frozen=True)
class RunContext:
    """Immutable state threaded from stage to stage."""
    after_us: int
    before_us: int
    reward_pool: int
    fetched: Optional[FetchedData] = None
    index: Optional[SampleIndex] = None
    private: Tuple[PrivateLinkStats, ...] = ()
    public: Tuple[PublicLinkStats, ...] = ()
    demands: Tuple[Demand, ...] = ()
    allocation_input: Optional[AllocationInput] = None
    rewards: Optional[RewardDistribution] = None
    packet: Optional[VerificationPacket] = None
    commitment: Optional[MerkleCommitment] = None

    @property
    def epoch(self) -> int:
        return self.before_us


@dataclass(frozen=True)
class RunResult:
    """Outcome of a committed run."""
    context: RunContext
    transitions: Tuple[PipelineStage, ...] = ()
    empty_window: Optional[EmptyWindowDataError] = None

    @property
    def epoch(self) -> int:
        return self.context.epoch

    @property
    def private_links(self) -> Tuple[PrivateLinkStats, ...]:
        return self.context.private

    @property
    def public_links(self) -> Tuple[PublicLinkStats, ...]:
        return self.context.public

    @property
    def demands(self) -> Tuple[Demand, ...]:
        return self.context.demands

    @property
    def allocation_input(self) -> AllocationInput:
        return self.context.allocation_input

    @property
    def rewards(self) -> RewardDistribution:
        return self.context.rewards

    @property
    def packet(self) -> VerificationPacket:
        return self.context.packet

    @property
    def commitment(self) -> MerkleCommitment:
        return self.context.commitment


class RewardOrchestrator:
    """Runs the pipeline stages in order under one configuration."""

    def __init__(
        self,
        config: RewardConfig,
        oracle: AllocationOracle,
        metrics: Optional[PipelineMetrics] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            config: Validated reward configuration
            oracle: Allocation solver
            metrics: Optional metrics collector
            clock: Returns the processing time stamped on the packet
        """
        config.validate()
        self.config = config
        self.oracle = oracle
        self.metrics = metrics
        self.clock = clock

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _fetch(self, ctx: RunContext, source: DataSource) -> RunContext:
        return replace(ctx, fetched=source.fetch(ctx.after_us, ctx.before_us))

    def _stat(self, ctx: RunContext) -> RunContext:
        index = SampleStore(ctx.fetched.topology).ingest(
            ctx.fetched.sample_sets, ctx.after_us, ctx.before_us
        )
        engine = StatisticsEngine(
            sampling_interval_us=self.config.sampling_interval_us,
            max_workers=self.config.max_workers,
        )
        return replace(ctx, index=index, private=engine.compute_all(index))

    def _aggregate(self, ctx: RunContext) -> RunContext:
        topology = ctx.fetched.topology
        aggregator = LinkAggregator(self.config.aggregation_policy, self.config.max_workers)
        public = aggregator.aggregate(ctx.private, topology.location_of, topology.operator_of)
        return replace(ctx, public=public)

    def _demand(self, ctx: RunContext) -> RunContext:
        # No measurements, no network to route over
        if ctx.index.is_empty:
            logger.warning(f"Epoch {ctx.epoch}: empty window, demand matrix left empty")
            return replace(ctx, demands=())

        link_locations = set()
        for link in ctx.public:
            link_locations.update(link.key)
        demands = DemandBuilder(self.config.demand_type).build(
            ctx.fetched.location_weights,
            self.config.demand_multiplier,
            locations=link_locations,
        )
        return replace(ctx, demands=demands)

    def _input(self, ctx: RunContext) -> RunContext:
        builder = AllocationInputBuilder(
            ctx.fetched.topology,
            self.config.cost,
            self.config.default_bandwidth_gbps,
        )
        allocation_input = builder.build(
            ctx.private, ctx.public, ctx.demands, ctx.reward_pool, self.config.demand_multiplier
        )
        return replace(ctx, allocation_input=allocation_input)

    def _allocate(self, ctx: RunContext) -> RunContext:
        rewards = self.oracle.solve(ctx.allocation_input)
        rewards.check_pool(ctx.reward_pool)
        logger.info(f"Solver {self.oracle.version} allocated {rewards.total} to {len(rewards.rewards)} operators")
        return replace(ctx, rewards=rewards)

    def _commit(self, ctx: RunContext) -> RunContext:
        committer = VerificationCommitter(solver_version=self.oracle.version)
        artifacts = StageArtifacts(
            config=self.config,
            topology=ctx.fetched.topology,
            telemetry=ctx.index,
            allocation_input=ctx.allocation_input,
            third_party=ctx.fetched.third_party,
        )
        packet, commitment = committer.commit(
            artifacts,
            ctx.rewards.rewards,
            epoch=ctx.epoch,
            after_us=ctx.after_us,
            before_us=ctx.before_us,
            reward_pool=ctx.reward_pool,
            processed_at=self.clock() if self.clock else None,
            empty_window=ctx.index.is_empty,
        )
        return replace(ctx, packet=packet, commitment=commitment)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(
        self,
        source: DataSource,
        after_us: int,
        before_us: int,
        reward_pool: int,
    ) -> RunResult:
        """
        Execute one run.

        Args:
            source: Supplier of topology, samples and weights
            after_us: Window start (inclusive)
            before_us: Window end (exclusive)
            reward_pool: Pool in the smallest reward unit

        Returns:
            RunResult of the committed run

        Raises:
            PipelineFailure: With the stage that failed and the cause
        """
        transitions: List[PipelineStage] = [PipelineStage.START]

        if after_us >= before_us:
            self._fail(PipelineStage.FETCHED, InputError(
                f"Window start {after_us} must be before end {before_us}"
            ), transitions)

        ctx = RunContext(after_us=after_us, before_us=before_us, reward_pool=reward_pool)
        logger.info(f"Starting run for epoch {ctx.epoch}: window [{after_us}, {before_us})")

        stages = [
            (PipelineStage.FETCHED, lambda c: self._fetch(c, source)),
            (PipelineStage.STATTED, self._stat),
            (PipelineStage.AGGREGATED, self._aggregate),
            (PipelineStage.DEMANDED, self._demand),
            (PipelineStage.INPUT, self._input),
            (PipelineStage.ALLOCATED, self._allocate),
            (PipelineStage.COMMITTED, self._commit),
        ]

        for stage, step in stages:
            started = time.monotonic()
            try:
                ctx = step(ctx)
            except LinkRewardsError as e:
                self._fail(stage, e, transitions)
            except Exception as e:
                logger.exception(f"Unexpected error at {stage.value}")
                self._fail(stage, e, transitions)
            if self.metrics:
                self.metrics.record_stage(stage.value, time.monotonic() - started)
            transitions.append(stage)
            logger.debug(f"Epoch {ctx.epoch}: -> {stage.value}")

        transitions.append(PipelineStage.DONE)

        empty = None
        if ctx.index.is_empty:
            empty = EmptyWindowDataError(after_us, before_us)
            logger.warning(f"Epoch {ctx.epoch}: {empty}")

        self._record_success(ctx)
        logger.info(f"Run for epoch {ctx.epoch} committed, root={ctx.commitment.root}")
        return RunResult(context=ctx, transitions=tuple(transitions), empty_window=empty)

    def _fail(self, stage: PipelineStage, error: BaseException, transitions: List[PipelineStage]):
        transitions.append(PipelineStage.FAILED)
        if self.metrics:
            self.metrics.record_run("failed")
        logger.error(f"Run aborted at {stage.value}: {type(error).__name__}: {error}")
        raise PipelineFailure(stage, error, transitions) from error

    def _record_success(self, ctx: RunContext) -> None:
        if not self.metrics:
            return
        self.metrics.record_run("committed")
        self.metrics.set_gauge("linkrewards_samples_ingested", ctx.index.sample_count)
        self.metrics.set_gauge("linkrewards_samples_dropped", ctx.index.dropped_count)
        self.metrics.set_gauge("linkrewards_private_links", len(ctx.private))
        self.metrics.set_gauge("linkrewards_public_links", len(ctx.public))
        self.metrics.set_gauge("linkrewards_demands", len(ctx.demands))
        self.metrics.set_gauge("linkrewards_rewarded_operators", len(ctx.rewards.rewards))
        self.metrics.set_gauge("linkrewards_last_epoch", ctx.epoch)
