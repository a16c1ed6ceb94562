"""
linkrewards/cli.py

Command-line interface.

Usage:
    linkrewards calculate --snapshot snap.json --after "1 day ago" --before now \\
        --reward-pool 1000000 --rewards-file rewards.json --output-dir out/
    linkrewards verify-proof --commitment out/<epoch>/merkle_commitment.json --operator op-a
    linkrewards inspect --snapshot snap.json --after 2024-01-01T00:00:00Z --before 2024-01-02T00:00:00Z
"""

import json
import logging
import re
import sys
from datetime import datetime, timedelta, timezone
from typing import Optional

import click

from .blockchain.canonical import canonicalize
from .blockchain.merkle import MerkleCommitment, verify_reward_claim
from .config import SOFTWARE_VERSION, RewardConfig
from .errors import LinkRewardsError
from .integration.ledger import LedgerClient, SnapshotFileSource
from .integration.orchestrator import PipelineFailure, RewardOrchestrator
from .integration.publisher import ArtifactPublisher
from .metrics import PipelineMetrics
from .protocol.allocation import CommandOracle, StaticOracle
from .protocol.samples import SampleStore
from .protocol.statistics import StatisticsEngine

logger = logging.getLogger("linkrewards.cli")

RELATIVE_UNITS = {
    "s": "seconds", "sec": "seconds", "second": "seconds", "seconds": "seconds",
    "m": "minutes", "min": "minutes", "minute": "minutes", "minutes": "minutes",
    "h": "hours", "hour": "hours", "hours": "hours",
    "d": "days", "day": "days", "days": "days",
    "w": "weeks", "week": "weeks", "weeks": "weeks",
}
RELATIVE_PATTERN = re.compile(r"^\s*(\d+)\s*([a-z]+)\s+ago\s*$")


def to_micros(moment: datetime) -> int:
    delta = moment - datetime(1970, 1, 1, tzinfo=timezone.utc)
    return (delta.days * 86_400 + delta.seconds) * 1_000_000 + delta.microseconds


def parse_time(value: str, now: Optional[datetime] = None) -> int:
    """
    Parse a window boundary into microseconds since the Unix epoch.

    Accepts raw microseconds, RFC 3339 timestamps, "now", and relative
    forms like "2 hours ago" or "30m ago".

    Raises:
        click.BadParameter: If the value matches no accepted form
    """
    now = now or datetime.now(timezone.utc)
    text = value.strip().lower()

    if text.isdigit():
        return int(text)
    if text == "now":
        return to_micros(now)

    match = RELATIVE_PATTERN.match(text)
    if match:
        amount, unit = match.groups()
        if unit not in RELATIVE_UNITS:
            raise click.BadParameter(f"Unknown time unit '{unit}' in '{value}'")
        return to_micros(now - timedelta(**{RELATIVE_UNITS[unit]: int(amount)}))

    try:
        moment = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        raise click.BadParameter(
            f"Invalid time '{value}'. Use RFC 3339, microseconds, 'now' or 'N <unit> ago'"
        )
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return to_micros(moment)


def resolve_window(after: str, before: str):
    now = datetime.now(timezone.utc)
    after_us, before_us = parse_time(after, now), parse_time(before, now)
    if before_us <= after_us:
        raise click.BadParameter(f"--before ({before}) must be later than --after ({after})")
    return after_us, before_us


def load_config(path: Optional[str]) -> RewardConfig:
    config = RewardConfig.from_file(path) if path else RewardConfig()
    config = config.with_env_overrides()
    config.validate()
    return config


def echo_json(data) -> None:
    click.echo(json.dumps(canonicalize(data), indent=2, sort_keys=True))


@click.group()
@click.version_option(SOFTWARE_VERSION, prog_name="linkrewards")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
def cli(verbose: bool):
    """Verifiable link-performance rewards."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


@cli.command()
@click.option("--after", required=True, help="Window start (RFC 3339, microseconds, 'N <unit> ago')")
@click.option("--before", required=True, help="Window end (exclusive)")
@click.option("--reward-pool", type=click.IntRange(min=0), required=True, help="Pool in smallest units")
@click.option("--snapshot", type=click.Path(exists=True, dir_okay=False), help="Offline snapshot file")
@click.option("--ledger-url", help="Ledger REST endpoint")
@click.option("--rewards-file", type=click.Path(exists=True, dir_okay=False), help="Fixed solver output")
@click.option("--solver-command", help="External solver command line")
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False), help="JSON config")
@click.option("--output-dir", type=click.Path(file_okay=False), help="Publish artifacts here")
@click.option("--overwrite", is_flag=True, help="Replace artifacts of an already published epoch")
@click.option("--metrics", "show_metrics", is_flag=True, help="Print Prometheus metrics after the run")
def calculate(after, before, reward_pool, snapshot, ledger_url, rewards_file, solver_command,
              config_path, output_dir, overwrite, show_metrics):
    """Run the pipeline for one window and print the verification packet."""
    if bool(snapshot) == bool(ledger_url):
        raise click.UsageError("Give exactly one of --snapshot or --ledger-url")
    if bool(rewards_file) == bool(solver_command):
        raise click.UsageError("Give exactly one of --rewards-file or --solver-command")

    after_us, before_us = resolve_window(after, before)

    try:
        config = load_config(config_path)
        source = SnapshotFileSource(snapshot) if snapshot else LedgerClient(ledger_url)
        if rewards_file:
            oracle = StaticOracle.from_file(rewards_file)
        else:
            oracle = CommandOracle(solver_command, parameters=config.solver)
    except LinkRewardsError as e:
        raise click.ClickException(str(e))

    metrics = PipelineMetrics()
    orchestrator = RewardOrchestrator(config, oracle, metrics=metrics)
    try:
        result = orchestrator.run(source, after_us, before_us, reward_pool)
    except PipelineFailure as e:
        click.echo(f"Error: run failed at stage '{e.stage.value}': "
                   f"{type(e.error).__name__}: {e.error}", err=True)
        sys.exit(1)

    if result.empty_window:
        click.echo(f"Warning: {result.empty_window}", err=True)

    if output_dir:
        try:
            ArtifactPublisher(output_dir, overwrite=overwrite).publish(result)
        except FileExistsError as e:
            raise click.ClickException(str(e))

    echo_json(result.packet)
    if show_metrics:
        click.echo(metrics.collect(), err=True)


@cli.command("verify-proof")
@click.option("--commitment", "commitment_path", type=click.Path(exists=True, dir_okay=False), required=True)
@click.option("--operator", required=True, help="Operator identity to verify")
@click.option("--amount", type=int, help="Claimed amount (defaults to the committed packet's)")
@click.option("--packet", "packet_path", type=click.Path(exists=True, dir_okay=False),
              help="Verification packet holding the amount")
def verify_proof(commitment_path, operator, amount, packet_path):
    """Verify one operator's inclusion proof against the committed root."""
    with open(commitment_path, "r") as f:
        commitment = MerkleCommitment.from_dict(json.load(f))

    if operator not in commitment.proofs or operator not in commitment.operators:
        raise click.ClickException(f"No proof for operator {operator}")

    if amount is None:
        if not packet_path:
            raise click.UsageError("Give --amount or --packet")
        with open(packet_path, "r") as f:
            rewards = json.load(f).get("rewards", {})
        if operator not in rewards:
            raise click.ClickException(f"Operator {operator} not in packet rewards")
        amount = rewards[operator]

    index = commitment.leaf_index(operator)
    if verify_reward_claim(operator, amount, commitment.proofs[operator], commitment.root, index):
        click.echo(f"OK: {operator} = {amount} is included in root {commitment.root}")
    else:
        click.echo(f"FAILED: {operator} = {amount} does not verify against {commitment.root}", err=True)
        sys.exit(1)


@cli.command()
@click.option("--snapshot", type=click.Path(exists=True, dir_okay=False), required=True)
@click.option("--after", required=True)
@click.option("--before", required=True)
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False))
def inspect(snapshot, after, before, config_path):
    """Print per-link statistics for a window without running a solver."""
    after_us, before_us = resolve_window(after, before)
    try:
        config = load_config(config_path)
        fetched = SnapshotFileSource(snapshot).fetch(after_us, before_us)
        index = SampleStore(fetched.topology).ingest(fetched.sample_sets, after_us, before_us)
        stats = StatisticsEngine(config.sampling_interval_us, config.max_workers).compute_all(index)
    except LinkRewardsError as e:
        raise click.ClickException(str(e))

    echo_json({
        "window": {"after_us": after_us, "before_us": before_us},
        "dropped_samples": index.dropped_count,
        "private_links": list(stats),
    })


def main():
    cli()


if __name__ == "__main__":
    main()
