"""
linkrewards/errors.py

Error taxonomy for the telemetry-to-reward pipeline.

Per-link statistical edge cases are not errors (see
protocol.statistics.StatMarker). Everything here either aborts the run
or, for EmptyWindowDataError, flags an otherwise valid result.
"""


class LinkRewardsError(Exception):
    """Base class for all pipeline errors."""
    pass


class ConfigError(LinkRewardsError):
    """Invalid reward configuration."""
    pass


class InputError(LinkRewardsError):
    """Malformed sample, unknown device, or missing identity mapping."""
    pass


class EmptyWindowDataError(LinkRewardsError):
    """
    No samples at all in the requested window.

    Never raised by the core. An instance is attached to the run result so
    callers can tell an empty-but-verifiable run from a regular one.
    """

    def __init__(self, after_us: int, before_us: int):
        super().__init__(f"No samples in window [{after_us}, {before_us})")
        self.after_us = after_us
        self.before_us = before_us


class AggregationMismatchError(LinkRewardsError):
    """A demand or link references a location absent from the topology."""

    def __init__(self, message: str, locations=None):
        super().__init__(message)
        self.locations = sorted(locations or [])


class OracleError(LinkRewardsError):
    """External allocation solver failed or returned a malformed response."""
    pass


class CommitmentError(LinkRewardsError):
    """Hashing or Merkle tree construction failed."""
    pass


class LedgerError(LinkRewardsError):
    """Ledger fetch failed after retries, or the circuit is open."""
    pass
