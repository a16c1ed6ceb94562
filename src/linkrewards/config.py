"""
linkrewards/config.py

Configuration constants and data classes for linkrewards.

Every field of RewardConfig that can change a reward is part of its
canonical to_dict() form, which is hashed into the verification packet
as config_hash. Values that feed hashes are Decimals, never floats.

Usage:
    from linkrewards.config import RewardConfig

    config = RewardConfig.from_file("rewards.json")   # or RewardConfig()
    config = config.with_env_overrides()              # LINKREWARDS_* vars
    config.validate()
"""

import json
import logging
import os
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional

from .errors import ConfigError

logger = logging.getLogger("linkrewards.config")


# ============================================================================
# CONSTANTS
# ============================================================================

SOFTWARE_VERSION = "0.3.0"
PACKET_SCHEMA_VERSION = "1.0.0"

ENV_PREFIX = "LINKREWARDS_"

# Penalties used when a link has no usable measurement
PENALTY_RTT_US = 1_000_000          # 1 second
PENALTY_JITTER_US = 100_000         # 100 milliseconds

# Cost normalization ceilings
LATENCY_CEILING_MS = Decimal("1000")
JITTER_CEILING_MS = Decimal("100")

DEFAULT_BANDWIDTH_GBPS = Decimal("10")
DEFAULT_DEMAND_MULTIPLIER = Decimal("10")
DEFAULT_DEMAND_TYPE = 1              # unicast
DEFAULT_MAX_WORKERS = 4

AGGREGATION_POLICIES = ("weighted", "worst_case")


def to_decimal(value: Any, name: str = "value") -> Decimal:
    """
    Convert a config or input value to Decimal without float rounding.

    Floats go through str() so that 0.1 becomes Decimal("0.1").

    Raises:
        ConfigError: If the value is not numeric or not finite
    """
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool):
        raise ConfigError(f"{name} must be numeric, got bool")
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(value)
        except InvalidOperation:
            raise ConfigError(f"{name} must be numeric, got {value!r}")
    elif isinstance(value, float):
        result = Decimal(str(value))
    else:
        raise ConfigError(f"{name} must be numeric, got {type(value).__name__}")

    if not result.is_finite():
        raise ConfigError(f"{name} must be finite, got {value!r}")
    return result


# ============================================================================
# CONFIG DATA CLASSES
# ============================================================================

@dataclass(frozen=True)
class CostParameters:
    """Weights of the link cost model (latency, jitter, loss)."""
    latency_weight: Decimal = Decimal("0.5")
    jitter_weight: Decimal = Decimal("0.3")
    loss_weight: Decimal = Decimal("0.2")
    base_multiplier: Decimal = Decimal("1.0")

    def to_dict(self) -> dict:
        return {
            "latency_weight": str(self.latency_weight),
            "jitter_weight": str(self.jitter_weight),
            "loss_weight": str(self.loss_weight),
            "base_multiplier": str(self.base_multiplier),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CostParameters":
        defaults = cls()
        return cls(**{
            key: to_decimal(data.get(key, getattr(defaults, key)), key)
            for key in ("latency_weight", "jitter_weight", "loss_weight", "base_multiplier")
        })


@dataclass(frozen=True)
class SolverParameters:
    """Parameters passed through to the allocation solver."""
    operator_uptime: Optional[Decimal] = None
    hybrid_penalty: Optional[Decimal] = None
    contiguity_bonus: Optional[Decimal] = None

    def to_dict(self) -> dict:
        return {
            key: (str(value) if value is not None else None)
            for key, value in (
                ("operator_uptime", self.operator_uptime),
                ("hybrid_penalty", self.hybrid_penalty),
                ("contiguity_bonus", self.contiguity_bonus),
            )
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SolverParameters":
        values = {}
        for key in ("operator_uptime", "hybrid_penalty", "contiguity_bonus"):
            raw = data.get(key)
            values[key] = to_decimal(raw, key) if raw is not None else None
        return cls(**values)


@dataclass(frozen=True)
class RewardConfig:
    """
    Complete configuration for one reward run.

    Usage:
        config = RewardConfig(demand_multiplier=Decimal("5"))
        config.validate()
    """

    # Demand matrix
    demand_multiplier: Decimal = DEFAULT_DEMAND_MULTIPLIER
    demand_type: int = DEFAULT_DEMAND_TYPE

    # Packet loss needs a declared cadence; None means "unknown" loss unless
    # the sample set itself declares an interval
    sampling_interval_us: Optional[int] = None

    # Links without topology bandwidth use this
    default_bandwidth_gbps: Decimal = DEFAULT_BANDWIDTH_GBPS

    # Private -> public combinator
    aggregation_policy: str = "weighted"

    cost: CostParameters = field(default_factory=CostParameters)
    solver: SolverParameters = field(default_factory=SolverParameters)

    # Thread pool size for per-link statistics and aggregation
    max_workers: int = DEFAULT_MAX_WORKERS

    def validate(self) -> None:
        """
        Check value ranges.

        Raises:
            ConfigError: On the first invalid value found
        """
        uptime = self.solver.operator_uptime
        if uptime is not None and not (Decimal(0) <= uptime <= Decimal(1)):
            raise ConfigError(f"operator_uptime must be between 0.0 and 1.0, got {uptime}")

        penalty = self.solver.hybrid_penalty
        if penalty is not None and penalty < 0:
            raise ConfigError(f"hybrid_penalty must be non-negative, got {penalty}")

        for name, weight in self.cost.to_dict().items():
            if Decimal(weight) < 0:
                raise ConfigError(f"cost.{name} must be non-negative, got {weight}")

        if self.demand_multiplier < 0:
            raise ConfigError(f"demand_multiplier must be non-negative, got {self.demand_multiplier}")

        if self.sampling_interval_us is not None and self.sampling_interval_us <= 0:
            raise ConfigError(f"sampling_interval_us must be positive, got {self.sampling_interval_us}")

        if self.default_bandwidth_gbps < 0:
            raise ConfigError("default_bandwidth_gbps must be non-negative")

        if self.aggregation_policy not in AGGREGATION_POLICIES:
            raise ConfigError(
                f"Invalid aggregation policy: {self.aggregation_policy}. "
                f"Valid options: {', '.join(AGGREGATION_POLICIES)}"
            )

        if self.max_workers < 1:
            raise ConfigError(f"max_workers must be at least 1, got {self.max_workers}")

    def to_dict(self) -> dict:
        """Canonical form, hashed into config_hash. max_workers is excluded."""
        return {
            "demand_multiplier": str(self.demand_multiplier),
            "demand_type": self.demand_type,
            "sampling_interval_us": self.sampling_interval_us,
            "default_bandwidth_gbps": str(self.default_bandwidth_gbps),
            "aggregation_policy": self.aggregation_policy,
            "cost": self.cost.to_dict(),
            "solver": self.solver.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RewardConfig":
        """Create from dictionary, falling back to defaults for missing keys."""
        defaults = cls()
        interval = data.get("sampling_interval_us", defaults.sampling_interval_us)
        try:
            return cls(
                demand_multiplier=to_decimal(
                    data.get("demand_multiplier", defaults.demand_multiplier), "demand_multiplier"
                ),
                demand_type=int(data.get("demand_type", defaults.demand_type)),
                sampling_interval_us=int(interval) if interval is not None else None,
                default_bandwidth_gbps=to_decimal(
                    data.get("default_bandwidth_gbps", defaults.default_bandwidth_gbps),
                    "default_bandwidth_gbps",
                ),
                aggregation_policy=str(data.get("aggregation_policy", defaults.aggregation_policy)),
                cost=CostParameters.from_dict(data.get("cost", {})),
                solver=SolverParameters.from_dict(data.get("solver", {})),
                max_workers=int(data.get("max_workers", defaults.max_workers)),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid configuration: {e}")

    @classmethod
    def from_file(cls, path: str) -> "RewardConfig":
        """Load a JSON config file."""
        try:
            with open(path, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Cannot read config file {path}: {e}")
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a JSON object")
        logger.debug(f"Loaded config from {path}")
        return cls.from_dict(data)

    def with_env_overrides(self, environ: Optional[Mapping[str, str]] = None) -> "RewardConfig":
        """
        Apply LINKREWARDS_* environment overrides.

        Supported variables:
            LINKREWARDS_DEMAND_MULTIPLIER
            LINKREWARDS_SAMPLING_INTERVAL_US
            LINKREWARDS_AGGREGATION_POLICY
            LINKREWARDS_MAX_WORKERS
            LINKREWARDS_OPERATOR_UPTIME
            LINKREWARDS_HYBRID_PENALTY
            LINKREWARDS_CONTIGUITY_BONUS

        Args:
            environ: Mapping to read instead of os.environ

        Returns:
            New RewardConfig with overrides applied
        """
        env = os.environ if environ is None else environ
        changes: Dict[str, Any] = {}
        solver_changes: Dict[str, Any] = {}

        def get(name: str) -> Optional[str]:
            value = env.get(ENV_PREFIX + name)
            if value is None or not value.strip():
                return None
            return value.strip()

        try:
            if get("DEMAND_MULTIPLIER") is not None:
                changes["demand_multiplier"] = to_decimal(get("DEMAND_MULTIPLIER"), "demand_multiplier")
            if get("SAMPLING_INTERVAL_US") is not None:
                changes["sampling_interval_us"] = int(get("SAMPLING_INTERVAL_US"))
            if get("AGGREGATION_POLICY") is not None:
                changes["aggregation_policy"] = get("AGGREGATION_POLICY").lower().replace("-", "_")
            if get("MAX_WORKERS") is not None:
                changes["max_workers"] = int(get("MAX_WORKERS"))
        except ValueError as e:
            raise ConfigError(f"Invalid environment override: {e}")

        for name in ("operator_uptime", "hybrid_penalty", "contiguity_bonus"):
            raw = get(name.upper())
            if raw is not None:
                solver_changes[name] = to_decimal(raw, name)

        if solver_changes:
            changes["solver"] = replace(self.solver, **solver_changes)
        if changes:
            logger.info(f"Applied environment overrides: {', '.join(sorted(changes))}")
        return replace(self, **changes)
