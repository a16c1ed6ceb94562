"""
linkrewards/protocol/demand.py

Traffic demand between locations, derived from per-location weights
(typically stake).

For each unordered pair {a, b} of positively weighted locations,
including a == b for intra-location traffic:

    traffic = weight_a * weight_b / total_weight * multiplier

A zero weight leaves a location out. Locations passed in from the
linked topology but carrying no weight still get their pairs, with zero
traffic, so the solver sees every linked location.

Usage:
    from linkrewards.protocol.demand import DemandBuilder

    demands = DemandBuilder().build({"chi": 1, "nyc": 3}, Decimal("10"))
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from itertools import combinations_with_replacement
from typing import Any, Iterable, Mapping, Optional, Tuple

from ..config import DEFAULT_DEMAND_TYPE, to_decimal
from ..errors import ConfigError, InputError
from .statistics import DECIMAL_CONTEXT

logger = logging.getLogger("linkrewards.protocol.demand")

TRAFFIC_QUANTUM = Decimal("0.000001")


@dataclass(frozen=True)
class Demand:
    """Traffic requirement between two locations."""
    start: str
    end: str
    traffic: Decimal
    demand_type: int = DEFAULT_DEMAND_TYPE

    def to_dict(self) -> dict:
        return {
            "start": self.start,
            "end": self.end,
            "traffic": str(self.traffic),
            "demand_type": self.demand_type,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Demand":
        return cls(
            start=data["start"],
            end=data["end"],
            traffic=Decimal(str(data["traffic"])),
            demand_type=int(data.get("demand_type", DEFAULT_DEMAND_TYPE)),
        )


class DemandBuilder:
    """Builds the demand matrix from location weights."""

    def __init__(self, demand_type: int = DEFAULT_DEMAND_TYPE):
        self.demand_type = demand_type

    def build(
        self,
        location_weights: Mapping[str, Any],
        multiplier: Any,
        locations: Optional[Iterable[str]] = None,
    ) -> Tuple[Demand, ...]:
        """
        Build demands for every unordered location pair.

        Args:
            location_weights: Location -> non-negative weight
            multiplier: Traffic scale factor
            locations: Extra locations (e.g. from public links) that must
                appear even without a weight

        Returns:
            Demands sorted by (start, end), start <= end

        Raises:
            InputError: On a negative or non-numeric weight or multiplier
        """
        try:
            weights = {
                location: to_decimal(weight, f"weight of {location}")
                for location, weight in location_weights.items()
            }
            scale = to_decimal(multiplier, "demand multiplier")
        except ConfigError as e:
            raise InputError(str(e))

        negative = sorted(loc for loc, weight in weights.items() if weight < 0)
        if negative:
            raise InputError(f"Negative location weights: {', '.join(negative)}")
        if scale < 0:
            raise InputError(f"Demand multiplier must be non-negative, got {scale}")

        universe = {loc for loc, weight in weights.items() if weight > 0}
        if locations is not None:
            unweighted = set(locations) - universe
            if unweighted:
                logger.debug(f"Locations without weight get zero demand: {sorted(unweighted)}")
            universe |= unweighted

        total = sum((w for w in weights.values() if w > 0), Decimal(0))

        demands = []
        for start, end in combinations_with_replacement(sorted(universe), 2):
            weight_a = weights.get(start, Decimal(0))
            weight_b = weights.get(end, Decimal(0))
            if total == 0 or weight_a == 0 or weight_b == 0:
                traffic = Decimal(0)
            else:
                product = DECIMAL_CONTEXT.multiply(weight_a, weight_b)
                share = DECIMAL_CONTEXT.divide(product, total)
                traffic = DECIMAL_CONTEXT.multiply(share, scale)
            demands.append(Demand(
                start=start,
                end=end,
                traffic=traffic.quantize(TRAFFIC_QUANTUM, context=DECIMAL_CONTEXT),
                demand_type=self.demand_type,
            ))

        logger.info(f"Built {len(demands)} demands over {len(universe)} locations")
        return tuple(demands)
