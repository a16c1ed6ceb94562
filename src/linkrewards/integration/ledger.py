"""
linkrewards/integration/ledger.py

Data sources feeding the pipeline: a REST ledger reader and an offline
snapshot file. Both implement DataSource.fetch(after_us, before_us).

Ledger endpoints (JSON):
- GET {base}/topology
      {"devices": {id: {"code", "location", "operator"}}, "links": [...]}
- GET {base}/telemetry?after_us=&before_us=&cursor=
      {"sample_sets": [...], "next_cursor": "..." | null}
- GET {base}/weights
      {"weights": {location: weight}}

Usage:
    from linkrewards.integration.ledger import LedgerClient, SnapshotFileSource

    source = LedgerClient("https://ledger.example.net/api")
    fetched = source.fetch(after_us, before_us)
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

import requests

from ..errors import InputError, LedgerError
from ..protocol.samples import LinkSampleSet, Topology
from .retry import BackoffPolicy, CircuitBreaker, CircuitBreakerConfig, call_with_retry

logger = logging.getLogger("linkrewards.integration.ledger")


# ============================================================================
# CONSTANTS
# ============================================================================

REQUEST_TIMEOUT = 10        # seconds
MAX_TELEMETRY_PAGES = 10_000


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True)
class FetchedData:
    """Everything the core needs for one window, already decoded."""
    topology: Topology
    sample_sets: Tuple[LinkSampleSet, ...] = ()
    location_weights: Mapping[str, Any] = field(default_factory=dict)
    third_party: Optional[Any] = None


class DataSource(ABC):
    """Supplier of fetched data for a window."""

    @abstractmethod
    def fetch(self, after_us: int, before_us: int) -> FetchedData:
        pass


def parse_snapshot(data: Mapping[str, Any]) -> FetchedData:
    """
    Decode a snapshot document.

    Raises:
        InputError: If required sections are malformed
    """
    if not isinstance(data, Mapping):
        raise InputError("Snapshot must be a JSON object")
    weights = data.get("location_weights", {})
    if not isinstance(weights, Mapping):
        raise InputError("location_weights must be an object")
    return FetchedData(
        topology=Topology.from_dict(data.get("topology", {})),
        sample_sets=tuple(LinkSampleSet.from_dict(s) for s in data.get("telemetry", [])),
        location_weights=dict(weights),
        third_party=data.get("third_party"),
    )


class StaticSource(DataSource):
    """Returns already-built FetchedData for any window."""

    def __init__(self, fetched: FetchedData):
        self._fetched = fetched

    def fetch(self, after_us: int, before_us: int) -> FetchedData:
        return self._fetched


class SnapshotFileSource(DataSource):
    """Reads a JSON snapshot from disk; the window is applied by SampleStore."""

    def __init__(self, path: str):
        self.path = path

    def fetch(self, after_us: int, before_us: int) -> FetchedData:
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise LedgerError(f"Cannot read snapshot {self.path}: {e}")
        fetched = parse_snapshot(data)
        logger.info(
            f"Loaded snapshot {self.path}: {len(fetched.topology.devices)} devices, "
            f"{len(fetched.sample_sets)} sample sets"
        )
        return fetched


# ============================================================================
# LEDGER CLIENT
# ============================================================================

class LedgerClient(DataSource):
    """
    REST reader for topology, telemetry and location weights.

    Every request goes through a circuit breaker with bounded exponential
    backoff. Telemetry is paginated with an opaque cursor.
    """

    def __init__(
        self,
        base_url: str,
        session: Optional[requests.Session] = None,
        timeout: float = REQUEST_TIMEOUT,
        backoff: Optional[BackoffPolicy] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        self.backoff = backoff or BackoffPolicy()
        self.breaker = breaker or CircuitBreaker("ledger", CircuitBreakerConfig())

    def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}/{path.lstrip('/')}"

        def request() -> Any:
            response = self.session.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
            return response.json()

        return call_with_retry(
            request,
            self.breaker,
            self.backoff,
            retry_on=(requests.RequestException, ValueError),
        )

    def fetch_topology(self) -> Topology:
        data = self._get_json("topology")
        if not isinstance(data, Mapping):
            raise LedgerError("Topology response must be a JSON object")
        topology = Topology.from_dict(data)
        logger.info(f"Fetched topology: {len(topology.devices)} devices, {len(topology.links)} links")
        return topology

    def fetch_telemetry(self, after_us: int, before_us: int) -> Tuple[LinkSampleSet, ...]:
        """Fetch every telemetry page for the window."""
        sample_sets: List[LinkSampleSet] = []
        cursor: Optional[str] = None

        for page in range(MAX_TELEMETRY_PAGES):
            params = {"after_us": after_us, "before_us": before_us}
            if cursor:
                params["cursor"] = cursor
            data = self._get_json("telemetry", params)
            if not isinstance(data, Mapping):
                raise LedgerError("Telemetry response must be a JSON object")

            sample_sets.extend(LinkSampleSet.from_dict(s) for s in data.get("sample_sets", []))
            cursor = data.get("next_cursor")
            logger.debug(f"Telemetry page {page + 1}: {len(sample_sets)} sample sets so far")
            if not cursor:
                break
        else:
            raise LedgerError(f"Telemetry exceeded {MAX_TELEMETRY_PAGES} pages")

        logger.info(f"Fetched {len(sample_sets)} sample sets for [{after_us}, {before_us})")
        return tuple(sample_sets)

    def fetch_weights(self) -> Dict[str, Any]:
        data = self._get_json("weights")
        weights = data.get("weights", data) if isinstance(data, Mapping) else None
        if not isinstance(weights, Mapping):
            raise LedgerError("Weights response must be a JSON object")
        return dict(weights)

    def fetch(self, after_us: int, before_us: int) -> FetchedData:
        return FetchedData(
            topology=self.fetch_topology(),
            sample_sets=self.fetch_telemetry(after_us, before_us),
            location_weights=self.fetch_weights(),
        )
