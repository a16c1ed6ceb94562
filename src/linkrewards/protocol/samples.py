"""
linkrewards/protocol/samples.py

Raw latency samples, network topology, and the SampleStore that filters
and indexes them for one time window.

The window is closed-open: a sample belongs to [after_us, before_us) when
after_us <= timestamp_us < before_us. Links whose samples all fall
outside the window are kept with an empty sample tuple.

Usage:
    from linkrewards.protocol.samples import SampleStore, Topology

    topology = Topology.from_dict(snapshot["topology"])
    index = SampleStore(topology).ingest(sample_sets, after_us, before_us)
    for link in index.links:
        print(link.key, len(link.samples))
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from ..config import DEFAULT_BANDWIDTH_GBPS, to_decimal
from ..errors import ConfigError, InputError

logger = logging.getLogger("linkrewards.protocol.samples")


# ============================================================================
# CONSTANTS
# ============================================================================

LOST_MARKERS = ("lost", "LOST")     # Wire spellings of a lost sample
CODE_COUNTER_WIDTH = 2              # CHI01, CHI02, ...


# ============================================================================
# SAMPLE DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True)
class LatencySample:
    """One round-trip measurement. rtt_us is None when the probe was lost."""
    timestamp_us: int
    rtt_us: Optional[int]

    @property
    def lost(self) -> bool:
        return self.rtt_us is None

    def to_dict(self) -> dict:
        return {
            "timestamp_us": self.timestamp_us,
            "rtt_us": "lost" if self.rtt_us is None else self.rtt_us,
        }

    @classmethod
    def from_raw(cls, raw: Any) -> "LatencySample":
        """
        Parse a sample from its wire form.

        Accepts [timestamp_us, rtt_us] pairs or
        {"timestamp_us": ..., "rtt_us": ...} objects. A lost sample has
        rtt_us "lost" or null.

        Raises:
            InputError: If the sample is malformed
        """
        if isinstance(raw, LatencySample):
            return raw
        if isinstance(raw, Mapping):
            timestamp, rtt = raw.get("timestamp_us"), raw.get("rtt_us")
        elif isinstance(raw, (list, tuple)) and len(raw) == 2:
            timestamp, rtt = raw
        else:
            raise InputError(f"Malformed latency sample: {raw!r}")

        if isinstance(timestamp, bool) or not isinstance(timestamp, int) or timestamp < 0:
            raise InputError(f"Invalid sample timestamp: {timestamp!r}")
        if rtt is None or rtt in LOST_MARKERS:
            return cls(timestamp_us=timestamp, rtt_us=None)
        if isinstance(rtt, bool) or not isinstance(rtt, int) or rtt < 0:
            raise InputError(f"Invalid sample rtt: {rtt!r}")
        return cls(timestamp_us=timestamp, rtt_us=rtt)


@dataclass(frozen=True)
class LinkSampleSet:
    """All raw samples reported for one directed device-pair link."""
    origin_device_id: str
    target_device_id: str
    samples: Tuple[LatencySample, ...] = ()
    sampling_interval_us: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "origin_device_id": self.origin_device_id,
            "target_device_id": self.target_device_id,
            "sampling_interval_us": self.sampling_interval_us,
            "samples": [s.to_dict() for s in self.samples],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LinkSampleSet":
        try:
            origin = data["origin_device_id"]
            target = data["target_device_id"]
        except KeyError as e:
            raise InputError(f"Sample set missing field {e}")
        interval = data.get("sampling_interval_us")
        if interval is not None and (not isinstance(interval, int) or interval <= 0):
            raise InputError(f"Invalid sampling interval for {origin}->{target}: {interval!r}")
        return cls(
            origin_device_id=str(origin),
            target_device_id=str(target),
            samples=tuple(LatencySample.from_raw(s) for s in data.get("samples", [])),
            sampling_interval_us=interval,
        )


@dataclass(frozen=True, order=True)
class CircuitKey:
    """Identity of a private link by stable device short codes."""
    origin_code: str
    target_code: str

    def __str__(self) -> str:
        return f"{self.origin_code}->{self.target_code}"


# ============================================================================
# TOPOLOGY
# ============================================================================

@dataclass(frozen=True)
class DeviceInfo:
    """A network device: short code, location and owning operator."""
    code: str
    location: str
    operator: str

    def to_dict(self) -> dict:
        return {"code": self.code, "location": self.location, "operator": self.operator}


@dataclass(frozen=True)
class LinkInfo:
    """Provisioned properties of a device-pair link."""
    bandwidth_gbps: Decimal = DEFAULT_BANDWIDTH_GBPS
    shared: Optional[int] = None

    def to_dict(self) -> dict:
        return {"bandwidth_gbps": str(self.bandwidth_gbps), "shared": self.shared}


@dataclass(frozen=True)
class Topology:
    """
    Network snapshot: devices keyed by ledger device id, plus optional
    per-link properties keyed by (origin_device_id, target_device_id).
    """
    devices: Mapping[str, DeviceInfo] = field(default_factory=dict)
    links: Mapping[Tuple[str, str], LinkInfo] = field(default_factory=dict)

    def __post_init__(self):
        seen: Dict[str, str] = {}
        for device_id in sorted(self.devices):
            code = self.devices[device_id].code
            if code in seen:
                raise InputError(
                    f"Device code {code} assigned to both {seen[code]} and {device_id}"
                )
            seen[code] = device_id

    def device(self, device_id: str) -> DeviceInfo:
        """
        Resolve a ledger device id.

        Raises:
            InputError: If the device has no identity mapping
        """
        try:
            return self.devices[device_id]
        except KeyError:
            raise InputError(f"No identity mapping for device {device_id}")

    def link_info(self, origin_device_id: str, target_device_id: str) -> Optional[LinkInfo]:
        return self.links.get((origin_device_id, target_device_id))

    def device_by_code(self, code: str) -> Tuple[str, DeviceInfo]:
        """
        Resolve a short code back to (device_id, DeviceInfo).

        Raises:
            InputError: If no device carries the code
        """
        for device_id, info in self.devices.items():
            if info.code == code:
                return device_id, info
        raise InputError(f"Unknown device code {code}")

    def location_of(self, code: str) -> str:
        return self.device_by_code(code)[1].location

    def operator_of(self, code: str) -> str:
        return self.device_by_code(code)[1].operator

    @property
    def locations(self) -> List[str]:
        return sorted({info.location for info in self.devices.values()})

    def to_dict(self) -> dict:
        return {
            "devices": {
                device_id: info.to_dict()
                for device_id, info in sorted(self.devices.items())
            },
            "links": [
                {"origin_device_id": origin, "target_device_id": target, **info.to_dict()}
                for (origin, target), info in sorted(self.links.items())
            ],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Topology":
        """
        Build from the snapshot form.

        Devices without a "code" get one from derive_device_codes().
        """
        if not isinstance(data, Mapping):
            raise InputError(f"Topology must be an object, got {type(data).__name__}")
        raw_devices = data.get("devices", {})
        if not isinstance(raw_devices, Mapping):
            raise InputError("Topology devices must be an object keyed by device id")

        for device_id, raw in raw_devices.items():
            if not isinstance(raw, Mapping):
                raise InputError(f"Device {device_id} must be an object, got {raw!r}")
            missing = [name for name in ("location", "operator") if not raw.get(name)]
            if missing:
                raise InputError(f"Device {device_id} missing field(s): {', '.join(missing)}")

        missing_codes = {
            device_id: raw["location"]
            for device_id, raw in raw_devices.items()
            if not raw.get("code")
        }
        derived = derive_device_codes(missing_codes) if missing_codes else {}

        devices = {
            device_id: DeviceInfo(
                code=raw.get("code") or derived[device_id],
                location=raw["location"],
                operator=raw["operator"],
            )
            for device_id, raw in raw_devices.items()
        }

        links = {}
        for raw in data.get("links", []):
            if not isinstance(raw, Mapping):
                raise InputError(f"Malformed link entry {raw!r}")
            try:
                bandwidth = to_decimal(raw.get("bandwidth_gbps", DEFAULT_BANDWIDTH_GBPS), "bandwidth_gbps")
                links[(raw["origin_device_id"], raw["target_device_id"])] = LinkInfo(
                    bandwidth_gbps=bandwidth,
                    shared=raw.get("shared"),
                )
            except (KeyError, ConfigError) as e:
                raise InputError(f"Malformed link entry {raw!r}: {e}")

        return cls(devices=devices, links=links)


def derive_device_codes(device_locations: Mapping[str, str]) -> Dict[str, str]:
    """
    Assign short codes of the form LOCATION + two-digit counter.

    Devices are numbered per location in device-id order, so the result
    depends only on the mapping's contents.

    Args:
        device_locations: device_id -> location code

    Returns:
        device_id -> short code (e.g. "CHI01")
    """
    counters: Dict[str, int] = defaultdict(int)
    codes = {}
    for device_id in sorted(device_locations):
        location = device_locations[device_id].upper()
        counters[location] += 1
        codes[device_id] = f"{location}{counters[location]:0{CODE_COUNTER_WIDTH}d}"
    return codes


# ============================================================================
# SAMPLE STORE
# ============================================================================

@dataclass(frozen=True)
class IndexedLink:
    """Window-filtered, timestamp-ordered samples for one private link."""
    key: CircuitKey
    origin_device_id: str
    target_device_id: str
    samples: Tuple[LatencySample, ...]
    sampling_interval_us: Optional[int] = None
    dropped_count: int = 0

    def to_dict(self) -> dict:
        return {
            "origin_code": self.key.origin_code,
            "target_code": self.key.target_code,
            "origin_device_id": self.origin_device_id,
            "target_device_id": self.target_device_id,
            "sampling_interval_us": self.sampling_interval_us,
            "samples": [s.to_dict() for s in self.samples],
        }


@dataclass(frozen=True)
class SampleIndex:
    """Output of SampleStore.ingest: every link of the window, sorted by key."""
    after_us: int
    before_us: int
    links: Tuple[IndexedLink, ...] = ()
    dropped_count: int = 0

    @property
    def sample_count(self) -> int:
        return sum(len(link.samples) for link in self.links)

    @property
    def is_empty(self) -> bool:
        return self.sample_count == 0

    @property
    def window_us(self) -> int:
        return self.before_us - self.after_us

    def to_dict(self) -> dict:
        """Canonical telemetry artifact: window plus every link in key order."""
        return {
            "after_us": self.after_us,
            "before_us": self.before_us,
            "links": [link.to_dict() for link in self.links],
        }


class SampleStore:
    """
    Normalizes raw sample sets for one window.

    Resolves device ids to circuit keys, drops and counts samples outside
    [after_us, before_us), merges sets reported twice for the same
    circuit, and sorts each link's samples by timestamp.
    """

    def __init__(self, topology: Topology):
        self.topology = topology

    def ingest(
        self,
        sample_sets: Iterable[LinkSampleSet],
        after_us: int,
        before_us: int,
    ) -> SampleIndex:
        """
        Filter and index sample sets.

        Args:
            sample_sets: Raw per-link sample sets
            after_us: Window start (inclusive)
            before_us: Window end (exclusive)

        Returns:
            SampleIndex with one IndexedLink per circuit

        Raises:
            InputError: On an invalid window or an unmapped device
        """
        if after_us >= before_us:
            raise InputError(f"Window start {after_us} must be before end {before_us}")

        grouped: Dict[CircuitKey, List[LinkSampleSet]] = defaultdict(list)
        for sample_set in sample_sets:
            origin = self.topology.device(sample_set.origin_device_id)
            target = self.topology.device(sample_set.target_device_id)
            grouped[CircuitKey(origin.code, target.code)].append(sample_set)

        links = []
        total_dropped = 0
        for key in sorted(grouped):
            link = self._index_link(key, grouped[key], after_us, before_us)
            total_dropped += link.dropped_count
            links.append(link)

        if total_dropped:
            logger.warning(f"Dropped {total_dropped} samples outside [{after_us}, {before_us})")

        index = SampleIndex(
            after_us=after_us,
            before_us=before_us,
            links=tuple(links),
            dropped_count=total_dropped,
        )
        logger.info(f"Indexed {index.sample_count} samples across {len(links)} links")
        return index

    def _index_link(
        self,
        key: CircuitKey,
        sets: Sequence[LinkSampleSet],
        after_us: int,
        before_us: int,
    ) -> IndexedLink:
        intervals = {s.sampling_interval_us for s in sets if s.sampling_interval_us is not None}
        if len(intervals) > 1:
            raise InputError(f"Conflicting sampling intervals for {key}: {sorted(intervals)}")

        kept = []
        dropped = 0
        for sample_set in sets:
            for sample in sample_set.samples:
                if after_us <= sample.timestamp_us < before_us:
                    kept.append(sample)
                else:
                    dropped += 1

        # Lost samples sort before received ones at the same timestamp
        kept.sort(key=lambda s: (s.timestamp_us, -1 if s.rtt_us is None else s.rtt_us))

        if not kept:
            logger.debug(f"Link {key} has no samples in window")

        return IndexedLink(
            key=key,
            origin_device_id=sets[0].origin_device_id,
            target_device_id=sets[0].target_device_id,
            samples=tuple(kept),
            sampling_interval_us=intervals.pop() if intervals else None,
            dropped_count=dropped,
        )
