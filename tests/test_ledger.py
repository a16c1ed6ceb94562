"""
Tests for linkrewards/integration/ledger.py and retry.py
"""

import json
import random

import pytest
import requests
from unittest.mock import MagicMock

from linkrewards.errors import ConfigError, InputError, LedgerError
from linkrewards.integration.ledger import LedgerClient, SnapshotFileSource, parse_snapshot
from linkrewards.integration.retry import (
    BackoffPolicy,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    call_with_retry,
)


# ============================================================================
# TEST DATA
# ============================================================================

TOPOLOGY = {
    "devices": {
        "dev-a": {"code": "CHI01", "location": "chi", "operator": "op-a"},
        "dev-b": {"location": "nyc", "operator": "op-b"},
    },
    "links": [{"origin_device_id": "dev-a", "target_device_id": "dev-b", "bandwidth_gbps": "100"}],
}


def create_sample_set(origin="dev-a", target="dev-b", start=0):
    return {
        "origin_device_id": origin,
        "target_device_id": target,
        "sampling_interval_us": 1000,
        "samples": [[start + i * 1000, 500] for i in range(3)] + [[start + 3000, "lost"]],
    }


def create_response(data=None, status_error=None):
    response = MagicMock()
    response.json.return_value = data
    if status_error:
        response.raise_for_status.side_effect = status_error
    return response


def create_session(routes):
    """Session whose get() answers from {path: [response, ...]}."""
    session = MagicMock(spec=requests.Session)
    queues = {path: list(responses) for path, responses in routes.items()}

    def get(url, params=None, timeout=None):
        path = url.rsplit("/", 1)[-1]
        item = queues[path].pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    session.get.side_effect = get
    return session


def no_wait_policy(attempts=3):
    return BackoffPolicy(attempts=attempts, initial_delay=0, jitter_fraction=0)


# ============================================================================
# LEDGER CLIENT TESTS
# ============================================================================

class TestLedgerClient:
    """Tests for REST reads."""

    def test_fetch(self):
        session = create_session({
            "topology": [create_response(TOPOLOGY)],
            "telemetry": [create_response({"sample_sets": [create_sample_set()], "next_cursor": None})],
            "weights": [create_response({"weights": {"chi": 1, "nyc": 2}})],
        })
        client = LedgerClient("https://ledger.test/api/", session=session, backoff=no_wait_policy())
        fetched = client.fetch(0, 10_000)

        assert fetched.topology.device("dev-a").code == "CHI01"
        assert fetched.topology.device("dev-b").code == "NYC01"
        assert len(fetched.sample_sets) == 1
        assert fetched.sample_sets[0].samples[-1].rtt_us is None
        assert fetched.location_weights == {"chi": 1, "nyc": 2}

        first_url = session.get.call_args_list[0][0][0]
        assert first_url == "https://ledger.test/api/topology"

    def test_telemetry_pagination(self):
        session = create_session({
            "telemetry": [
                create_response({"sample_sets": [create_sample_set()], "next_cursor": "page-2"}),
                create_response({"sample_sets": [create_sample_set(start=4000)], "next_cursor": None}),
            ],
        })
        client = LedgerClient("https://ledger.test", session=session, backoff=no_wait_policy())
        sample_sets = client.fetch_telemetry(0, 10_000)

        assert len(sample_sets) == 2
        second_params = session.get.call_args_list[1][1]["params"]
        assert second_params == {"after_us": 0, "before_us": 10_000, "cursor": "page-2"}

    def test_bare_weights_mapping(self):
        session = create_session({"weights": [create_response({"chi": 3})]})
        client = LedgerClient("https://ledger.test", session=session)
        assert client.fetch_weights() == {"chi": 3}

    def test_malformed_topology(self):
        session = create_session({"topology": [create_response(["not", "an", "object"])]})
        with pytest.raises(LedgerError):
            LedgerClient("https://ledger.test", session=session).fetch_topology()

    def test_retries_transient_errors(self):
        session = create_session({
            "weights": [
                requests.ConnectionError("reset"),
                create_response(status_error=requests.HTTPError("503")),
                create_response({"weights": {"chi": 1}}),
            ],
        })
        client = LedgerClient("https://ledger.test", session=session, backoff=no_wait_policy(3))
        assert client.fetch_weights() == {"chi": 1}
        assert session.get.call_count == 3

    def test_gives_up(self):
        session = create_session({"weights": [requests.ConnectionError("down")] * 3})
        client = LedgerClient("https://ledger.test", session=session, backoff=no_wait_policy(3))
        with pytest.raises(LedgerError, match="after 3 attempts"):
            client.fetch_weights()


# ============================================================================
# SNAPSHOT TESTS
# ============================================================================

class TestSnapshot:
    """Tests for offline snapshot sources."""

    def test_parse(self):
        fetched = parse_snapshot({
            "topology": TOPOLOGY,
            "telemetry": [create_sample_set()],
            "location_weights": {"chi": 1},
            "third_party": {"source": "stake-oracle"},
        })
        assert fetched.third_party == {"source": "stake-oracle"}
        assert fetched.location_weights == {"chi": 1}

    def test_parse_rejects_bad_weights(self):
        with pytest.raises(InputError):
            parse_snapshot({"topology": TOPOLOGY, "location_weights": [1, 2]})

    def test_file_source(self, tmp_path):
        path = tmp_path / "snapshot.json"
        path.write_text(json.dumps({"topology": TOPOLOGY, "telemetry": [create_sample_set()]}))
        fetched = SnapshotFileSource(str(path)).fetch(0, 10_000)
        assert len(fetched.sample_sets) == 1
        assert fetched.location_weights == {}

    def test_missing_file(self, tmp_path):
        with pytest.raises(LedgerError):
            SnapshotFileSource(str(tmp_path / "missing.json")).fetch(0, 1)


# ============================================================================
# RETRY / CIRCUIT BREAKER TESTS
# ============================================================================

class TestCircuitBreaker:
    """Tests for circuit breaker state transitions."""

    def test_opens_after_threshold(self):
        breaker = CircuitBreaker("test", CircuitBreakerConfig(failure_threshold=2))
        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        assert not breaker.is_available()

    def test_half_open_after_timeout(self):
        now = [0.0]
        breaker = CircuitBreaker(
            "test",
            CircuitBreakerConfig(failure_threshold=1, timeout_seconds=10),
            clock=lambda: now[0],
        )
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        now[0] = 10.0
        assert breaker.state == CircuitState.HALF_OPEN
        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED

    def test_probe_failure_reopens(self):
        now = [0.0]
        breaker = CircuitBreaker(
            "test",
            CircuitBreakerConfig(failure_threshold=1, timeout_seconds=10),
            clock=lambda: now[0],
        )
        breaker.record_failure()
        now[0] = 11.0
        assert breaker.state == CircuitState.HALF_OPEN
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN

    def test_success_resets_failures(self):
        breaker = CircuitBreaker("test", CircuitBreakerConfig(failure_threshold=2))
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED


class TestCallWithRetry:
    """Tests for the retry loop."""

    def test_open_circuit_blocks_calls(self):
        breaker = CircuitBreaker("ledger", CircuitBreakerConfig(failure_threshold=1))
        operation = MagicMock(side_effect=ValueError("bad"))

        with pytest.raises(LedgerError):
            call_with_retry(operation, breaker, no_wait_policy(4), sleep=lambda s: None)
        assert operation.call_count == 1

        with pytest.raises(LedgerError, match="open"):
            call_with_retry(operation, breaker, no_wait_policy(4), sleep=lambda s: None)
        assert operation.call_count == 1

    def test_backoff_waits(self):
        waits = []
        operation = MagicMock(side_effect=[ValueError("1"), ValueError("2"), "ok"])
        policy = BackoffPolicy(attempts=4, initial_delay=1.0, multiplier=2.0, jitter_fraction=0)
        result = call_with_retry(operation, CircuitBreaker("t"), policy, sleep=waits.append)
        assert result == "ok"
        assert waits == [1.0, 2.0]

    def test_no_wait_after_last_attempt(self):
        waits = []
        operation = MagicMock(side_effect=ValueError("down"))
        policy = BackoffPolicy(attempts=2, initial_delay=1.0, jitter_fraction=0)
        with pytest.raises(LedgerError, match="after 2 attempts"):
            call_with_retry(operation, CircuitBreaker("t"), policy, sleep=waits.append)
        assert waits == [1.0]

    def test_non_transient_error_propagates(self):
        operation = MagicMock(side_effect=KeyError("boom"))
        with pytest.raises(KeyError):
            call_with_retry(operation, CircuitBreaker("t"), no_wait_policy(), retry_on=(ValueError,))


class TestBackoffPolicy:
    """Tests for the wait schedule."""

    def test_waits_are_capped(self):
        policy = BackoffPolicy(attempts=6, initial_delay=1.0, max_delay=5.0, jitter_fraction=0)
        assert list(policy.waits()) == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_single_attempt_never_waits(self):
        assert list(BackoffPolicy(attempts=1).waits()) == []

    def test_jitter_stays_within_fraction(self):
        policy = BackoffPolicy(attempts=5, initial_delay=2.0, max_delay=2.0, jitter_fraction=0.25)
        waits = list(policy.waits(random.Random(7)))
        assert len(waits) == 4
        assert all(1.5 <= w <= 2.5 for w in waits)
        assert waits == list(policy.waits(random.Random(7)))

    @pytest.mark.parametrize("kwargs", [
        {"attempts": 0},
        {"initial_delay": -1.0},
        {"initial_delay": 10.0, "max_delay": 1.0},
        {"multiplier": 0.5},
        {"jitter_fraction": 1.0},
    ])
    def test_invalid_policy(self, kwargs):
        with pytest.raises(ConfigError):
            BackoffPolicy(**kwargs)
