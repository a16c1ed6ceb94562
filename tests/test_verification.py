"""
Tests for linkrewards/blockchain/canonical.py and verification.py
"""

import json

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from linkrewards.blockchain.canonical import canonical_json, canonicalize, hash_artifact
from linkrewards.blockchain.merkle import EMPTY_ROOT
from linkrewards.blockchain.verification import (
    StageArtifacts,
    VerificationCommitter,
    VerificationPacket,
    format_utc,
)
from linkrewards.config import PACKET_SCHEMA_VERSION, SOFTWARE_VERSION, RewardConfig
from linkrewards.errors import CommitmentError
from linkrewards.protocol.statistics import StatMarker


PROCESSED_AT = datetime(2024, 3, 1, 12, 30, 15, 999, tzinfo=timezone.utc)


def create_artifacts(**overrides) -> StageArtifacts:
    values = {
        "config": RewardConfig(),
        "topology": {"devices": {"d1": {"code": "CHI01"}}},
        "telemetry": {"links": []},
        "allocation_input": {"private_links": [], "reward_pool": 100},
        "third_party": None,
    }
    values.update(overrides)
    return StageArtifacts(**values)


def commit(artifacts=None, rewards=None, **kwargs):
    committer = VerificationCommitter(solver_version="solver-1.2")
    return committer.commit(
        artifacts or create_artifacts(),
        rewards if rewards is not None else {"op-b": 20, "op-a": 10},
        epoch=2_000,
        after_us=1_000,
        before_us=2_000,
        reward_pool=100,
        processed_at=PROCESSED_AT,
        **kwargs,
    )


class TestCanonical:
    """Tests for canonical encoding."""

    def test_sorted_compact(self):
        assert canonical_json({"b": 1, "a": [1, 2]}) == b'{"a":[1,2],"b":1}'

    def test_decimal_and_marker(self):
        assert canonicalize({"x": Decimal("1.50"), "y": StatMarker.UNKNOWN}) == {
            "x": "1.50", "y": StatMarker.UNKNOWN.value,
        }

    def test_float_rejected(self):
        with pytest.raises(CommitmentError, match=r"\$\.a\[1\]"):
            canonical_json({"a": [1, 2.5]})

    def test_non_string_key_rejected(self):
        with pytest.raises(CommitmentError):
            canonical_json({1: "x"})

    def test_unsupported_type_rejected(self):
        with pytest.raises(CommitmentError):
            canonical_json({"a": object()})

    def test_hash_independent_of_key_order(self):
        assert hash_artifact({"a": 1, "b": 2}) == hash_artifact({"b": 2, "a": 1})


class TestVerificationCommitter:
    """Tests for packet assembly."""

    def test_packet_fields(self):
        packet, commitment = commit()
        assert packet.packet_schema_version == PACKET_SCHEMA_VERSION
        assert packet.software_version == SOFTWARE_VERSION
        assert packet.solver_version == "solver-1.2"
        assert packet.processing_timestamp_utc == "2024-03-01T12:30:15Z"
        assert packet.epoch == 2_000
        assert (packet.after_us, packet.before_us) == (1_000, 2_000)
        assert list(packet.rewards) == ["op-a", "op-b"]
        assert packet.merkle_root == commitment.root
        assert packet.third_party_data_hash is None
        assert packet.empty_window is False

    def test_hashes_match_artifacts(self):
        artifacts = create_artifacts()
        packet, _ = commit(artifacts)
        assert packet.config_hash == hash_artifact(artifacts.config)
        assert packet.network_data_hash == hash_artifact(artifacts.topology)
        assert packet.telemetry_data_hash == hash_artifact(artifacts.telemetry)
        assert packet.allocation_input_hash == hash_artifact(artifacts.allocation_input)

    def test_third_party_hash(self):
        packet, _ = commit(create_artifacts(third_party={"weights": {"chi": 1}}))
        assert packet.third_party_data_hash == hash_artifact({"weights": {"chi": 1}})

    def test_stable_across_runs(self):
        assert commit()[0].fingerprint() == commit()[0].fingerprint()

    def test_input_change_changes_hash(self):
        changed = create_artifacts(telemetry={"links": [1]})
        assert commit()[0].telemetry_data_hash != commit(changed)[0].telemetry_data_hash

    def test_config_change_changes_hash(self):
        changed = create_artifacts(config=RewardConfig(demand_multiplier=Decimal("20")))
        assert commit()[0].config_hash != commit(changed)[0].config_hash

    def test_float_artifact_rejected(self):
        with pytest.raises(CommitmentError):
            commit(create_artifacts(telemetry={"rtt": 1.5}))

    def test_empty_rewards(self):
        packet, commitment = commit(rewards={}, empty_window=True)
        assert packet.merkle_root == EMPTY_ROOT
        assert packet.empty_window is True
        assert commitment.proofs == {}

    def test_packet_dict_round_trip(self):
        packet, _ = commit()
        data = json.loads(canonical_json(packet))
        assert data["window"] == {"after_us": 1_000, "before_us": 2_000}
        assert VerificationPacket.from_dict(data) == packet

    def test_format_utc_converts_zone(self):
        moment = datetime(2024, 1, 1, 1, 0, tzinfo=timezone(timedelta(hours=1)))
        assert format_utc(moment) == "2024-01-01T00:00:00Z"
