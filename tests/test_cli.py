"""
Tests for linkrewards/cli.py
"""

import json
from datetime import datetime, timezone

import click
import pytest
from click.testing import CliRunner

from linkrewards.cli import cli, parse_time


# ============================================================================
# TEST DATA
# ============================================================================

NOW = datetime(2024, 1, 2, 0, 0, tzinfo=timezone.utc)
NOW_US = 1_704_153_600_000_000
BEFORE_US = 1996 * 1000


def create_snapshot(weights=None) -> dict:
    return {
        "topology": {
            "devices": {
                "dev-a": {"code": "A", "location": "chi", "operator": "op-a"},
                "dev-b": {"code": "B", "location": "chi", "operator": "op-b"},
            },
        },
        "telemetry": [{
            "origin_device_id": "dev-a",
            "target_device_id": "dev-b",
            "sampling_interval_us": 1000,
            "samples": [[i * 1000, 250] for i in range(1996)],
        }],
        "location_weights": weights or {"chi": 1},
    }


@pytest.fixture
def files(tmp_path):
    snapshot = tmp_path / "snapshot.json"
    snapshot.write_text(json.dumps(create_snapshot()))
    rewards = tmp_path / "rewards.json"
    rewards.write_text(json.dumps({"rewards": {"op-a": 600, "op-b": 400}, "solver_version": "fixture"}))
    return {"snapshot": str(snapshot), "rewards": str(rewards), "out": str(tmp_path / "out")}


def calculate(runner, files, *extra):
    return runner.invoke(cli, [
        "calculate",
        "--after", "0",
        "--before", str(BEFORE_US),
        "--reward-pool", "1000",
        "--snapshot", files["snapshot"],
        "--rewards-file", files["rewards"],
        *extra,
    ])


# ============================================================================
# TIME PARSING TESTS
# ============================================================================

class TestParseTime:
    """Tests for window boundary parsing."""

    def test_microseconds(self):
        assert parse_time("1996000", NOW) == 1_996_000

    def test_now(self):
        assert parse_time("now", NOW) == NOW_US

    @pytest.mark.parametrize("text,seconds", [
        ("2 hours ago", 7200),
        ("30m ago", 1800),
        ("1 day ago", 86_400),
        ("1w ago", 604_800),
    ])
    def test_relative(self, text, seconds):
        assert parse_time(text, NOW) == NOW_US - seconds * 1_000_000

    def test_rfc3339(self):
        assert parse_time("2024-01-01T00:00:00Z", NOW) == 1_704_067_200_000_000
        assert parse_time("2024-01-01T01:00:00+01:00", NOW) == 1_704_067_200_000_000

    def test_naive_is_utc(self):
        assert parse_time("2024-01-01T00:00:00", NOW) == 1_704_067_200_000_000

    @pytest.mark.parametrize("text", ["yesterday", "2 fortnights ago", ""])
    def test_invalid(self, text):
        with pytest.raises(click.BadParameter):
            parse_time(text, NOW)


# ============================================================================
# COMMAND TESTS
# ============================================================================

class TestCalculate:
    """Tests for the calculate command."""

    def test_success(self, files):
        result = calculate(CliRunner(), files, "--output-dir", files["out"])
        assert result.exit_code == 0, result.output
        assert '"merkle_root"' in result.output

        with open(f"{files['out']}/{BEFORE_US}/verification_packet.json") as f:
            packet = json.load(f)
        assert packet["epoch"] == BEFORE_US
        assert packet["rewards"] == {"op-a": 600, "op-b": 400}
        assert packet["solver_version"] == "fixture"

    def test_metrics_flag(self, files):
        result = calculate(CliRunner(), files, "--metrics")
        assert result.exit_code == 0, result.output
        assert "linkrewards_runs_total" in result.output

    def test_requires_one_source(self, files):
        result = CliRunner().invoke(cli, [
            "calculate", "--after", "0", "--before", "10", "--reward-pool", "1",
            "--rewards-file", files["rewards"],
        ])
        assert result.exit_code != 0
        assert "--snapshot or --ledger-url" in result.output

    def test_reversed_window(self, files):
        result = CliRunner().invoke(cli, [
            "calculate", "--after", "10", "--before", "5", "--reward-pool", "1",
            "--snapshot", files["snapshot"], "--rewards-file", files["rewards"],
        ])
        assert result.exit_code != 0

    def test_pipeline_failure(self, files, tmp_path):
        rewards = tmp_path / "greedy.json"
        rewards.write_text(json.dumps({"op-a": 5000}))
        result = CliRunner().invoke(cli, [
            "calculate", "--after", "0", "--before", str(BEFORE_US), "--reward-pool", "1000",
            "--snapshot", files["snapshot"], "--rewards-file", str(rewards),
        ])
        assert result.exit_code == 1
        assert "run failed at stage 'allocated'" in result.output

    def test_existing_epoch(self, files):
        runner = CliRunner()
        assert calculate(runner, files, "--output-dir", files["out"]).exit_code == 0
        assert calculate(runner, files, "--output-dir", files["out"]).exit_code != 0
        assert calculate(runner, files, "--output-dir", files["out"], "--overwrite").exit_code == 0


class TestVerifyProof:
    """Tests for the verify-proof command."""

    @pytest.fixture
    def epoch_dir(self, files):
        assert calculate(CliRunner(), files, "--output-dir", files["out"]).exit_code == 0
        return f"{files['out']}/{BEFORE_US}"

    def test_amount_from_packet(self, epoch_dir):
        result = CliRunner().invoke(cli, [
            "verify-proof",
            "--commitment", f"{epoch_dir}/merkle_commitment.json",
            "--operator", "op-a",
            "--packet", f"{epoch_dir}/verification_packet.json",
        ])
        assert result.exit_code == 0, result.output
        assert "OK: op-a = 600" in result.output

    def test_commitment_file_holds_sibling_lists(self, epoch_dir):
        with open(f"{epoch_dir}/merkle_commitment.json") as f:
            data = json.load(f)
        assert data["operators"] == ["op-a", "op-b"]
        assert data["proofs"]["op-a"] == [data["leaves"][1]]
        assert data["proofs"]["op-b"] == [data["leaves"][0]]

    def test_wrong_amount(self, epoch_dir):
        result = CliRunner().invoke(cli, [
            "verify-proof",
            "--commitment", f"{epoch_dir}/merkle_commitment.json",
            "--operator", "op-a",
            "--amount", "601",
        ])
        assert result.exit_code == 1
        assert "FAILED" in result.output

    def test_unknown_operator(self, epoch_dir):
        result = CliRunner().invoke(cli, [
            "verify-proof",
            "--commitment", f"{epoch_dir}/merkle_commitment.json",
            "--operator", "op-z",
            "--amount", "1",
        ])
        assert result.exit_code != 0
        assert "No proof for operator op-z" in result.output


class TestInspect:
    """Tests for the inspect command."""

    def test_prints_stats(self, files):
        result = CliRunner().invoke(cli, [
            "inspect", "--snapshot", files["snapshot"], "--after", "0", "--before", str(BEFORE_US),
        ])
        assert result.exit_code == 0, result.output
        assert '"origin_code": "A"' in result.output
        assert '"sample_count": 1996' in result.output


def test_version():
    result = CliRunner().invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert "linkrewards" in result.output
