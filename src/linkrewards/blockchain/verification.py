"""
linkrewards/blockchain/verification.py

Verification packet: binds a run's input artifacts (by content hash) to
its reward set (by value and by Merkle root).

Anyone holding the published inputs can recompute every hash, and anyone
holding only the root can check a single reward entry with its proof.

Usage:
    from linkrewards.blockchain.verification import StageArtifacts, VerificationCommitter

    committer = VerificationCommitter(solver_version=oracle.version)
    packet, commitment = committer.commit(artifacts, rewards)
    print(packet.fingerprint())
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Tuple

from ..config import PACKET_SCHEMA_VERSION, SOFTWARE_VERSION, RewardConfig
from ..errors import CommitmentError, LinkRewardsError
from .canonical import hash_artifact
from .merkle import MerkleCommitment, build_commitment

logger = logging.getLogger("linkrewards.blockchain.verification")


def format_utc(moment: datetime) -> str:
    """RFC 3339 UTC timestamp with second precision."""
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class StageArtifacts:
    """Canonical artifacts of one run that the packet commits to."""
    config: RewardConfig
    topology: Any
    telemetry: Any
    allocation_input: Any
    third_party: Optional[Any] = None


@dataclass(frozen=True)
class VerificationPacket:
    """Self-describing commitment artifact of one run."""
    packet_schema_version: str
    software_version: str
    solver_version: str
    processing_timestamp_utc: str
    epoch: int
    after_us: int
    before_us: int
    config_hash: str
    network_data_hash: str
    telemetry_data_hash: str
    allocation_input_hash: str
    reward_pool: int
    rewards: Mapping[str, int]
    merkle_root: str
    third_party_data_hash: Optional[str] = None
    solver_parameters: Mapping[str, Optional[str]] = field(default_factory=dict)
    empty_window: bool = False

    def to_dict(self) -> dict:
        return {
            "packet_schema_version": self.packet_schema_version,
            "software_version": self.software_version,
            "solver_version": self.solver_version,
            "processing_timestamp_utc": self.processing_timestamp_utc,
            "epoch": self.epoch,
            "window": {"after_us": self.after_us, "before_us": self.before_us},
            "config_hash": self.config_hash,
            "network_data_hash": self.network_data_hash,
            "telemetry_data_hash": self.telemetry_data_hash,
            "third_party_data_hash": self.third_party_data_hash,
            "allocation_input_hash": self.allocation_input_hash,
            "reward_pool": self.reward_pool,
            "rewards": {op: self.rewards[op] for op in sorted(self.rewards)},
            "merkle_root": self.merkle_root,
            "solver_parameters": dict(self.solver_parameters),
            "empty_window": self.empty_window,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "VerificationPacket":
        window = data.get("window", {})
        return cls(
            packet_schema_version=data["packet_schema_version"],
            software_version=data["software_version"],
            solver_version=data["solver_version"],
            processing_timestamp_utc=data["processing_timestamp_utc"],
            epoch=data["epoch"],
            after_us=window["after_us"],
            before_us=window["before_us"],
            config_hash=data["config_hash"],
            network_data_hash=data["network_data_hash"],
            telemetry_data_hash=data["telemetry_data_hash"],
            allocation_input_hash=data["allocation_input_hash"],
            reward_pool=data["reward_pool"],
            rewards=dict(data.get("rewards", {})),
            merkle_root=data["merkle_root"],
            third_party_data_hash=data.get("third_party_data_hash"),
            solver_parameters=dict(data.get("solver_parameters", {})),
            empty_window=bool(data.get("empty_window", False)),
        )

    def fingerprint(self) -> str:
        """SHA-256 of the canonical packet."""
        return hash_artifact(self.to_dict())


class VerificationCommitter:
    """Hashes stage artifacts and commits to the reward set."""

    def __init__(self, solver_version: str = "unknown", software_version: str = SOFTWARE_VERSION):
        self.solver_version = solver_version
        self.software_version = software_version

    def hash_artifacts(self, artifacts: StageArtifacts) -> Dict[str, Optional[str]]:
        """Content hash of every artifact, keyed by packet field name."""
        return {
            "config_hash": hash_artifact(artifacts.config),
            "network_data_hash": hash_artifact(artifacts.topology),
            "telemetry_data_hash": hash_artifact(artifacts.telemetry),
            "allocation_input_hash": hash_artifact(artifacts.allocation_input),
            "third_party_data_hash": (
                hash_artifact(artifacts.third_party) if artifacts.third_party is not None else None
            ),
        }

    def commit(
        self,
        artifacts: StageArtifacts,
        rewards: Mapping[str, int],
        epoch: int,
        after_us: int,
        before_us: int,
        reward_pool: int,
        processed_at: Optional[datetime] = None,
        empty_window: bool = False,
    ) -> Tuple[VerificationPacket, MerkleCommitment]:
        """
        Produce the verification packet and Merkle commitment.

        Args:
            artifacts: Stage artifacts to hash
            rewards: Operator identity -> integral amount
            epoch: Epoch identity of the run
            after_us: Window start
            before_us: Window end
            reward_pool: Pool the rewards were drawn from
            processed_at: Processing time to stamp (defaults to now)
            empty_window: Whether the window held no samples

        Returns:
            (VerificationPacket, MerkleCommitment)

        Raises:
            CommitmentError: If any artifact cannot be hashed or the tree
                cannot be built
        """
        try:
            hashes = self.hash_artifacts(artifacts)
            commitment = build_commitment(rewards)
        except CommitmentError:
            raise
        except (LinkRewardsError, TypeError, ValueError) as e:
            raise CommitmentError(f"Commitment failed: {e}") from e

        packet = VerificationPacket(
            packet_schema_version=PACKET_SCHEMA_VERSION,
            software_version=self.software_version,
            solver_version=self.solver_version,
            processing_timestamp_utc=format_utc(processed_at or datetime.now(timezone.utc)),
            epoch=epoch,
            after_us=after_us,
            before_us=before_us,
            reward_pool=reward_pool,
            rewards={op: rewards[op] for op in sorted(rewards)},
            merkle_root=commitment.root,
            solver_parameters=artifacts.config.solver.to_dict(),
            empty_window=empty_window,
            **hashes,
        )
        logger.info(
            f"Verification packet for epoch {epoch}: root={commitment.root[:16]}..., "
            f"fingerprint={packet.fingerprint()[:16]}..."
        )
        return packet, commitment
