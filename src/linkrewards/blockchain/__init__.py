"""
linkrewards/blockchain/

Commitments binding a run's inputs to its reward set.
"""

from .canonical import canonical_json, hash_artifact
from .merkle import MerkleTree, MerkleCommitment, EMPTY_ROOT, build_commitment, verify_reward_claim
from .verification import VerificationCommitter, VerificationPacket, StageArtifacts

__all__ = [
    "canonical_json",
    "hash_artifact",
    "MerkleTree",
    "MerkleCommitment",
    "EMPTY_ROOT",
    "build_commitment",
    "verify_reward_claim",
    "VerificationCommitter",
    "VerificationPacket",
    "StageArtifacts",
]
