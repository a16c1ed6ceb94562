"""
linkrewards/blockchain/merkle.py

Merkle tree over reward entries, with per-operator inclusion proofs.

Conventions:
- Leaf = sha256("<operator>:<amount>") as hex; leaves are ordered by
  operator identity, so the root follows from the reward mapping alone.
- Parent = sha256(left_hex + right_hex) as hex.
- A level with an odd count pairs its last node with itself.
- The root of an empty leaf set is sha256(b"") (EMPTY_ROOT).
- A proof is the list of sibling hashes from the leaf level up. The side
  each sibling sits on follows from the leaf index: at every level an even
  index is a left child, an odd index a right child.

Usage:
    from linkrewards.blockchain.merkle import build_commitment, verify_reward_claim

    commitment = build_commitment(distribution.rewards)
    proof = commitment.proofs["operator-a"]
    index = commitment.leaf_index("operator-a")
    assert verify_reward_claim("operator-a", 1000, proof, commitment.root, index)
"""

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

from ..errors import CommitmentError

logger = logging.getLogger("linkrewards.blockchain.merkle")

EMPTY_ROOT = hashlib.sha256(b"").hexdigest()

Proof = List[str]


def _parent(left: str, right: str) -> str:
    return hashlib.sha256((left + right).encode()).hexdigest()


class MerkleTree:
    """
    Build and verify merkle trees for reward verification.
    """

    def __init__(self, leaves: Optional[List[str]] = None):
        """
        Args:
            leaves: Leaf hashes (hex strings) in canonical order
        """
        self.leaves = list(leaves or [])
        self.levels: List[List[str]] = []
        self.root: str = EMPTY_ROOT
        self._build()

    def _build(self) -> None:
        """Build every level bottom-up."""
        if not self.leaves:
            self.levels = []
            self.root = EMPTY_ROOT
            return

        current_level = list(self.leaves)
        self.levels = [current_level]
        while len(current_level) > 1:
            next_level = []
            for i in range(0, len(current_level), 2):
                left = current_level[i]
                right = current_level[i + 1] if i + 1 < len(current_level) else left
                next_level.append(_parent(left, right))
            self.levels.append(next_level)
            current_level = next_level

        self.root = current_level[0]

    def get_proof(self, leaf_index: int) -> Proof:
        """
        Get merkle proof for a leaf.

        Args:
            leaf_index: Index of leaf in leaves list

        Returns:
            Sibling hashes, leaf level first

        Raises:
            CommitmentError: If the index is out of range
        """
        if not 0 <= leaf_index < len(self.leaves):
            raise CommitmentError(f"Leaf index {leaf_index} out of range ({len(self.leaves)} leaves)")

        proof = []
        idx = leaf_index
        for level in self.levels[:-1]:
            sibling_idx = idx + 1 if idx % 2 == 0 else idx - 1
            # Odd level: the last node is its own sibling
            proof.append(level[sibling_idx] if sibling_idx < len(level) else level[idx])
            idx //= 2
        return proof

    @staticmethod
    def verify_proof(leaf_hash: str, merkle_root: str, proof: Proof, leaf_index: int) -> bool:
        """
        Verify a merkle proof.

        Args:
            leaf_hash: Hash of the leaf being verified
            merkle_root: Expected root hash
            proof: Sibling hashes, leaf level first
            leaf_index: Position of the leaf in the ordered leaves

        Returns:
            True if proof is valid
        """
        if leaf_index < 0:
            return False
        current_hash = leaf_hash
        idx = leaf_index
        for sibling_hash in proof:
            if idx % 2 == 0:
                current_hash = _parent(current_hash, sibling_hash)
            else:
                current_hash = _parent(sibling_hash, current_hash)
            idx //= 2
        # A leftover index means the path is too short for that position
        return idx == 0 and current_hash == merkle_root

    @staticmethod
    def hash_reward_entry(operator: str, amount: int) -> str:
        """Create deterministic hash for a reward entry."""
        return hashlib.sha256(f"{operator}:{amount}".encode()).hexdigest()


@dataclass(frozen=True)
class MerkleCommitment:
    """Root, ordered leaves and inclusion proofs of a reward set."""
    root: str
    leaves: Tuple[str, ...] = ()
    operators: Tuple[str, ...] = ()
    proofs: Mapping[str, Proof] = field(default_factory=dict)

    def leaf_index(self, operator: str) -> int:
        """Position of the operator's leaf; raises CommitmentError if absent."""
        try:
            return self.operators.index(operator)
        except ValueError:
            raise CommitmentError(f"No leaf for operator {operator}")

    def to_dict(self) -> dict:
        return {
            "root": self.root,
            "leaves": list(self.leaves),
            "operators": list(self.operators),
            "proofs": {operator: list(self.proofs[operator]) for operator in sorted(self.proofs)},
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MerkleCommitment":
        return cls(
            root=data["root"],
            leaves=tuple(data.get("leaves", [])),
            operators=tuple(data.get("operators", [])),
            proofs={
                operator: list(proof)
                for operator, proof in data.get("proofs", {}).items()
            },
        )


def build_commitment(rewards: Mapping[str, int]) -> MerkleCommitment:
    """
    Commit to a reward mapping.

    Args:
        rewards: Operator identity -> integral amount

    Returns:
        MerkleCommitment with a proof for every operator

    Raises:
        CommitmentError: On a malformed entry
    """
    operators = sorted(rewards)
    leaves = []
    for operator in operators:
        amount = rewards[operator]
        if not isinstance(operator, str) or isinstance(amount, bool) or not isinstance(amount, int):
            raise CommitmentError(f"Cannot commit reward entry {operator!r}: {amount!r}")
        leaves.append(MerkleTree.hash_reward_entry(operator, amount))

    tree = MerkleTree(leaves)
    proofs: Dict[str, Proof] = {
        operator: tree.get_proof(i) for i, operator in enumerate(operators)
    }

    # An unverifiable commitment must never leave this function
    for i, operator in enumerate(operators):
        if not MerkleTree.verify_proof(leaves[i], tree.root, proofs[operator], i):
            raise CommitmentError(f"Inclusion proof for {operator} does not verify")

    logger.info(f"Committed {len(leaves)} reward entries, root={tree.root[:16]}...")
    return MerkleCommitment(
        root=tree.root,
        leaves=tuple(leaves),
        operators=tuple(operators),
        proofs=proofs,
    )


def verify_reward_claim(
    operator: str,
    amount: int,
    proof: Proof,
    merkle_root: str,
    leaf_index: int,
) -> bool:
    """Check one reward entry against a published root."""
    leaf = MerkleTree.hash_reward_entry(operator, amount)
    return MerkleTree.verify_proof(leaf, merkle_root, proof, leaf_index)
