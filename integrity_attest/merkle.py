"""
Per-agent append-only Merkle tree.

The tree is never persisted as internal nodes: it is rebuilt from the
authoritative ordered leaf list every time a root or proof is needed,
so the root is always a pure function of the stored leaves.

Construction:
- Leaf hash: SHA-256(CJE({chain_hash, checkpoint_id, thinking_block_hash,
  timestamp, verdict}))
- Node hash: SHA-256(left_hex || right_hex)
- A trailing odd node at any level is promoted unchanged to the next
  level (no duplication); it contributes no sibling to a proof at that
  level
- Empty tree root: SHA-256(b"")
"""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .canonicalization import canonicalize
from .errors import InputError, MerkleIndexError
from .hashing import sha256_hex
from .util import constant_time_compare

LEFT = "left"
RIGHT = "right"
EMPTY_TREE_ROOT = sha256_hex(b"")


@dataclass(frozen=True)
class ProofSibling:
    hash: str
    position: str  # position of the sibling relative to the running hash

    def to_dict(self) -> Dict[str, str]:
        return {"hash": self.hash, "position": self.position}


@dataclass
class InclusionProof:
    leaf_hash: str
    leaf_index: int
    siblings: List[ProofSibling]
    root: str
    tree_size: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "leaf_hash": self.leaf_hash,
            "leaf_index": self.leaf_index,
            "siblings": [s.to_dict() for s in self.siblings],
            "root": self.root,
            "tree_size": self.tree_size,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'InclusionProof':
        """
        Parse a proof from its wire form.

        Accepts the sibling list under "siblings" or, as certificates
        carry it, under "inclusion_proof".
        """
        try:
            raw_siblings = data.get("siblings", data.get("inclusion_proof"))
            siblings = [ProofSibling(hash=s["hash"], position=s["position"]) for s in raw_siblings]
            return cls(
                leaf_hash=data["leaf_hash"],
                leaf_index=int(data["leaf_index"]),
                siblings=siblings,
                root=data["root"],
                tree_size=int(data["tree_size"]),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise InputError(f"malformed inclusion proof: {e}") from e


@dataclass
class MerkleTreeState:
    root: str
    depth: int
    leaf_count: int
    leaf_hashes: List[str] = field(default_factory=list)


def compute_leaf_hash(
    checkpoint_id: str,
    verdict: str,
    thinking_block_hash: str,
    chain_hash: str,
    timestamp: str,
) -> str:
    """Hash the identity-bearing fields of a checkpoint into a leaf."""
    return sha256_hex(canonicalize({
        "chain_hash": chain_hash,
        "checkpoint_id": checkpoint_id,
        "thinking_block_hash": thinking_block_hash,
        "timestamp": timestamp,
        "verdict": verdict,
    }))


def compute_node_hash(left: str, right: str) -> str:
    return sha256_hex(left + right)


def _next_level(level: Sequence[str]) -> List[str]:
    nxt = [compute_node_hash(level[i], level[i + 1]) for i in range(0, len(level) - 1, 2)]
    if len(level) % 2 == 1:
        nxt.append(level[-1])
    return nxt


def compute_merkle_root(leaf_hashes: Sequence[str]) -> str:
    """Root over the full ordered leaf list."""
    if not leaf_hashes:
        return EMPTY_TREE_ROOT
    level = list(leaf_hashes)
    while len(level) > 1:
        level = _next_level(level)
    return level[0]


def compute_tree_depth(leaf_count: int) -> int:
    return 0 if leaf_count <= 1 else math.ceil(math.log2(leaf_count))


def build_tree_state(leaf_hashes: Sequence[str]) -> MerkleTreeState:
    leaves = list(leaf_hashes)
    return MerkleTreeState(
        root=compute_merkle_root(leaves),
        depth=compute_tree_depth(len(leaves)),
        leaf_count=len(leaves),
        leaf_hashes=leaves,
    )


def generate_inclusion_proof(leaf_hashes: Sequence[str], leaf_index: int) -> InclusionProof:
    """
    Build the tree bottom-up over all leaves and record the sibling path
    from leaf_index to the root.

    Raises:
        MerkleIndexError: If the tree is empty or leaf_index is out of range
    """
    if not leaf_hashes:
        raise MerkleIndexError("Cannot generate proof for empty tree.")
    if isinstance(leaf_index, bool) or not isinstance(leaf_index, int) \
            or leaf_index < 0 or leaf_index >= len(leaf_hashes):
        raise MerkleIndexError(
            f"leaf_index {leaf_index} out of range (tree has {len(leaf_hashes)} leaves)."
        )

    siblings: List[ProofSibling] = []
    level = list(leaf_hashes)
    idx = leaf_index

    while len(level) > 1:
        if idx % 2 == 0:
            if idx + 1 < len(level):
                siblings.append(ProofSibling(hash=level[idx + 1], position=RIGHT))
            # else: promoted node, no sibling at this level
        else:
            siblings.append(ProofSibling(hash=level[idx - 1], position=LEFT))
        level = _next_level(level)
        idx //= 2

    return InclusionProof(
        leaf_hash=leaf_hashes[leaf_index],
        leaf_index=leaf_index,
        siblings=siblings,
        root=level[0],
        tree_size=len(leaf_hashes),
    )


def compute_root_from_proof(leaf_hash: str, siblings: Sequence[ProofSibling]) -> Optional[str]:
    """Fold the sibling path over leaf_hash; None if a sibling is malformed."""
    current = leaf_hash
    for sibling in siblings:
        if not isinstance(sibling.hash, str):
            return None
        if sibling.position == LEFT:
            current = compute_node_hash(sibling.hash, current)
        elif sibling.position == RIGHT:
            current = compute_node_hash(current, sibling.hash)
        else:
            return None
    return current


def verify_inclusion_proof(proof: InclusionProof, expected_leaf_hash: str, expected_root: str) -> bool:
    """
    True only if proof.leaf_hash equals expected_leaf_hash and re-hashing
    it up through the siblings reproduces expected_root.
    """
    if not all(isinstance(v, str) for v in (proof.leaf_hash, expected_leaf_hash, expected_root)):
        return False
    if not constant_time_compare(proof.leaf_hash, expected_leaf_hash):
        return False
    recomputed = compute_root_from_proof(proof.leaf_hash, proof.siblings)
    if recomputed is None:
        return False
    return constant_time_compare(recomputed, expected_root)
