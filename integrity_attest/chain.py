"""
Hash chain linking.

Each checkpoint carries a chain hash binding it to the agent's previous
checkpoint, forming a tamper-evident history per agent:

    chain_hash = SHA-256(CJE({
        prev_chain_hash, checkpoint_id, verdict,
        thinking_block_hash, input_commitment, timestamp
    }))

prev_chain_hash is null and chain_position is 0 exactly for an agent's
first checkpoint.
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional

from .canonicalization import canonicalize
from .hashing import sha256_hex
from .util import constant_time_compare


@dataclass(frozen=True)
class ChainInput:
    prev_chain_hash: Optional[str]
    checkpoint_id: str
    verdict: str
    thinking_block_hash: str
    input_commitment: str
    timestamp: str


@dataclass(frozen=True)
class ChainLink:
    """A stored chain link, as returned by the store for one checkpoint."""
    checkpoint_id: str
    verdict: str
    thinking_block_hash: str
    input_commitment: str
    timestamp: str
    chain_hash: str
    prev_chain_hash: Optional[str]
    chain_position: int

    def to_input(self) -> ChainInput:
        return ChainInput(
            prev_chain_hash=self.prev_chain_hash,
            checkpoint_id=self.checkpoint_id,
            verdict=self.verdict,
            thinking_block_hash=self.thinking_block_hash,
            input_commitment=self.input_commitment,
            timestamp=self.timestamp,
        )


@dataclass
class ChainVerificationResult:
    valid: bool
    links_verified: int
    details: str
    broken_at: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def compute_chain_hash(
    prev_chain_hash: Optional[str],
    checkpoint_id: str,
    verdict: str,
    thinking_block_hash: str,
    input_commitment: str,
    timestamp: str,
) -> str:
    """
    Compute the chain hash for one checkpoint.

    Malformed inputs are not detected here: they simply produce a
    different hash. Callers are responsible for supplying the correct
    predecessor.
    """
    preimage = {
        "prev_chain_hash": prev_chain_hash,
        "checkpoint_id": checkpoint_id,
        "verdict": verdict,
        "thinking_block_hash": thinking_block_hash,
        "input_commitment": input_commitment,
        "timestamp": timestamp,
    }
    return sha256_hex(canonicalize(preimage))


def compute_chain_hash_for(link: ChainInput) -> str:
    return compute_chain_hash(
        link.prev_chain_hash,
        link.checkpoint_id,
        link.verdict,
        link.thinking_block_hash,
        link.input_commitment,
        link.timestamp,
    )


def next_chain_position(prev_position: Optional[int]) -> int:
    """Position for the checkpoint after prev_position (None means no predecessor)."""
    return 0 if prev_position is None else prev_position + 1


def verify_chain_link(link: ChainInput, expected_hash: str) -> bool:
    """Recompute a single link and compare it to the expected hash."""
    if not isinstance(expected_hash, str) or not expected_hash:
        return False
    return constant_time_compare(compute_chain_hash_for(link), expected_hash)


def verify_chain_sequence(links: List[ChainLink]) -> ChainVerificationResult:
    """
    Verify an ordered per-agent chain (oldest first).

    Checks that the first link is a genesis link, that every later link
    points at its predecessor's hash with position + 1, and that every
    stored hash recomputes. Stops at the first broken link.
    """
    if not links:
        return ChainVerificationResult(valid=True, links_verified=0,
                                       details="Empty chain; nothing to verify.")

    for i, link in enumerate(links):
        if i == 0:
            if link.prev_chain_hash is not None or link.chain_position != 0:
                return ChainVerificationResult(
                    valid=False, links_verified=0, broken_at=0,
                    details="First checkpoint must have prev_chain_hash null and position 0.",
                )
        else:
            prev = links[i - 1]
            if link.prev_chain_hash != prev.chain_hash:
                return ChainVerificationResult(
                    valid=False, links_verified=i, broken_at=i,
                    details=f"Chain broken at index {i}: prev_chain_hash does not match "
                            f"previous checkpoint's chain_hash.",
                )
            if link.chain_position != prev.chain_position + 1:
                return ChainVerificationResult(
                    valid=False, links_verified=i, broken_at=i,
                    details=f"Chain broken at index {i}: position {link.chain_position} "
                            f"does not follow {prev.chain_position}.",
                )

        if not verify_chain_link(link.to_input(), link.chain_hash):
            return ChainVerificationResult(
                valid=False, links_verified=i, broken_at=i,
                details=f"Chain broken at index {i}: recomputed chain_hash does not "
                        f"match stored chain_hash.",
            )

    return ChainVerificationResult(
        valid=True, links_verified=len(links),
        details=f"All {len(links)} links verified successfully.",
    )
