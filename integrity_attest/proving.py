"""
Verdict derivation proof requests.

Decides whether a checkpoint warrants a zero-knowledge proof that its
verdict was derived correctly from the committed inputs, and shapes the
request sent to the external prover. The prover owns the whole proof
lifecycle (pending -> proving -> completed | failed); this module only
mints the id and the request body.

The absence of a proof never invalidates a certificate, so sampling is a
cost/coverage trade-off rather than a security boundary.
"""

import random
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, Mapping, Optional

from .certificate import VerdictDerivation
from .util import random_id

BOUNDARY_VIOLATION = "boundary_violation"
DEFAULT_SAMPLE_RATE = 0.10
PROOF_ID_PREFIX = "prf"
PROOF_TYPE = "risc-zero-stark"
PROOF_METHOD = "RISC-Zero-STARK"
PROOF_STATUSES = ("pending", "proving", "completed", "failed")
ESTIMATED_COMPLETION_MS = 5000


def should_prove(
    checkpoint: Any,
    sample_rate: float = DEFAULT_SAMPLE_RATE,
    rng: Optional[Callable[[], float]] = None,
) -> bool:
    """
    Boundary violations are always proven; everything else is sampled
    uniformly at sample_rate.

    Args:
        checkpoint: A mapping or object carrying a verdict
        sample_rate: Probability of proving a non-violation
        rng: Source of uniform floats in [0, 1); defaults to random.random
    """
    if isinstance(checkpoint, Mapping):
        verdict = checkpoint.get("verdict")
    else:
        verdict = getattr(checkpoint, "verdict", None)
    if verdict == BOUNDARY_VIOLATION:
        return True
    draw = rng() if rng is not None else random.random()
    return draw < sample_rate


def generate_proof_id() -> str:
    return random_id(PROOF_ID_PREFIX)


@dataclass(frozen=True)
class ProofRequest:
    """Minimum data the prover needs to reproduce the verdict computation."""
    proof_id: str
    checkpoint_id: str
    analysis_json: str
    thinking_hash: str
    card_hash: str
    values_hash: str
    model: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def build_proof_request(
    checkpoint_id: str,
    thinking_block_hash: str,
    model: str,
    analysis_json: Optional[str] = None,
    card_hash: Optional[str] = None,
    values_hash: Optional[str] = None,
    proof_id: Optional[str] = None,
) -> ProofRequest:
    return ProofRequest(
        proof_id=proof_id or generate_proof_id(),
        checkpoint_id=checkpoint_id,
        analysis_json=analysis_json or "",
        thinking_hash=thinking_block_hash,
        card_hash=card_hash or "",
        values_hash=values_hash or "",
        model=model or "",
    )


def verdict_derivation_from_proof(row: Optional[Mapping[str, Any]]) -> Optional[VerdictDerivation]:
    """Certificate section for a completed proof row, or None."""
    if not row or row.get("status") != "completed":
        return None
    if not row.get("receipt") or not row.get("image_id"):
        return None
    return VerdictDerivation(
        method=PROOF_METHOD,
        image_id=row["image_id"],
        receipt=row["receipt"],
        journal=row.get("journal") or "",
        verified_at=row.get("verified_at"),
    )
