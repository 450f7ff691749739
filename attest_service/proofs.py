"""
Verdict derivation proof requests.

Two entry points share one path (pending row, then dispatch):

- maybe_request_proof: runs after every attestation, applies the
  sampling policy and is fail-open. Nothing it does can fail or delay
  the checkpoint write.
- request_proof_for: the explicit, authenticated request. Returns the
  existing proof when there is one; store failures propagate so the
  caller gets a real error.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from integrity_attest.errors import ExternalServiceError
from integrity_attest.proving import (
    BOUNDARY_VIOLATION,
    ESTIMATED_COMPLETION_MS,
    PROOF_TYPE,
    build_proof_request,
    generate_proof_id,
    should_prove,
)

from .db import AttestationStore, CheckpointRecord
from .logging_config import audit_log
from .prover_client import ProofDispatcher

logger = logging.getLogger(__name__)

QUEUED = "queued"


@dataclass
class ProofRequestOutcome:
    proof_id: str
    status: str
    created: bool
    estimated_completion_ms: Optional[int] = None


def _enqueue(
    store: AttestationStore,
    dispatcher: Optional[ProofDispatcher],
    checkpoint: CheckpointRecord,
    reason: str,
) -> str:
    proof_id = generate_proof_id()
    store.insert_pending_proof(proof_id, checkpoint.checkpoint_id, PROOF_TYPE)
    if dispatcher is not None:
        dispatcher.submit(build_proof_request(
            checkpoint_id=checkpoint.checkpoint_id,
            thinking_block_hash=checkpoint.thinking_block_hash,
            model=checkpoint.analysis_model,
            analysis_json=checkpoint.analysis_json,
            card_hash=checkpoint.card_hash,
            values_hash=checkpoint.values_hash,
            proof_id=proof_id,
        ))
    audit_log.proof_requested(proof_id, checkpoint.checkpoint_id, reason)
    return proof_id


def maybe_request_proof(
    store: AttestationStore,
    dispatcher: Optional[ProofDispatcher],
    checkpoint: CheckpointRecord,
    sample_rate: float,
    rng: Optional[Callable[[], float]] = None,
) -> Optional[str]:
    """
    Request a proof if the policy selects this checkpoint.

    Skipped silently when no prover is configured. Returns the proof id,
    or None when nothing was requested or the request failed.
    """
    if dispatcher is None:
        return None
    if not should_prove(checkpoint, sample_rate=sample_rate, rng=rng):
        return None
    reason = "boundary_violation" if checkpoint.verdict == BOUNDARY_VIOLATION else "sampled"
    try:
        return _enqueue(store, dispatcher, checkpoint, reason)
    except ExternalServiceError as e:
        audit_log.proof_request_failed(checkpoint.checkpoint_id, str(e))
        return None


def request_proof_for(
    store: AttestationStore,
    dispatcher: Optional[ProofDispatcher],
    checkpoint: CheckpointRecord,
) -> ProofRequestOutcome:
    """
    Explicit proof request for a stored checkpoint.

    Raises:
        StoreError: If the store cannot be read or written
    """
    existing = store.get_latest_proof(checkpoint.checkpoint_id)
    if existing is not None:
        return ProofRequestOutcome(proof_id=existing.proof_id, status=existing.status, created=False)

    proof_id = _enqueue(store, dispatcher, checkpoint, "requested")
    return ProofRequestOutcome(
        proof_id=proof_id,
        status=QUEUED,
        created=True,
        estimated_completion_ms=ESTIMATED_COMPLETION_MS,
    )
