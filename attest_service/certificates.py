"""
Certificate reconstruction from stored state.

Certificates are not stored; they are rebuilt on demand from the
checkpoint row and the agent's current leaf list, so the inclusion
proof always targets the current root.
"""

import logging
from typing import Any, Dict, Optional

from integrity_attest.certificate import CertificateInput, VerdictDerivation, build_certificate
from integrity_attest.errors import ExternalServiceError
from integrity_attest.merkle import InclusionProof, generate_inclusion_proof
from integrity_attest.proving import verdict_derivation_from_proof

from .db import AttestationStore, CheckpointRecord

logger = logging.getLogger(__name__)


def certificate_input_from_record(
    cp: CheckpointRecord,
    merkle: Optional[InclusionProof] = None,
    verdict_derivation: Optional[VerdictDerivation] = None,
) -> CertificateInput:
    return CertificateInput(
        checkpoint_id=cp.checkpoint_id,
        agent_id=cp.agent_id,
        session_id=cp.session_id,
        card_id=cp.card_id,
        verdict=cp.verdict,
        reasoning_summary=cp.reasoning_summary,
        thinking_block_hash=cp.thinking_block_hash,
        input_commitment=cp.input_commitment,
        signature_key_id=cp.signing_key_id,
        signature_value=cp.signature,
        signed_payload=cp.signed_payload,
        chain_hash=cp.chain_hash,
        prev_chain_hash=cp.prev_chain_hash,
        chain_position=cp.chain_position,
        concerns=cp.concerns,
        confidence=cp.confidence,
        analysis_model=cp.analysis_model,
        analysis_duration_ms=cp.analysis_duration_ms,
        card_hash=cp.card_hash,
        values_hash=cp.values_hash,
        context_hash=cp.context_hash,
        model_version=cp.model_version,
        merkle=merkle,
        verdict_derivation=verdict_derivation,
    )


def current_inclusion_proof(store: AttestationStore, cp: CheckpointRecord) -> Optional[InclusionProof]:
    """Inclusion proof for cp against the agent's current tree, or None if it has no leaf."""
    if cp.merkle_leaf_index is None:
        return None
    tree = store.get_agent_merkle_tree(cp.agent_id)
    if tree is None or not 0 <= cp.merkle_leaf_index < len(tree.leaf_hashes):
        return None
    return generate_inclusion_proof(tree.leaf_hashes, cp.merkle_leaf_index)


def completed_verdict_derivation(store: AttestationStore, checkpoint_id: str) -> Optional[VerdictDerivation]:
    """Completed proof for the checkpoint, if any. Fail-open on store errors."""
    try:
        row = store.get_completed_proof(checkpoint_id)
    except ExternalServiceError as e:
        logger.warning("verdict proof lookup failed for %s: %s", checkpoint_id, e)
        return None
    return verdict_derivation_from_proof(row.to_dict() if row else None)


def reconstruct_certificate(store: AttestationStore, cp: CheckpointRecord, base_url: str) -> Dict[str, Any]:
    """
    Rebuild the certificate for a stored checkpoint.

    The certificate keeps the id minted at attestation time and is
    stamped with the checkpoint timestamp as issued_at.

    Raises:
        StoreError: If the Merkle tree cannot be read
    """
    cert = build_certificate(
        certificate_input_from_record(
            cp,
            merkle=current_inclusion_proof(store, cp),
            verdict_derivation=completed_verdict_derivation(store, cp.checkpoint_id),
        ),
        base_url=base_url,
        issued_at=cp.timestamp,
    )
    cert["certificate_id"] = cp.certificate_id
    return cert
