"""
Checkpoint attestation pipeline.

commitment -> chain tail -> chain hash -> signed payload -> signature
-> leaf hash -> certificate (in memory) -> single atomic append
-> proof-request policy

Nothing is persisted until every component hash and the certificate
exist. A ChainConsistencyError from the append means another writer
took the tail; everything is recomputed from the new tail and retried.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from integrity_attest.certificate import (
    DEFAULT_BASE_URL,
    SignedPayloadInput,
    build_certificate,
    build_signed_payload,
)
from integrity_attest.chain import compute_chain_hash, next_chain_position
from integrity_attest.errors import ChainConsistencyError
from integrity_attest.hashing import CommitmentInputs, compute_component_hashes, compute_input_commitment
from integrity_attest.merkle import MerkleTreeState, compute_leaf_hash, generate_inclusion_proof
from integrity_attest.proving import DEFAULT_SAMPLE_RATE

from .certificates import certificate_input_from_record
from .db import AttestationStore, CheckpointRecord
from .keys import KeyProvider
from .logging_config import audit_log
from .proofs import maybe_request_proof
from .prover_client import ProofDispatcher
from .security import (
    validate_identifier,
    validate_sha256_hex,
    validate_string_length,
    validate_timestamp,
    validate_verdict,
)

logger = logging.getLogger(__name__)

MAX_APPEND_ATTEMPTS = 3


@dataclass
class Checkpoint:
    """A checkpoint as produced by the external monitor."""
    checkpoint_id: str
    agent_id: str
    session_id: str
    card_id: str
    verdict: str
    reasoning_summary: str
    thinking_block_hash: str
    timestamp: str
    concerns: List[Dict[str, Any]] = field(default_factory=list)

    def validate(self) -> None:
        validate_identifier(self.checkpoint_id, "checkpoint_id")
        validate_identifier(self.agent_id, "agent_id")
        validate_identifier(self.session_id, "session_id")
        validate_identifier(self.card_id, "card_id")
        validate_verdict(self.verdict)
        validate_string_length(self.reasoning_summary, "reasoning_summary", min_length=0, max_length=10000)
        self.thinking_block_hash = validate_sha256_hex(self.thinking_block_hash, "thinking_block_hash")
        validate_timestamp(self.timestamp)


@dataclass
class AnalysisInfo:
    model: str = "unknown"
    duration_ms: int = 0
    confidence: float = 1.0
    response_text: str = ""


@dataclass
class AttestationResult:
    record: CheckpointRecord
    certificate: Dict[str, Any]
    tree: MerkleTreeState
    proof_id: Optional[str] = None
    attempts: int = 1

    def attestation(self) -> Dict[str, Any]:
        r = self.record
        return {
            "input_commitment": r.input_commitment,
            "chain_hash": r.chain_hash,
            "prev_chain_hash": r.prev_chain_hash,
            "chain_position": r.chain_position,
            "merkle_leaf_index": r.merkle_leaf_index,
            "certificate_id": r.certificate_id,
            "signature": r.signature,
            "signing_key_id": r.signing_key_id,
            "proof_id": self.proof_id,
        }


class CheckpointAttestor:
    """
    Attests checkpoints against a store and a signing key.

    Args:
        store: Checkpoint store providing the per-agent append
        key_provider: Signs the canonical payload
        base_url: Base of certificate verification URLs
        dispatcher: Proof dispatcher, None when no prover is configured
        sample_rate: Proving probability for non-violations
        rng: Uniform [0, 1) source for the sampling draw
        max_attempts: Appends tried before a ChainConsistencyError is raised
    """

    def __init__(
        self,
        store: AttestationStore,
        key_provider: KeyProvider,
        base_url: str = DEFAULT_BASE_URL,
        dispatcher: Optional[ProofDispatcher] = None,
        sample_rate: float = DEFAULT_SAMPLE_RATE,
        rng: Optional[Callable[[], float]] = None,
        max_attempts: int = MAX_APPEND_ATTEMPTS,
    ):
        self._store = store
        self._keys = key_provider
        self._base_url = base_url
        self._dispatcher = dispatcher
        self._sample_rate = sample_rate
        self._rng = rng
        self._max_attempts = max(1, max_attempts)

    def attest(
        self,
        checkpoint: Checkpoint,
        inputs: CommitmentInputs,
        analysis: Optional[AnalysisInfo] = None,
    ) -> AttestationResult:
        """
        Attest one checkpoint.

        Raises:
            ValidationError: If the checkpoint is malformed
            InputError: If the inputs cannot be canonicalized
            DuplicateCheckpointError: If the checkpoint was already attested
            ChainConsistencyError: If every append attempt lost a race
            StoreError: If the store is unreachable
        """
        checkpoint.validate()
        analysis = analysis or AnalysisInfo()

        input_commitment = compute_input_commitment(inputs)
        components = compute_component_hashes(inputs)

        last_error: Optional[ChainConsistencyError] = None
        for attempt in range(1, self._max_attempts + 1):
            record, certificate, leaf_hash, leaf_count = self._prepare(
                checkpoint, inputs, analysis, input_commitment, components
            )
            try:
                tree = self._store.append_checkpoint(
                    record, leaf_hash,
                    expected_prev_chain_hash=record.prev_chain_hash,
                    expected_leaf_count=leaf_count,
                )
            except ChainConsistencyError as e:
                logger.info("append for %s lost a race (attempt %d/%d): %s",
                            checkpoint.agent_id, attempt, self._max_attempts, e)
                last_error = e
                continue
            break
        else:
            raise last_error

        proof_id = maybe_request_proof(
            self._store, self._dispatcher, record, self._sample_rate, rng=self._rng
        )

        audit_log.checkpoint_attested(
            checkpoint_id=record.checkpoint_id,
            agent_id=record.agent_id,
            certificate_id=record.certificate_id,
            chain_position=record.chain_position,
            leaf_index=record.merkle_leaf_index,
            key_id=record.signing_key_id,
        )
        return AttestationResult(record=record, certificate=certificate, tree=tree,
                                 proof_id=proof_id, attempts=attempt)

    def _prepare(self, checkpoint, inputs, analysis, input_commitment, components):
        """Everything computed against the current tail, nothing written."""
        tail = self._store.get_chain_tail(checkpoint.agent_id)
        tree = self._store.get_agent_merkle_tree(checkpoint.agent_id)
        leaves = list(tree.leaf_hashes) if tree else []

        prev_chain_hash = tail.chain_hash if tail else None
        position = next_chain_position(tail.chain_position if tail else None)

        chain_hash = compute_chain_hash(
            prev_chain_hash,
            checkpoint.checkpoint_id,
            checkpoint.verdict,
            checkpoint.thinking_block_hash,
            input_commitment,
            checkpoint.timestamp,
        )
        signed_payload = build_signed_payload(SignedPayloadInput(
            checkpoint_id=checkpoint.checkpoint_id,
            agent_id=checkpoint.agent_id,
            verdict=checkpoint.verdict,
            thinking_block_hash=checkpoint.thinking_block_hash,
            input_commitment=input_commitment,
            chain_hash=chain_hash,
            timestamp=checkpoint.timestamp,
        ))
        key_id, signature = self._keys.sign_payload(signed_payload)

        leaf_hash = compute_leaf_hash(
            checkpoint.checkpoint_id,
            checkpoint.verdict,
            checkpoint.thinking_block_hash,
            chain_hash,
            checkpoint.timestamp,
        )
        proof = generate_inclusion_proof(leaves + [leaf_hash], len(leaves))

        record = CheckpointRecord(
            checkpoint_id=checkpoint.checkpoint_id,
            agent_id=checkpoint.agent_id,
            session_id=checkpoint.session_id,
            card_id=checkpoint.card_id,
            verdict=checkpoint.verdict,
            reasoning_summary=checkpoint.reasoning_summary,
            thinking_block_hash=checkpoint.thinking_block_hash,
            timestamp=checkpoint.timestamp,
            input_commitment=input_commitment,
            chain_hash=chain_hash,
            prev_chain_hash=prev_chain_hash,
            chain_position=position,
            certificate_id="",
            signature=signature,
            signed_payload=signed_payload,
            signing_key_id=key_id,
            concerns=list(checkpoint.concerns),
            confidence=analysis.confidence,
            analysis_model=analysis.model,
            analysis_duration_ms=analysis.duration_ms,
            analysis_json=analysis.response_text,
            card_hash=components["card_hash"],
            values_hash=components["values_hash"],
            context_hash=components["context_hash"],
            model_version=inputs.model_version,
            merkle_leaf_index=len(leaves),
        )
        certificate = build_certificate(
            certificate_input_from_record(record, merkle=proof),
            base_url=self._base_url,
            issued_at=checkpoint.timestamp,
        )
        record.certificate_id = certificate["certificate_id"]
        return record, certificate, leaf_hash, len(leaves)
