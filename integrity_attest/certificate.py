"""
Integrity certificate assembly.

A certificate is a self-describing, machine-verifiable document that
bundles the verdict claims, input commitments and every proof for one
checkpoint (signature, hash chain, Merkle inclusion and, optionally, a
zero-knowledge verdict derivation proof).

Assembly is pure packaging: no hashing or signing happens here. Each
call mints a fresh certificate_id, so re-issuing for the same checkpoint
yields a structurally identical but identifier-distinct document.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .canonicalization import canonicalize_str
from .merkle import InclusionProof
from .signing import ALGORITHM
from .util import random_id, utc_now_iso

CERTIFICATE_CONTEXT = "https://mnemom.ai/aip/v1"
CERTIFICATE_TYPE = "IntegrityCertificate"
CERTIFICATE_VERSION = "1.0.0"
CERTIFICATE_ID_PREFIX = "cert"
DEFAULT_BASE_URL = "https://api.mnemom.ai"

SIGNED_PAYLOAD_FIELDS = (
    "agent_id",
    "chain_hash",
    "checkpoint_id",
    "input_commitment",
    "thinking_block_hash",
    "timestamp",
    "verdict",
)


def generate_certificate_id() -> str:
    """Return cert- followed by 8 uniformly random lowercase alphanumerics."""
    return random_id(CERTIFICATE_ID_PREFIX)


@dataclass(frozen=True)
class SignedPayloadInput:
    checkpoint_id: str
    agent_id: str
    verdict: str
    thinking_block_hash: str
    input_commitment: str
    chain_hash: str
    timestamp: str


def build_signed_payload(data: SignedPayloadInput) -> str:
    """
    Build the exact string that gets signed.

    Canonical JSON with keys in strict lexicographic order and no
    whitespace. Certificates store this string verbatim; verification
    checks the signature against it rather than a recomputation.
    """
    return canonicalize_str({name: getattr(data, name) for name in SIGNED_PAYLOAD_FIELDS})


@dataclass
class VerdictDerivation:
    image_id: str
    receipt: str
    journal: str
    verified_at: Optional[str]
    method: str = "RISC-Zero-STARK"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "method": self.method,
            "image_id": self.image_id,
            "receipt": self.receipt,
            "journal": self.journal,
            "verified_at": self.verified_at,
        }


@dataclass
class CertificateInput:
    checkpoint_id: str
    agent_id: str
    session_id: str
    card_id: str
    verdict: str
    reasoning_summary: str
    thinking_block_hash: str
    input_commitment: str
    signature_key_id: str
    signature_value: str
    signed_payload: str
    chain_hash: str
    prev_chain_hash: Optional[str]
    chain_position: int
    concerns: List[Dict[str, Any]] = field(default_factory=list)
    confidence: float = 1.0
    analysis_model: str = "unknown"
    analysis_duration_ms: int = 0
    card_hash: str = ""
    values_hash: str = ""
    context_hash: str = ""
    model_version: str = ""
    merkle: Optional[InclusionProof] = None
    verdict_derivation: Optional[VerdictDerivation] = None


def _merkle_section(proof: Optional[InclusionProof]) -> Optional[Dict[str, Any]]:
    if proof is None:
        return None
    return {
        "leaf_hash": proof.leaf_hash,
        "leaf_index": proof.leaf_index,
        "root": proof.root,
        "tree_size": proof.tree_size,
        "inclusion_proof": [s.to_dict() for s in proof.siblings],
    }


def verification_urls(checkpoint_id: str, base_url: str = DEFAULT_BASE_URL) -> Dict[str, str]:
    base = base_url.rstrip("/")
    return {
        "keys_url": f"{base}/v1/keys",
        "certificate_url": f"{base}/v1/checkpoints/{checkpoint_id}/certificate",
        "verify_url": f"{base}/v1/verify",
    }


def build_certificate(
    data: CertificateInput,
    base_url: str = DEFAULT_BASE_URL,
    issued_at: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Assemble an IntegrityCertificate from already-computed proof material.

    Args:
        data: Claims, commitments and proofs for one checkpoint
        base_url: Base of the dereferenceable verification URLs
        issued_at: ISO-8601 issuance instant; defaults to now. Pass the
            checkpoint timestamp when the certificate must pass the chain
            check, which recomputes the chain hash from issued_at.

    Returns:
        Certificate dict in its wire shape
    """
    return {
        "@context": CERTIFICATE_CONTEXT,
        "type": CERTIFICATE_TYPE,
        "version": CERTIFICATE_VERSION,
        "certificate_id": generate_certificate_id(),
        "issued_at": issued_at or utc_now_iso(),
        "subject": {
            "checkpoint_id": data.checkpoint_id,
            "agent_id": data.agent_id,
            "session_id": data.session_id,
            "card_id": data.card_id,
        },
        "claims": {
            "verdict": data.verdict,
            "concerns": list(data.concerns),
            "confidence": data.confidence,
            "reasoning_summary": data.reasoning_summary,
            "analysis_model": data.analysis_model,
            "analysis_duration_ms": data.analysis_duration_ms,
        },
        "input_commitments": {
            "thinking_block_hash": data.thinking_block_hash,
            "card_hash": data.card_hash,
            "values_hash": data.values_hash,
            "context_hash": data.context_hash,
            "model_version": data.model_version,
            "combined_commitment": data.input_commitment,
        },
        "proofs": {
            "signature": {
                "algorithm": ALGORITHM,
                "key_id": data.signature_key_id,
                "value": data.signature_value,
                "signed_payload": data.signed_payload,
            },
            "chain": {
                "chain_hash": data.chain_hash,
                "prev_chain_hash": data.prev_chain_hash,
                "position": data.chain_position,
            },
            "merkle": _merkle_section(data.merkle),
            "verdict_derivation": data.verdict_derivation.to_dict() if data.verdict_derivation else None,
        },
        "verification": verification_urls(data.checkpoint_id, base_url),
    }
