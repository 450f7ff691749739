"""
Integrity Attestation & Verification Engine

Version: 1.0.0

Turns every integrity checkpoint an AI-agent monitor produces into a
cryptographically attested record that third parties can verify without
trusting the service that produced it.

Each checkpoint is:
- bound to its exact analysis inputs by an input commitment
- signed with Ed25519 over a canonical payload
- linked to the agent's previous checkpoint by a hash chain
- appended as a leaf to a per-agent Merkle tree
- optionally backed by a zero-knowledge proof of verdict derivation

Usage:
    from integrity_attest import (
        CommitmentInputs,
        compute_input_commitment,
        compute_chain_hash,
        compute_leaf_hash,
        build_signed_payload,
        build_certificate,
        verify_certificate,
    )

    commitment = compute_input_commitment(CommitmentInputs(card=card))
    chain_hash = compute_chain_hash(None, "ic-1", "clear", tbh, commitment, ts)
    ...
    report = verify_certificate(certificate, resolve_public_key)
    if report.valid:
        ...
"""

__version__ = "1.0.0"

# Errors
from .errors import (
    AttestationError,
    InputError,
    MerkleIndexError,
    DuplicateCheckpointError,
    SigningKeyError,
    ChainConsistencyError,
    ExternalServiceError,
    StoreError,
    ProverUnavailableError,
)

# Canonicalization and hashing
from .canonicalization import canonicalize, canonicalize_str
from .hashing import (
    sha256_hex,
    canonical_hash,
    CommitmentInputs,
    compute_input_commitment,
    compute_component_hashes,
)

# Hash chain
from .chain import (
    ChainInput,
    ChainLink,
    ChainVerificationResult,
    compute_chain_hash,
    compute_chain_hash_for,
    next_chain_position,
    verify_chain_link,
    verify_chain_sequence,
)

# Merkle tree
from .merkle import (
    EMPTY_TREE_ROOT,
    ProofSibling,
    InclusionProof,
    MerkleTreeState,
    compute_leaf_hash,
    compute_merkle_root,
    compute_tree_depth,
    build_tree_state,
    generate_inclusion_proof,
    verify_inclusion_proof,
)

# Signing
from .signing import (
    generate_keypair,
    load_signing_key_from_hex,
    get_public_key_from_secret,
    public_key_to_hex,
    sign,
    verify,
)

# Certificates
from .certificate import (
    SignedPayloadInput,
    CertificateInput,
    VerdictDerivation,
    build_signed_payload,
    build_certificate,
    generate_certificate_id,
)

# Proof requests
from .proving import (
    ProofRequest,
    should_prove,
    generate_proof_id,
    build_proof_request,
    verdict_derivation_from_proof,
)

# Verifier
from .verifier import (
    CertificateVerifier,
    DerivationVerifier,
    VerificationReport,
    verify_certificate,
)


__all__ = [
    # Version
    "__version__",

    # Errors
    "AttestationError",
    "InputError",
    "MerkleIndexError",
    "DuplicateCheckpointError",
    "SigningKeyError",
    "ChainConsistencyError",
    "ExternalServiceError",
    "StoreError",
    "ProverUnavailableError",

    # Canonicalization
    "canonicalize",
    "canonicalize_str",

    # Hashing
    "sha256_hex",
    "canonical_hash",
    "CommitmentInputs",
    "compute_input_commitment",
    "compute_component_hashes",

    # Chain
    "ChainInput",
    "ChainLink",
    "ChainVerificationResult",
    "compute_chain_hash",
    "compute_chain_hash_for",
    "next_chain_position",
    "verify_chain_link",
    "verify_chain_sequence",

    # Merkle
    "EMPTY_TREE_ROOT",
    "ProofSibling",
    "InclusionProof",
    "MerkleTreeState",
    "compute_leaf_hash",
    "compute_merkle_root",
    "compute_tree_depth",
    "build_tree_state",
    "generate_inclusion_proof",
    "verify_inclusion_proof",

    # Signing
    "generate_keypair",
    "load_signing_key_from_hex",
    "get_public_key_from_secret",
    "public_key_to_hex",
    "sign",
    "verify",

    # Certificates
    "SignedPayloadInput",
    "CertificateInput",
    "VerdictDerivation",
    "build_signed_payload",
    "build_certificate",
    "generate_certificate_id",

    # Proofs
    "ProofRequest",
    "should_prove",
    "generate_proof_id",
    "build_proof_request",
    "verdict_derivation_from_proof",

    # Verifier
    "CertificateVerifier",
    "DerivationVerifier",
    "VerificationReport",
    "verify_certificate",
]
