"""
Certificate verification.

Enables any third party to confirm, after the fact, that a certificate
was produced by the service, has not been altered, is causally linked
to its predecessor and, optionally, that its verdict derivation was
proven.

Five independent checks are run and all of them are reported; a failure
in one never prevents the others:

1. signature           Ed25519 over the stored signed_payload string
2. chain               chain hash recomputed from the certificate's claims
3. merkle              leaf recomputed from the subject, proven against the declared root (optional)
4. input_commitment    presence only; recomputing needs the private inputs
5. verdict_derivation  delegated to the prover when one is configured (optional)

Verification never raises. Lookup or prover failures turn the affected
check into a failure with a descriptive detail string.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .chain import compute_chain_hash
from .errors import AttestationError, ExternalServiceError, InputError
from .merkle import InclusionProof, compute_leaf_hash, verify_inclusion_proof
from .signing import verify
from .util import constant_time_compare

# key_id -> public key hex, or None when unknown/inactive.
KeyResolver = Callable[[str], Optional[str]]

CHECK_NAMES = ("signature", "chain", "merkle", "input_commitment", "verdict_derivation")


class DerivationVerifier(ABC):
    """Cryptographic verification of a verdict derivation receipt."""

    @abstractmethod
    def verify_receipt(self, receipt: str, image_id: str) -> bool:
        """
        Returns:
            True if the receipt verifies against image_id

        Raises:
            ExternalServiceError: If the verifier cannot be reached
        """


@dataclass
class VerificationReport:
    valid: bool
    checks: Dict[str, Optional[Dict[str, Any]]]
    details: str
    trace: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"valid": self.valid, "checks": self.checks, "details": self.details}


def _get(obj: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(obj, Mapping):
            return None
        obj = obj.get(key)
    return obj


def _error_text(err: Exception) -> str:
    return str(err) or type(err).__name__


class CertificateVerifier:
    """
    Verifies integrity certificates.

    Args:
        resolve_public_key: Returns the hex public key for an active
            key_id, None if unknown or inactive; may raise
            ExternalServiceError when the key store is unreachable
        prover: Optional delegate for verdict derivation receipts
    """

    def __init__(self, resolve_public_key: KeyResolver, prover: Optional[DerivationVerifier] = None):
        self._resolve = resolve_public_key
        self._prover = prover

    def verify(self, certificate: Mapping[str, Any]) -> VerificationReport:
        results: List[Tuple[str, Optional[Dict[str, Any]], str]] = [
            ("signature",) + self._check_signature(certificate),
            ("chain",) + self._check_chain(certificate),
            ("merkle",) + self._check_merkle(certificate),
            ("input_commitment",) + self._check_input_commitment(certificate),
            ("verdict_derivation",) + self._check_verdict_derivation(certificate),
        ]

        checks = {name: check for name, check, _ in results}
        trace = [detail for _, _, detail in results]
        valid = all(check["valid"] for check in checks.values() if check is not None)
        return VerificationReport(valid=valid, checks=checks, details="; ".join(trace), trace=trace)

    # ---- Check 1: signature ----

    def _check_signature(self, cert: Mapping[str, Any]) -> Tuple[Dict[str, Any], str]:
        key_id = _get(cert, "proofs", "signature", "key_id")
        check: Dict[str, Any] = {"valid": False, "key_id": key_id if isinstance(key_id, str) else ""}

        if not check["key_id"]:
            return check, "Signature: no key_id in certificate"

        try:
            public_key = self._resolve(key_id)
        except ExternalServiceError as e:
            return check, f"Signature: key store unavailable ({_error_text(e)})"
        except AttestationError as e:
            return check, f"Signature: key lookup failed ({_error_text(e)})"

        if not public_key:
            return check, f'Signature: signing key "{key_id}" not found or inactive'

        value = _get(cert, "proofs", "signature", "value")
        payload = _get(cert, "proofs", "signature", "signed_payload")
        if not isinstance(value, str) or not isinstance(payload, str):
            return check, "Signature: signature value or signed_payload missing"

        check["valid"] = verify(value, payload, public_key)
        if not check["valid"]:
            return check, "Signature: Ed25519 signature verification failed"
        return check, "Signature: valid"

    # ---- Check 2: chain ----

    def _check_chain(self, cert: Mapping[str, Any]) -> Tuple[Dict[str, Any], str]:
        declared = _get(cert, "proofs", "chain", "chain_hash")
        check: Dict[str, Any] = {"valid": False, "chain_hash": declared if isinstance(declared, str) else ""}

        if not isinstance(declared, str) or not declared:
            return check, "Chain: no chain proof data in certificate"

        try:
            recomputed = compute_chain_hash(
                _get(cert, "proofs", "chain", "prev_chain_hash"),
                _get(cert, "subject", "checkpoint_id"),
                _get(cert, "claims", "verdict"),
                _get(cert, "input_commitments", "thinking_block_hash"),
                _get(cert, "input_commitments", "combined_commitment"),
                _get(cert, "issued_at"),
            )
        except InputError as e:
            return check, f"Chain: verification error ({_error_text(e)})"

        check["valid"] = constant_time_compare(recomputed, declared)
        if not check["valid"]:
            return check, "Chain: recomputed chain hash does not match certificate"
        return check, "Chain: valid"

    # ---- Check 3: merkle (optional) ----

    def _check_merkle(self, cert: Mapping[str, Any]) -> Tuple[Optional[Dict[str, Any]], str]:
        section = _get(cert, "proofs", "merkle")
        if section is None:
            return None, "Merkle: not present (optional)"

        root = _get(section, "root")
        check: Dict[str, Any] = {"valid": False, "root": root if isinstance(root, str) else ""}
        try:
            proof = InclusionProof.from_dict(section)
        except InputError as e:
            return check, f"Merkle: verification error ({_error_text(e)})"

        try:
            subject_leaf = compute_leaf_hash(
                _get(cert, "subject", "checkpoint_id"),
                _get(cert, "claims", "verdict"),
                _get(cert, "input_commitments", "thinking_block_hash"),
                _get(cert, "proofs", "chain", "chain_hash"),
                _get(cert, "issued_at"),
            )
        except InputError as e:
            return check, f"Merkle: verification error ({_error_text(e)})"

        if not isinstance(proof.leaf_hash, str) or not constant_time_compare(proof.leaf_hash, subject_leaf):
            return check, "Merkle: leaf does not match certificate subject"
        check["valid"] = verify_inclusion_proof(proof, subject_leaf, proof.root)
        if not check["valid"]:
            return check, "Merkle: inclusion proof verification failed"
        return check, "Merkle: valid"

    # ---- Check 4: input commitment (presence only) ----

    def _check_input_commitment(self, cert: Mapping[str, Any]) -> Tuple[Dict[str, Any], str]:
        commitment = _get(cert, "input_commitments", "combined_commitment")
        present = isinstance(commitment, str) and bool(commitment)
        check = {"valid": present, "commitment": commitment if present else ""}
        if not present:
            return check, "Input commitment: missing"
        return check, "Input commitment: present"

    # ---- Check 5: verdict derivation (optional) ----

    def _check_verdict_derivation(self, cert: Mapping[str, Any]) -> Tuple[Optional[Dict[str, Any]], str]:
        section = _get(cert, "proofs", "verdict_derivation")
        if section is None:
            return None, "Verdict derivation: not present (optional)"

        method = _get(section, "method")
        check: Dict[str, Any] = {"valid": False, "method": method if isinstance(method, str) else "unknown"}
        receipt = _get(section, "receipt")
        image_id = _get(section, "image_id")
        if not all(isinstance(v, str) and v for v in (method, receipt, image_id)):
            return check, "Verdict derivation: malformed proof (method, receipt and image_id required)"

        if self._prover is None:
            check["valid"] = True
            check["structural_only"] = True
            return check, "Verdict derivation: present (structural check only, prover not configured)"

        try:
            check["valid"] = bool(self._prover.verify_receipt(receipt, image_id))
        except ExternalServiceError as e:
            return check, f"Verdict derivation: prover service unavailable ({_error_text(e)})"

        if not check["valid"]:
            return check, "Verdict derivation: STARK proof verification failed"
        return check, "Verdict derivation: valid"


def verify_certificate(
    certificate: Mapping[str, Any],
    resolve_public_key: KeyResolver,
    prover: Optional[DerivationVerifier] = None,
) -> VerificationReport:
    """Convenience wrapper around CertificateVerifier."""
    return CertificateVerifier(resolve_public_key, prover).verify(certificate)
