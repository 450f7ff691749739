"""
Hashing and input commitments.

All hashes are SHA-256 with lowercase hexadecimal output.

The input commitment binds a checkpoint to the exact inputs the verdict
was computed from (alignment card, conscience values, window context,
model and prompt-template versions) without revealing them:

    input_commitment = SHA-256(
        CJE(card) | CJE(conscience_values) | CJE(window_context)
        | CJE(model_version) | CJE(prompt_template_version)
    )
"""

import hashlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Union

from .canonicalization import canonicalize, canonicalize_str
from .errors import InputError

COMMITMENT_SEPARATOR = "|"


def sha256_hex(data: Union[bytes, str]) -> str:
    """Compute SHA-256 and return lowercase hex."""
    if isinstance(data, str):
        data = data.encode('utf-8')
    return hashlib.sha256(data).hexdigest()


def canonical_hash(obj: Any) -> str:
    """SHA-256 of the canonical JSON encoding of obj."""
    return sha256_hex(canonicalize(obj))


@dataclass(frozen=True)
class CommitmentInputs:
    """The full set of analysis inputs a verdict is derived from."""
    card: Dict[str, Any]
    conscience_values: List[Dict[str, Any]] = field(default_factory=list)
    window_context: List[Dict[str, Any]] = field(default_factory=list)
    model_version: str = ""
    prompt_template_version: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CommitmentInputs':
        if not isinstance(data, dict):
            raise InputError("commitment inputs must be an object")
        if not isinstance(data.get("card"), dict):
            raise InputError("commitment inputs require a card object")
        return cls(
            card=data["card"],
            conscience_values=list(data.get("conscience_values") or []),
            window_context=list(data.get("window_context") or []),
            model_version=str(data.get("model_version", "")),
            prompt_template_version=str(data.get("prompt_template_version", "")),
        )


def compute_input_commitment(inputs: CommitmentInputs) -> str:
    """
    Compute the combined commitment over all analysis inputs.

    Each field is canonicalized independently, the parts are joined with
    "|" and the UTF-8 bytes are hashed. Pure and deterministic.
    """
    parts = [
        canonicalize_str(inputs.card),
        canonicalize_str(inputs.conscience_values),
        canonicalize_str(inputs.window_context),
        canonicalize_str(inputs.model_version),
        canonicalize_str(inputs.prompt_template_version),
    ]
    return sha256_hex(COMMITMENT_SEPARATOR.join(parts))


def compute_component_hashes(inputs: CommitmentInputs) -> Dict[str, str]:
    """Per-component hashes published in a certificate's input_commitments."""
    return {
        "card_hash": canonical_hash(inputs.card),
        "values_hash": canonical_hash(inputs.conscience_values),
        "context_hash": canonical_hash(inputs.window_context),
    }
