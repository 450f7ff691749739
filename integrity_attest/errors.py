"""
Error taxonomy for the attestation engine.

Input errors are surfaced to the caller and never retried. Chain
consistency errors are retryable: re-reading the chain tail and
recomputing is always safe because every hash function here is pure.
External service errors are fail-open on the production path and turn
into failed checks on the verification path.
"""


class AttestationError(Exception):
    """Base class for all attestation engine errors."""
    retryable = False


class InputError(AttestationError, ValueError):
    """Malformed input (non-canonicalizable value, malformed record)."""


class MerkleIndexError(InputError, IndexError):
    """Leaf index outside [0, leaf_count) or an empty tree."""


class DuplicateCheckpointError(InputError):
    """A checkpoint with this id has already been attested."""

    def __init__(self, checkpoint_id: str):
        self.checkpoint_id = checkpoint_id
        super().__init__(f"checkpoint {checkpoint_id} already attested")


class SigningKeyError(AttestationError):
    """Unknown or inactive signing key."""

    def __init__(self, key_id: str, message: str = "signing key not found or inactive"):
        self.key_id = key_id
        super().__init__(f"{key_id}: {message}")


class ChainConsistencyError(AttestationError):
    """
    The agent's chain tail moved between read and append.

    Raised by the store when two writers race for the same chain
    position or Merkle leaf index.
    """
    retryable = True

    def __init__(self, agent_id: str, message: str = "chain tail changed during append"):
        self.agent_id = agent_id
        super().__init__(f"{agent_id}: {message}")


class ExternalServiceError(AttestationError):
    """An external collaborator (store, prover) is unreachable or failed."""


class StoreError(ExternalServiceError):
    """The checkpoint store failed."""


class ProverUnavailableError(ExternalServiceError):
    """The external prover service could not be reached or answered with an error."""
