from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

Verdict = Literal["clear", "review_needed", "boundary_violation"]


# ---- Requests ----

class CheckpointIn(BaseModel):
    checkpoint_id: str
    agent_id: str
    session_id: str
    card_id: str
    verdict: Verdict
    concerns: List[Dict[str, Any]] = Field(default_factory=list)
    reasoning_summary: str = ""
    thinking_block_hash: str
    timestamp: str


class CommitmentInputsIn(BaseModel):
    card: Dict[str, Any]
    conscience_values: List[Dict[str, Any]] = Field(default_factory=list)
    window_context: List[Dict[str, Any]] = Field(default_factory=list)
    model_version: str = ""
    prompt_template_version: str = ""


class AnalysisIn(BaseModel):
    model: str = "unknown"
    duration_ms: int = Field(default=0, ge=0)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    response_text: str = ""


class AttestRequest(BaseModel):
    checkpoint: CheckpointIn
    inputs: CommitmentInputsIn
    analysis: AnalysisIn = Field(default_factory=AnalysisIn)


class VerifyRequest(BaseModel):
    certificate: Any = None


# ---- Responses ----

class SigningKeyInfo(BaseModel):
    key_id: str
    public_key: str
    algorithm: str
    created_at: str
    is_active: bool


class KeysResponse(BaseModel):
    keys: List[SigningKeyInfo]


class Attestation(BaseModel):
    input_commitment: str
    chain_hash: str
    prev_chain_hash: Optional[str]
    chain_position: int
    merkle_leaf_index: Optional[int]
    certificate_id: str
    signature: str
    signing_key_id: str
    proof_id: Optional[str] = None


class VerifyCertificateResponse(BaseModel):
    valid: bool
    checks: Dict[str, Optional[Dict[str, Any]]]
    details: str


class MerkleRootResponse(BaseModel):
    agent_id: str
    merkle_root: str
    tree_depth: int
    leaf_count: int
    last_updated: str


class ProofSiblingOut(BaseModel):
    hash: str
    position: Literal["left", "right"]


class InclusionProofResponse(BaseModel):
    checkpoint_id: str
    leaf_hash: str
    leaf_index: int
    siblings: List[ProofSiblingOut]
    root: str
    tree_size: int
    verified: bool


class ProofQueuedResponse(BaseModel):
    proof_id: str
    status: str
    estimated_completion_ms: int


class ProofExistsResponse(BaseModel):
    proof_id: str
    status: str
    message: str = "Proof already exists for this checkpoint"


class ProofStatusResponse(BaseModel):
    proof_id: str
    checkpoint_id: str
    status: str
    proof_type: str
    image_id: Optional[str] = None
    proving_duration_ms: Optional[int] = None
    verified: bool = False
    verified_at: Optional[str] = None
    created_at: str
    updated_at: str
