import logging
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from integrity_attest.errors import (
    ChainConsistencyError,
    DuplicateCheckpointError,
    InputError,
    MerkleIndexError,
    SigningKeyError,
    StoreError,
)
from integrity_attest.hashing import CommitmentInputs
from integrity_attest.merkle import generate_inclusion_proof, verify_inclusion_proof
from integrity_attest.verifier import CertificateVerifier

from .certificates import reconstruct_certificate
from .config import Settings
from .db import AttestationStore, SqliteAttestationStore
from .keys import KeyProvider, PublicKeyCache, get_key_provider
from .logging_config import audit_log, set_request_id
from .models import (
    AttestRequest,
    InclusionProofResponse,
    KeysResponse,
    MerkleRootResponse,
    ProofExistsResponse,
    ProofQueuedResponse,
    ProofStatusResponse,
    VerifyCertificateResponse,
    VerifyRequest,
)
from .pipeline import AnalysisInfo, Checkpoint, CheckpointAttestor
from .proofs import request_proof_for
from .prover_client import ProofDispatcher, ProverClient
from .rate_limit import RateLimiter
from .security import (
    ValidationError,
    check_api_key,
    extract_client_id,
    generate_request_id,
    sanitize_for_logging,
    validate_certificate_structure,
    validate_identifier,
)

logger = logging.getLogger(__name__)


def _load_key_provider(settings: Settings) -> Optional[KeyProvider]:
    try:
        return get_key_provider(
            signer_type=settings.signer_type,
            signing_key_path=settings.signing_key_path,
            signing_key_hex=settings.signing_key_hex,
            signing_key_id=settings.signing_key_id,
            kms_key_id=settings.aws_kms_key_id,
            kms_region=settings.aws_region or None,
            kms_kid=settings.aws_kms_kid,
        )
    except (OSError, ValueError, SigningKeyError) as e:
        # verification endpoints still work without a signer
        logger.warning("signing key unavailable, attestation disabled: %s", e)
        return None


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[AttestationStore] = None,
    key_provider: Optional[KeyProvider] = None,
    prover: Optional[ProverClient] = None,
    dispatcher: Optional[ProofDispatcher] = None,
) -> FastAPI:
    """
    Build the service.

    Every collaborator can be injected; anything not supplied is built
    from settings (Settings.from_env() by default).
    """
    settings = settings or Settings.from_env()
    owns_store = store is None
    store = store or SqliteAttestationStore(settings.db_path)
    if key_provider is None:
        key_provider = _load_key_provider(settings)
    if prover is None and settings.prover_enabled:
        prover = ProverClient(settings.prover_url, settings.prover_api_key,
                              timeout=settings.prover_timeout_seconds)
    if dispatcher is None and prover is not None:
        dispatcher = ProofDispatcher(prover, maxsize=settings.proof_queue_size)

    if key_provider is not None:
        try:
            store.register_signing_key(key_provider.get_kid(), key_provider.public_key_hex())
        except Exception:
            # KMS lookups may fail at boot; the key can be registered with tools/gen_keys.py
            logger.exception("could not register signing key %s", key_provider.get_kid())

    key_cache = PublicKeyCache(store, ttl_seconds=settings.key_cache_ttl)
    verify_limiter = RateLimiter(settings.verify_rpm)
    attest_limiter = RateLimiter(settings.attest_rpm)
    attestor = None
    if key_provider is not None:
        attestor = CheckpointAttestor(
            store, key_provider,
            base_url=settings.public_base_url,
            dispatcher=dispatcher,
            sample_rate=settings.prove_sample_rate,
        )

    app = FastAPI(title="Integrity Attestation Service")
    app.state.settings = settings
    app.state.store = store
    app.state.key_cache = key_cache
    app.state.dispatcher = dispatcher
    app.state.attestor = attestor

    # ---- Plumbing ----

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        rid = set_request_id(request.headers.get("x-request-id") or generate_request_id())
        response = await call_next(request)
        response.headers["X-Request-ID"] = rid
        return response

    @app.exception_handler(ValidationError)
    async def _validation_error(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={
            "detail": "VALIDATION_ERROR", "field": exc.field, "message": exc.message,
        })

    @app.exception_handler(StoreError)
    async def _store_error(request: Request, exc: StoreError):
        logger.error("store failure on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=503, content={"detail": "STORE_UNAVAILABLE"})

    def require_api_key(x_api_key: Optional[str] = Header(default=None)) -> str:
        if not check_api_key(x_api_key, settings.api_keys):
            audit_log.security_event("invalid_api_key", severity="medium")
            raise HTTPException(401, "UNAUTHORIZED")
        return x_api_key

    def rate_limited(limiter: RateLimiter, endpoint: str, request: Request) -> None:
        client_id = extract_client_id(
            request.headers,
            request.client.host if request.client else None,
            authenticated=check_api_key(request.headers.get("x-api-key"), settings.api_keys),
            trust_forwarded=settings.trust_proxy_headers,
        )
        result = limiter.check(client_id)
        if not result.allowed:
            audit_log.rate_limit_exceeded(client_id, endpoint)
            raise HTTPException(429, "RATE_LIMIT", headers=result.headers())

    def load_checkpoint(checkpoint_id: str):
        validate_identifier(checkpoint_id, "checkpoint_id")
        cp = store.get_checkpoint(checkpoint_id)
        if cp is None:
            raise HTTPException(404, "CHECKPOINT_NOT_FOUND")
        return cp

    @app.on_event("shutdown")
    def _shutdown():
        if dispatcher is not None:
            dispatcher.close()
        if owns_store:
            store.close()

    # ---- Routes ----

    @app.get("/health")
    def health():
        return {
            "status": "ok",
            "signer": key_provider.get_kid() if key_provider else None,
            "prover_configured": prover is not None,
            "proofs_pending_dispatch": dispatcher.pending if dispatcher is not None else 0,
            "store": store.get_db_stats() if hasattr(store, "get_db_stats") else {},
        }

    @app.get("/v1/keys", response_model=KeysResponse)
    def list_keys():
        keys = store.list_active_signing_keys()
        return {"keys": [k.to_dict() for k in keys]}

    @app.post("/v1/checkpoints", status_code=201)
    def attest_checkpoint(req: AttestRequest, request: Request, _key: str = Depends(require_api_key)):
        rate_limited(attest_limiter, "attest", request)
        if attestor is None:
            raise HTTPException(503, "SIGNER_UNAVAILABLE")
        try:
            result = attestor.attest(
                Checkpoint(**req.checkpoint.model_dump()),
                CommitmentInputs(**req.inputs.model_dump()),
                AnalysisInfo(**req.analysis.model_dump()),
            )
        except DuplicateCheckpointError:
            raise HTTPException(409, "CHECKPOINT_EXISTS")
        except ChainConsistencyError:
            raise HTTPException(409, "CHAIN_CONFLICT")
        except InputError as e:
            logger.warning("rejected checkpoint: %s %s", e, sanitize_for_logging(req.checkpoint.model_dump()))
            raise HTTPException(400, f"INVALID_INPUT: {e}")
        return {"attestation": result.attestation(), "certificate": result.certificate}

    @app.get("/v1/checkpoints/{checkpoint_id}/certificate")
    def get_certificate(checkpoint_id: str):
        cp = load_checkpoint(checkpoint_id)
        if not cp.certificate_id:
            raise HTTPException(404, "CERTIFICATE_NOT_AVAILABLE")
        cert = reconstruct_certificate(store, cp, settings.public_base_url)
        audit_log.certificate_served(cp.checkpoint_id, cp.certificate_id)
        return cert

    @app.post("/v1/verify", response_model=VerifyCertificateResponse)
    def verify(req: VerifyRequest, request: Request):
        rate_limited(verify_limiter, "verify", request)
        cert = validate_certificate_structure(req.certificate)
        report = CertificateVerifier(key_cache.resolve, prover).verify(cert)

        sig = report.checks.get("signature") or {}
        key_id = sig.get("key_id")
        if not sig.get("valid") and isinstance(key_id, str) and key_id:
            key_cache.invalidate(key_id)

        failed = [name for name, c in report.checks.items() if c is not None and not c["valid"]]
        audit_log.verification_result(cert.get("certificate_id"), report.valid, failed)
        return report.to_dict()

    @app.get("/v1/agents/{agent_id}/merkle-root", response_model=MerkleRootResponse)
    def merkle_root(agent_id: str):
        validate_identifier(agent_id, "agent_id")
        tree = store.get_agent_merkle_tree(agent_id)
        if tree is None:
            raise HTTPException(404, "MERKLE_TREE_NOT_FOUND")
        return {
            "agent_id": tree.agent_id,
            "merkle_root": tree.merkle_root,
            "tree_depth": tree.tree_depth,
            "leaf_count": tree.leaf_count,
            "last_updated": tree.last_updated,
        }

    @app.get("/v1/checkpoints/{checkpoint_id}/inclusion-proof", response_model=InclusionProofResponse)
    def inclusion_proof(checkpoint_id: str):
        cp = load_checkpoint(checkpoint_id)
        if cp.merkle_leaf_index is None:
            raise HTTPException(404, "NO_MERKLE_PROOF")
        tree = store.get_agent_merkle_tree(cp.agent_id)
        if tree is None:
            raise HTTPException(404, "MERKLE_TREE_NOT_FOUND")
        try:
            proof = generate_inclusion_proof(tree.leaf_hashes, cp.merkle_leaf_index)
        except MerkleIndexError:
            raise HTTPException(422, "LEAF_INDEX_OUT_OF_RANGE")

        verified = verify_inclusion_proof(proof, proof.leaf_hash, tree.merkle_root)
        body = proof.to_dict()
        body.update(checkpoint_id=cp.checkpoint_id, root=tree.merkle_root, verified=verified)
        return body

    @app.post(
        "/v1/checkpoints/{checkpoint_id}/prove",
        status_code=202,
        responses={200: {"model": ProofExistsResponse}, 202: {"model": ProofQueuedResponse}},
    )
    def prove(checkpoint_id: str, _key: str = Depends(require_api_key)):
        cp = load_checkpoint(checkpoint_id)
        outcome = request_proof_for(store, dispatcher, cp)
        if not outcome.created:
            body = ProofExistsResponse(proof_id=outcome.proof_id, status=outcome.status)
            return JSONResponse(status_code=200, content=body.model_dump())
        body = ProofQueuedResponse(
            proof_id=outcome.proof_id,
            status=outcome.status,
            estimated_completion_ms=outcome.estimated_completion_ms,
        )
        return JSONResponse(status_code=202, content=body.model_dump())

    @app.get("/v1/checkpoints/{checkpoint_id}/proof", response_model=ProofStatusResponse)
    def get_proof(checkpoint_id: str):
        validate_identifier(checkpoint_id, "checkpoint_id")
        row = store.get_latest_proof(checkpoint_id)
        if row is None:
            raise HTTPException(404, "PROOF_NOT_FOUND")
        return row.to_dict()

    return app


