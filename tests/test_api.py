import json

from fastapi.testclient import TestClient

from attest_service.config import Settings
from attest_service.main import create_app
from integrity_attest import InclusionProof, StoreError, verify_inclusion_proof

from conftest import API_KEY, KEY_ID, make_checkpoint_body, make_inputs_body


def attest(client, auth, checkpoint_id, agent_id="agent-1", verdict="clear", second=0):
    body = {
        "checkpoint": make_checkpoint_body(
            checkpoint_id, agent_id=agent_id, verdict=verdict,
            timestamp=f"2024-01-01T00:00:{second:02d}.000Z",
        ),
        "inputs": make_inputs_body(),
        "analysis": {"model": "analysis-model", "duration_ms": 120, "confidence": 0.8},
    }
    return client.post("/v1/checkpoints", json=body, headers=auth)


def attest_many(client, auth, n, agent_id="agent-1"):
    for i in range(n):
        r = attest(client, auth, f"{agent_id}-cp-{i}", agent_id=agent_id, second=i)
        assert r.status_code == 201, r.text


# ---- Health and keys ----

def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"
    assert r.json()["signer"] == KEY_ID
    assert r.json()["proofs_pending_dispatch"] == 0
    assert r.headers["X-Request-ID"]


def test_request_id_echoed(client):
    r = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert r.headers["X-Request-ID"] == "req-123"


def test_keys_lists_active_signer(client):
    r = client.get("/v1/keys")
    assert r.status_code == 200
    keys = r.json()["keys"]
    assert [k["key_id"] for k in keys] == [KEY_ID]
    assert keys[0]["algorithm"] == "Ed25519"
    assert keys[0]["is_active"] is True
    assert len(keys[0]["public_key"]) == 64


# ---- Attestation ----

def test_attest_requires_api_key(client):
    body = {"checkpoint": make_checkpoint_body("cp-1"), "inputs": make_inputs_body()}
    assert client.post("/v1/checkpoints", json=body).status_code == 401
    assert client.post("/v1/checkpoints", json=body, headers={"x-api-key": "wrong"}).status_code == 401


def test_attest_genesis(client, auth):
    r = attest(client, auth, "cp-1")
    assert r.status_code == 201, r.text
    data = r.json()
    att = data["attestation"]
    assert att["chain_position"] == 0
    assert att["prev_chain_hash"] is None
    assert att["merkle_leaf_index"] == 0
    assert att["signing_key_id"] == KEY_ID
    assert att["certificate_id"] == data["certificate"]["certificate_id"]
    assert data["certificate"]["claims"]["analysis_model"] == "analysis-model"


def test_attest_duplicate_conflicts(client, auth):
    assert attest(client, auth, "cp-1").status_code == 201
    r = attest(client, auth, "cp-1")
    assert r.status_code == 409
    assert r.json()["detail"] == "CHECKPOINT_EXISTS"


def test_attest_bad_thinking_hash(client, auth):
    body = {
        "checkpoint": make_checkpoint_body("cp-1", thinking_block_hash="xyz"),
        "inputs": make_inputs_body(),
    }
    r = client.post("/v1/checkpoints", json=body, headers=auth)
    assert r.status_code == 400
    assert r.json()["detail"] == "VALIDATION_ERROR"
    assert r.json()["field"] == "thinking_block_hash"


def test_attest_unknown_verdict_is_unprocessable(client, auth):
    body = {
        "checkpoint": make_checkpoint_body("cp-1", verdict="maybe"),
        "inputs": make_inputs_body(),
    }
    assert client.post("/v1/checkpoints", json=body, headers=auth).status_code == 422


def test_attest_non_finite_input_rejected(client, auth):
    body = {
        "checkpoint": make_checkpoint_body("cp-1"),
        "inputs": make_inputs_body(card={"score": float("nan")}),
    }
    raw = json.dumps(body)  # emits NaN, which the JSON parser accepts
    r = client.post("/v1/checkpoints", content=raw,
                    headers={**auth, "content-type": "application/json"})
    assert r.status_code == 400
    assert r.json()["detail"].startswith("INVALID_INPUT")
    assert client.get("/v1/checkpoints/cp-1/certificate").status_code == 404


def test_attest_without_signer(tmp_path, store):
    app = create_app(
        Settings(db_path=str(tmp_path / "x.db"), api_keys=(API_KEY,),
                 signer_type="file", signing_key_path=str(tmp_path / "missing.json")),
        store=store,
    )
    c = TestClient(app)
    body = {"checkpoint": make_checkpoint_body("cp-1"), "inputs": make_inputs_body()}
    r = c.post("/v1/checkpoints", json=body, headers={"x-api-key": API_KEY})
    assert r.status_code == 503
    assert r.json()["detail"] == "SIGNER_UNAVAILABLE"
    assert c.get("/health").json()["signer"] is None


def test_attest_rate_limited(tmp_path, store, key_provider):
    app = create_app(Settings(db_path=str(tmp_path / "x.db"), api_keys=(API_KEY,), attest_rpm=2),
                     store=store, key_provider=key_provider)
    c = TestClient(app)
    headers = {"x-api-key": API_KEY}
    assert attest(c, headers, "cp-0", second=0).status_code == 201
    assert attest(c, headers, "cp-1", second=1).status_code == 201
    r = attest(c, headers, "cp-2", second=2)
    assert r.status_code == 429
    assert r.json()["detail"] == "RATE_LIMIT"
    assert "Retry-After" in r.headers


# ---- Certificates and verification ----

def test_certificate_round_trip_verifies(client, auth):
    attest(client, auth, "cp-1")
    cert = client.get("/v1/checkpoints/cp-1/certificate").json()
    assert cert["type"] == "IntegrityCertificate"
    assert cert["proofs"]["merkle"]["leaf_index"] == 0

    r = client.post("/v1/verify", json={"certificate": cert})
    assert r.status_code == 200
    report = r.json()
    assert report["valid"] is True, report["details"]
    assert report["checks"]["signature"] == {"valid": True, "key_id": KEY_ID}
    assert report["checks"]["verdict_derivation"] is None


def test_certificate_missing_checkpoint(client):
    r = client.get("/v1/checkpoints/nope/certificate")
    assert r.status_code == 404
    assert r.json()["detail"] == "CHECKPOINT_NOT_FOUND"


def test_certificate_bad_identifier(client):
    r = client.get("/v1/checkpoints/bad id!/certificate")
    assert r.status_code == 400


def test_ten_leaves_then_eleventh(client, auth):
    attest_many(client, auth, 10)
    cert7 = client.get("/v1/checkpoints/agent-1-cp-7/certificate").json()
    merkle = cert7["proofs"]["merkle"]
    assert merkle["leaf_index"] == 7
    assert merkle["tree_size"] == 10
    assert client.post("/v1/verify", json={"certificate": cert7}).json()["valid"] is True

    r = attest(client, auth, "agent-1-cp-10", second=10)
    assert r.status_code == 201
    root = client.get("/v1/agents/agent-1/merkle-root").json()
    assert root["leaf_count"] == 11
    assert root["tree_depth"] == 4

    proof = client.get("/v1/checkpoints/agent-1-cp-3/inclusion-proof").json()
    assert proof["root"] == root["merkle_root"]
    assert proof["verified"] is True
    parsed = InclusionProof.from_dict(proof)
    assert verify_inclusion_proof(parsed, parsed.leaf_hash, root["merkle_root"])

    # a proof issued before the append no longer matches the new root
    old = InclusionProof.from_dict(merkle)
    assert not verify_inclusion_proof(old, old.leaf_hash, root["merkle_root"])


def test_corrupted_signature_reports_every_check(client, auth):
    attest_many(client, auth, 3)
    cert = client.get("/v1/checkpoints/agent-1-cp-2/certificate").json()
    sig = cert["proofs"]["signature"]["value"]
    cert["proofs"]["signature"]["value"] = ("A" if sig[0] != "A" else "B") + sig[1:]

    report = client.post("/v1/verify", json={"certificate": cert}).json()
    assert report["valid"] is False
    assert report["checks"]["signature"]["valid"] is False
    assert report["checks"]["chain"]["valid"] is True
    assert report["checks"]["merkle"]["valid"] is True
    assert report["checks"]["input_commitment"]["valid"] is True
    assert len(report["details"].split("; ")) == 5


def test_verify_deactivated_key(client, auth, store):
    attest(client, auth, "cp-1")
    cert = client.get("/v1/checkpoints/cp-1/certificate").json()
    assert client.post("/v1/verify", json={"certificate": cert}).json()["valid"] is True

    store.deactivate_signing_key(KEY_ID)
    # served from the key cache until the TTL expires
    assert client.post("/v1/verify", json={"certificate": cert}).json()["valid"] is True

    client.app.state.key_cache.invalidate(KEY_ID)
    report = client.post("/v1/verify", json={"certificate": cert}).json()
    assert report["valid"] is False
    assert report["checks"]["signature"]["valid"] is False
    assert "not found or inactive" in report["details"]
    assert report["checks"]["chain"]["valid"] is True


def test_verify_non_string_key_id_with_warm_cache(client, auth):
    attest(client, auth, "cp-1")
    cert = client.get("/v1/checkpoints/cp-1/certificate").json()
    assert client.post("/v1/verify", json={"certificate": cert}).json()["valid"] is True
    assert len(client.app.state.key_cache) == 1

    for key_id in (["k"], {"k": 1}, 7):
        junk = {"subject": {"checkpoint_id": "x"}, "proofs": {"signature": {"key_id": key_id}}}
        r = client.post("/v1/verify", json={"certificate": junk})
        assert r.status_code == 200
        assert r.json()["valid"] is False
        assert r.json()["checks"]["signature"] == {"valid": False, "key_id": ""}
    assert len(client.app.state.key_cache) == 1


def test_verify_merkle_section_from_other_checkpoint_rejected(client, auth):
    attest(client, auth, "cp-a", second=0)
    attest(client, auth, "cp-b", second=1)
    cert_a = client.get("/v1/checkpoints/cp-a/certificate").json()
    cert_b = client.get("/v1/checkpoints/cp-b/certificate").json()
    cert_a["proofs"]["merkle"] = cert_b["proofs"]["merkle"]
    report = client.post("/v1/verify", json={"certificate": cert_a}).json()
    assert report["valid"] is False
    assert report["checks"]["merkle"]["valid"] is False
    assert report["checks"]["signature"]["valid"] is True
    assert "leaf does not match certificate subject" in report["details"]


def verify_client(tmp_path, store, **overrides):
    settings = Settings(db_path=str(tmp_path / "x.db"), api_keys=(API_KEY,), verify_rpm=1, **overrides)
    return TestClient(create_app(settings, store=store))


def test_verify_rate_limit_ignores_spoofed_forwarded_for(tmp_path, store):
    c = verify_client(tmp_path, store)
    codes = [
        c.post("/v1/verify", json={"certificate": {}},
               headers={"x-forwarded-for": f"10.0.0.{i}"}).status_code
        for i in range(5)
    ]
    assert codes[0] == 400
    assert codes[1:] == [429] * 4


def test_verify_rate_limit_ignores_unchecked_api_key(tmp_path, store):
    c = verify_client(tmp_path, store)
    codes = [
        c.post("/v1/verify", json={"certificate": {}},
               headers={"x-api-key": f"bogus-key-{i:04d}"}).status_code
        for i in range(5)
    ]
    assert codes[1:] == [429] * 4


def test_verify_rate_limit_trusts_proxy_when_configured(tmp_path, store):
    c = verify_client(tmp_path, store, trust_proxy_headers=True)
    for i in range(3):
        r = c.post("/v1/verify", json={"certificate": {}}, headers={"x-forwarded-for": f"10.0.0.{i}"})
        assert r.status_code == 400


def test_verify_requires_certificate(client):
    r = client.post("/v1/verify", json={})
    assert r.status_code == 400
    assert r.json()["field"] == "certificate"
    r = client.post("/v1/verify", json={"certificate": {"subject": {}}})
    assert r.status_code == 400


# ---- Merkle endpoints ----

def test_merkle_root(client, auth):
    attest_many(client, auth, 3)
    r = client.get("/v1/agents/agent-1/merkle-root")
    assert r.status_code == 200
    data = r.json()
    assert data["agent_id"] == "agent-1"
    assert data["leaf_count"] == 3
    assert data["tree_depth"] == 2
    assert len(data["merkle_root"]) == 64


def test_merkle_root_unknown_agent(client):
    r = client.get("/v1/agents/ghost/merkle-root")
    assert r.status_code == 404
    assert r.json()["detail"] == "MERKLE_TREE_NOT_FOUND"


def test_inclusion_proof_unknown_checkpoint(client):
    assert client.get("/v1/checkpoints/ghost/inclusion-proof").status_code == 404


def test_agents_have_separate_trees(client, auth):
    attest_many(client, auth, 2, agent_id="a")
    attest_many(client, auth, 5, agent_id="b")
    assert client.get("/v1/agents/a/merkle-root").json()["leaf_count"] == 2
    assert client.get("/v1/agents/b/merkle-root").json()["leaf_count"] == 5
    proof = client.get("/v1/checkpoints/a-cp-1/inclusion-proof").json()
    assert proof["tree_size"] == 2
    assert proof["verified"] is True


# ---- Proofs ----

def test_prove_then_status(client, auth, store):
    attest(client, auth, "cp-1")
    r = client.post("/v1/checkpoints/cp-1/prove", headers=auth)
    assert r.status_code == 202
    queued = r.json()
    assert queued["status"] == "queued"
    assert queued["proof_id"].startswith("prf-")
    assert queued["estimated_completion_ms"] == 5000

    again = client.post("/v1/checkpoints/cp-1/prove", headers=auth)
    assert again.status_code == 200
    assert again.json()["proof_id"] == queued["proof_id"]
    assert again.json()["message"] == "Proof already exists for this checkpoint"

    status = client.get("/v1/checkpoints/cp-1/proof").json()
    assert status["status"] == "pending"
    assert status["proof_id"] == queued["proof_id"]
    assert "receipt" not in status


def test_prove_requires_api_key(client, auth):
    attest(client, auth, "cp-1")
    assert client.post("/v1/checkpoints/cp-1/prove").status_code == 401


def test_prove_unknown_checkpoint(client, auth):
    assert client.post("/v1/checkpoints/ghost/prove", headers=auth).status_code == 404


def test_proof_not_found(client):
    r = client.get("/v1/checkpoints/cp-1/proof")
    assert r.status_code == 404
    assert r.json()["detail"] == "PROOF_NOT_FOUND"


def test_completed_proof_appears_in_certificate(client, auth, store):
    attest(client, auth, "cp-1")
    proof_id = client.post("/v1/checkpoints/cp-1/prove", headers=auth).json()["proof_id"]
    store.update_proof(proof_id, "completed", image_id="img-1", receipt="receipt-bytes",
                       journal="{}", verified=True, verified_at="2024-01-01T00:00:05.000Z")

    cert = client.get("/v1/checkpoints/cp-1/certificate").json()
    vd = cert["proofs"]["verdict_derivation"]
    assert vd["image_id"] == "img-1"
    assert vd["method"] == "RISC-Zero-STARK"

    report = client.post("/v1/verify", json={"certificate": cert}).json()
    assert report["valid"] is True
    assert report["checks"]["verdict_derivation"]["structural_only"] is True


def test_store_failure_maps_to_503(client, store):
    def broken(*args, **kwargs):
        raise StoreError("disk gone")

    store.list_active_signing_keys = broken
    r = client.get("/v1/keys")
    assert r.status_code == 503
    assert r.json()["detail"] == "STORE_UNAVAILABLE"
