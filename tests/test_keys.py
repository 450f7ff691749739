import json

import pytest

from attest_service.config import Settings, validate_config
from attest_service.keys import FileKeyProvider, PublicKeyCache, StaticKeyProvider, get_key_provider
from attest_service.rate_limit import RateLimiter
from attest_service.security import (
    ValidationError,
    check_api_key,
    extract_client_id,
    sanitize_for_logging,
    validate_certificate_structure,
    validate_identifier,
    validate_sha256_hex,
    validate_timestamp,
)
from integrity_attest import SigningKeyError, generate_keypair, verify


class FakeClock:

    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class CountingStore:

    def __init__(self, store):
        self._store = store
        self.lookups = 0

    def get_active_signing_key(self, key_id):
        self.lookups += 1
        return self._store.get_active_signing_key(key_id)


# ---- Key providers ----

def test_static_provider_signs_verifiably():
    sk, _ = generate_keypair()
    provider = StaticKeyProvider("k1", sk)
    kid, sig = provider.sign_payload('{"a":1}')
    assert kid == "k1"
    assert verify(sig, '{"a":1}', provider.public_key_hex())


def test_static_provider_requires_kid():
    sk, _ = generate_keypair()
    with pytest.raises(SigningKeyError):
        StaticKeyProvider("", sk)


def test_file_provider(tmp_path):
    sk, pk = generate_keypair()
    path = tmp_path / "signing_key.json"
    path.write_text(json.dumps({"kid": "file-01", "secret_key_hex": sk.hex()}))
    provider = FileKeyProvider(str(path))
    assert provider.get_kid() == "file-01"
    assert provider.public_key_hex() == pk.hex()


def test_file_provider_missing_field(tmp_path):
    path = tmp_path / "signing_key.json"
    path.write_text(json.dumps({"kid": "file-01"}))
    with pytest.raises(SigningKeyError):
        FileKeyProvider(str(path))


def test_factory_env_signer():
    sk, pk = generate_keypair()
    provider = get_key_provider("env", signing_key_hex=sk.hex(), signing_key_id="env-01")
    assert provider.get_kid() == "env-01"
    assert provider.public_key_hex() == pk.hex()


def test_factory_requires_settings():
    with pytest.raises(ValueError):
        get_key_provider("env")
    with pytest.raises(ValueError):
        get_key_provider("aws_kms")


def test_factory_kms_is_lazy():
    provider = get_key_provider("aws_kms", kms_key_id="alias/attest", kms_kid="kms-01")
    assert provider.get_kid() == "kms-01"


# ---- Public key cache ----

def test_cache_hits_within_ttl(store):
    store.register_signing_key("k1", "ab" * 32)
    counting = CountingStore(store)
    clock = FakeClock()
    cache = PublicKeyCache(counting, ttl_seconds=300, clock=clock)

    assert cache.resolve("k1") == "ab" * 32
    assert cache.resolve("k1") == "ab" * 32
    assert counting.lookups == 1
    assert len(cache) == 1

    clock.now += 301
    cache.resolve("k1")
    assert counting.lookups == 2


def test_cache_does_not_remember_unknown_keys(store):
    counting = CountingStore(store)
    cache = PublicKeyCache(counting)
    assert cache.resolve("nope") is None
    store.register_signing_key("nope", "cd" * 32)
    assert cache.resolve("nope") == "cd" * 32


def test_cache_invalidate_sees_deactivation(store):
    store.register_signing_key("k1", "ab" * 32)
    cache = PublicKeyCache(store)
    assert cache.resolve("k1")
    store.deactivate_signing_key("k1")
    assert cache.resolve("k1") == "ab" * 32
    cache.invalidate("k1")
    assert cache.resolve("k1") is None
    cache.invalidate()
    assert len(cache) == 0


# ---- Rate limiting ----

def test_rate_limiter_window():
    clock = FakeClock()
    limiter = RateLimiter(rpm=2, clock=clock)
    assert limiter.allow("c")
    assert limiter.allow("c")
    blocked = limiter.check("c")
    assert not blocked.allowed
    assert blocked.headers()["Retry-After"]
    assert limiter.allow("other")

    clock.now += 61
    assert limiter.allow("c")


def test_rate_limiter_reset():
    limiter = RateLimiter(rpm=1, clock=FakeClock())
    assert limiter.allow("c")
    assert not limiter.allow("c")
    limiter.reset("c")
    assert limiter.allow("c")


def test_rate_limiter_forgets_idle_clients():
    clock = FakeClock()
    limiter = RateLimiter(rpm=5, clock=clock)
    for i in range(100):
        limiter.allow(f"client-{i}")
    assert len(limiter) == 100

    clock.now += 30
    limiter.allow("recent")
    assert limiter.cleanup_expired() == 0

    clock.now += 31
    assert limiter.cleanup_expired() == 100
    assert len(limiter) == 1


def test_rate_limiter_sweeps_during_checks():
    clock = FakeClock()
    limiter = RateLimiter(rpm=5, clock=clock)
    for i in range(50):
        limiter.allow(f"client-{i}")
    clock.now += 61
    limiter.allow("late")
    assert len(limiter) == 1


# ---- Security helpers ----

def test_api_key_check():
    assert check_api_key("k2", ("k1", "k2"))
    assert not check_api_key("k3", ("k1", "k2"))
    assert not check_api_key(None, ("k1",))
    assert not check_api_key("k1", ())


def test_validators():
    assert validate_sha256_hex("AB" * 32, "h") == "ab" * 32
    with pytest.raises(ValidationError):
        validate_sha256_hex("ab", "h")
    with pytest.raises(ValidationError):
        validate_identifier("../etc/passwd", "checkpoint_id")
    assert validate_timestamp("2024-01-01T00:00:00.000Z")
    with pytest.raises(ValidationError):
        validate_timestamp("yesterday")


def test_certificate_structure():
    with pytest.raises(ValidationError):
        validate_certificate_structure("nope")
    with pytest.raises(ValidationError):
        validate_certificate_structure({"subject": {"checkpoint_id": "cp"}})
    cert = {"subject": {"checkpoint_id": "cp"}, "proofs": {"signature": {}}}
    assert validate_certificate_structure(cert) is cert


def test_client_id_extraction():
    assert extract_client_id({"x-api-key": "abcdefghijk"}, "9.9.9.9", authenticated=True) == "api:abcdefgh"
    assert extract_client_id({"x-api-key": "abcdefghijk"}, "9.9.9.9") == "ip:9.9.9.9"
    assert extract_client_id({"x-forwarded-for": "1.2.3.4, 5.6.7.8"}, "9.9.9.9") == "ip:9.9.9.9"
    assert extract_client_id({"x-forwarded-for": "1.2.3.4, 5.6.7.8"}, "9.9.9.9", trust_forwarded=True) == "ip:1.2.3.4"
    assert extract_client_id({}, "9.9.9.9", trust_forwarded=True) == "ip:9.9.9.9"
    assert extract_client_id({}) == "anonymous"


def test_sanitize_for_logging():
    out = sanitize_for_logging({"secret_key_hex": "0123456789abcdef", "nested": {"api_key": "x"}, "ok": 1})
    assert out["secret_key_hex"] == "0123...cdef"
    assert out["nested"]["api_key"] == "[REDACTED]"
    assert out["ok"] == 1


# ---- Config ----

def test_validate_config(tmp_path):
    key = tmp_path / "k.json"
    key.write_text("{}")
    checks = validate_config(Settings(db_path=str(tmp_path / "a.db"), signing_key_path=str(key)))
    assert checks == {"db_dir": True, "signing_key": True}

    prod = validate_config(Settings(env="prod", signer_type="env", db_path=str(tmp_path / "a.db")))
    assert prod["signing_key"] is False
    assert prod["api_keys"] is False


def test_prover_enabled():
    assert not Settings().prover_enabled
    assert Settings(prover_url="http://prover").prover_enabled
