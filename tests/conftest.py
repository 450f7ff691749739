import pytest
from fastapi.testclient import TestClient

from attest_service.config import Settings
from attest_service.db import SqliteAttestationStore
from attest_service.keys import StaticKeyProvider
from attest_service.main import create_app
from attest_service.pipeline import CheckpointAttestor
from integrity_attest.signing import generate_keypair

API_KEY = "test-api-key"
KEY_ID = "test-signing-01"
THINKING_HASH = "ab" * 32


def make_checkpoint_body(checkpoint_id, agent_id="agent-1", verdict="clear", timestamp=None, **overrides):
    body = {
        "checkpoint_id": checkpoint_id,
        "agent_id": agent_id,
        "session_id": "sess-1",
        "card_id": "card-1",
        "verdict": verdict,
        "concerns": [],
        "reasoning_summary": "No concerns found.",
        "thinking_block_hash": THINKING_HASH,
        "timestamp": timestamp or "2024-01-01T00:00:00.000Z",
    }
    body.update(overrides)
    return body


def make_inputs_body(**overrides):
    body = {
        "card": {"card_id": "card-1", "values": ["honesty", "safety"]},
        "conscience_values": [{"name": "honesty", "weight": 1}],
        "window_context": [{"role": "user", "content": "hello"}],
        "model_version": "model-2024-01",
        "prompt_template_version": "v3",
    }
    body.update(overrides)
    return body


@pytest.fixture
def store(tmp_path):
    s = SqliteAttestationStore(str(tmp_path / "attest.db"))
    yield s
    s.close()


@pytest.fixture
def key_provider(store):
    sk, _ = generate_keypair()
    provider = StaticKeyProvider(KEY_ID, sk)
    store.register_signing_key(provider.get_kid(), provider.public_key_hex())
    return provider


@pytest.fixture
def attestor(store, key_provider):
    return CheckpointAttestor(store, key_provider, base_url="https://attest.test")


@pytest.fixture
def settings(tmp_path):
    return Settings(
        db_path=str(tmp_path / "attest.db"),
        api_keys=(API_KEY,),
        public_base_url="https://attest.test",
    )


@pytest.fixture
def client(settings, store, key_provider):
    app = create_app(settings, store=store, key_provider=key_provider)
    return TestClient(app)


@pytest.fixture
def auth():
    return {"x-api-key": API_KEY}
