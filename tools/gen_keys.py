"""Generate a local Ed25519 signing key and register its public half in the store."""
import json
import os
import sys

from attest_service.config import DB_PATH, SIGNING_KEY_PATH
from attest_service.db import SqliteAttestationStore
from integrity_attest.signing import generate_keypair, public_key_to_hex

kid = sys.argv[1] if len(sys.argv) > 1 else "attest-signing-01"

os.makedirs(os.path.dirname(SIGNING_KEY_PATH) or ".", exist_ok=True)

sk, pk = generate_keypair()

with open(SIGNING_KEY_PATH, "w", encoding="utf-8") as f:
    json.dump({"kid": kid, "secret_key_hex": sk.hex()}, f, indent=2)

store = SqliteAttestationStore(DB_PATH)
store.register_signing_key(kid, public_key_to_hex(pk))
store.close()

print(f"Generated signing key {kid} -> {SIGNING_KEY_PATH} (registered in {DB_PATH}).")
