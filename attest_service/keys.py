"""
Checkpoint signing keys and the verifier's public-key lookup.

A :class:`KeyProvider` produces (key_id, base64 Ed25519 signature) for a
signed-payload string. Local providers hold the secret in memory; the KMS
provider never sees it.
"""

import json
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Tuple

from integrity_attest.errors import SigningKeyError
from integrity_attest.signing import (
    get_public_key_from_secret,
    load_signing_key_from_hex,
    public_key_to_hex,
    sign,
)
from integrity_attest.util import b64e

from .db import AttestationStore


class KeyProvider(ABC):

    @abstractmethod
    def sign_payload(self, payload: str) -> Tuple[str, str]:
        """Return (key_id, signature_b64) over the UTF-8 bytes of ``payload``."""

    @abstractmethod
    def get_kid(self) -> str:
        ...

    @abstractmethod
    def public_key_hex(self) -> str:
        """64 hex characters, as registered in the signing key table."""


class StaticKeyProvider(KeyProvider):

    def __init__(self, kid: str, secret_key: bytes):
        if not kid:
            raise SigningKeyError(kid, "key id required")
        self._kid = kid
        self._sk = secret_key
        self._pk_hex = public_key_to_hex(get_public_key_from_secret(secret_key))

    @classmethod
    def from_hex(cls, kid: str, secret_key_hex: str) -> "StaticKeyProvider":
        return cls(kid, load_signing_key_from_hex(secret_key_hex))

    def sign_payload(self, payload: str) -> Tuple[str, str]:
        return self._kid, sign(payload, self._sk)

    def get_kid(self) -> str:
        return self._kid

    def public_key_hex(self) -> str:
        return self._pk_hex


class FileKeyProvider(StaticKeyProvider):
    """Reads {"kid": ..., "secret_key_hex": ...} as written by tools/gen_keys.py."""

    def __init__(self, signing_key_path: str):
        with open(signing_key_path, "r", encoding="utf-8") as f:
            doc = json.load(f)
        missing = [k for k in ("kid", "secret_key_hex") if not doc.get(k)]
        if missing:
            raise SigningKeyError(str(doc.get("kid", "")), f"key file missing {', '.join(missing)}")
        super().__init__(doc["kid"], load_signing_key_from_hex(doc["secret_key_hex"]))


class KmsKeyProvider(KeyProvider):
    """
    Signs through an AWS KMS asymmetric key (KeySpec ECC_NIST_EDWARDS25519).

    The boto3 client is created on first use so a service configured for
    KMS starts without touching AWS. The public key is fetched once and
    reduced from its SubjectPublicKeyInfo DER to the trailing 32 raw bytes.
    """

    SIGNING_ALGORITHM = "ED25519_SHA_512"

    def __init__(self, kms_key_id: str, region: Optional[str] = None, kid: Optional[str] = None):
        self.kms_key_id = kms_key_id
        self.region = region
        self._kid = kid or "aws-kms-ed25519"
        self._kms = None
        self._pk_hex: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def kms(self):
        with self._lock:
            if self._kms is None:
                import boto3
                self._kms = boto3.client("kms", region_name=self.region)
            return self._kms

    def sign_payload(self, payload: str) -> Tuple[str, str]:
        resp = self.kms.sign(
            KeyId=self.kms_key_id,
            Message=payload.encode("utf-8"),
            MessageType="RAW",
            SigningAlgorithm=self.SIGNING_ALGORITHM,
        )
        return self._kid, b64e(resp["Signature"])

    def get_kid(self) -> str:
        return self._kid

    def public_key_hex(self) -> str:
        if self._pk_hex is None:
            der = self.kms.get_public_key(KeyId=self.kms_key_id)["PublicKey"]
            self._pk_hex = public_key_to_hex(der[-32:])
        return self._pk_hex


def get_key_provider(
    signer_type: str = "file",
    signing_key_path: str = "secrets/signing_key.json",
    signing_key_hex: Optional[str] = None,
    signing_key_id: Optional[str] = None,
    kms_key_id: Optional[str] = None,
    kms_region: Optional[str] = None,
    kms_kid: Optional[str] = None,
) -> KeyProvider:
    """
    Build the signer named by ``signer_type``: "file" reads a
    {"kid", "secret_key_hex"} JSON file, "env" takes the hex secret and
    key id directly, "aws_kms" signs remotely. Missing settings for the
    chosen signer raise ValueError.
    """
    if signer_type == "file":
        return FileKeyProvider(signing_key_path)
    if signer_type == "env":
        if not (signing_key_hex and signing_key_id):
            raise ValueError("env signer needs SIGNING_KEY_HEX and SIGNING_KEY_ID")
        return StaticKeyProvider.from_hex(signing_key_id, signing_key_hex)
    if signer_type == "aws_kms":
        if not kms_key_id:
            raise ValueError("aws_kms signer needs AWS_KMS_KEY_ID")
        return KmsKeyProvider(kms_key_id, region=kms_region, kid=kms_kid)
    raise ValueError(f"unknown signer type: {signer_type}")


class PublicKeyCache:
    """
    TTL-bounded cache of key_id -> public key hex in front of the store.

    Created once per application and passed to whoever needs it. Only
    active keys are cached; unknown keys are looked up every time so a
    newly registered key is visible immediately.
    """

    def __init__(
        self,
        store: AttestationStore,
        ttl_seconds: int = 300,
        clock: Callable[[], float] = time.monotonic
    ):
        self._store = store
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.RLock()

    def resolve(self, key_id: str) -> Optional[str]:
        """
        Public key hex for an active key_id, or None.

        Raises:
            StoreError: If the store cannot be reached
        """
        with self._lock:
            entry = self._entries.get(key_id)
            if entry is not None and (self._clock() - entry[1]) <= self._ttl:
                return entry[0]
            self._entries.pop(key_id, None)

        record = self._store.get_active_signing_key(key_id)
        if record is None:
            return None
        with self._lock:
            self._entries[key_id] = (record.public_key, self._clock())
        return record.public_key

    def invalidate(self, key_id: Optional[str] = None) -> None:
        """Drop one entry (e.g. after a failed signature check) or all of them."""
        with self._lock:
            if key_id:
                self._entries.pop(key_id, None)
            else:
                self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
