"""
Ed25519 checkpoint signing.

Keys are raw 32-byte Ed25519 keys. Public keys are exchanged as
lowercase hex, signatures as base64. The signature covers the UTF-8
bytes of the canonical signed-payload string.
"""

import binascii
from typing import Tuple, Union

from nacl.encoding import HexEncoder
from nacl.exceptions import BadSignatureError, CryptoError
from nacl.signing import SigningKey, VerifyKey

from .errors import InputError
from .util import b64d, b64e

ALGORITHM = "Ed25519"
KEY_BYTES = 32


def generate_keypair() -> Tuple[bytes, bytes]:
    """
    Generate an Ed25519 key pair.

    Returns:
        Tuple of (secret_key_bytes, public_key_bytes)
    """
    sk = SigningKey.generate()
    return bytes(sk), bytes(sk.verify_key)


def load_signing_key_from_hex(hex_key: str) -> bytes:
    """Decode a hex-encoded 32-byte secret key."""
    try:
        raw = binascii.unhexlify(hex_key.strip())
    except (binascii.Error, AttributeError, ValueError) as e:
        raise InputError("secret key must be hex-encoded") from e
    if len(raw) != KEY_BYTES:
        raise InputError(f"secret key must be {KEY_BYTES} bytes")
    return raw


def get_public_key_from_secret(secret_key: bytes) -> bytes:
    """Derive the public key for key registration. Never log the secret."""
    return bytes(SigningKey(secret_key).verify_key)


def public_key_to_hex(public_key: bytes) -> str:
    return binascii.hexlify(public_key).decode('ascii')


def sign(payload: str, secret_key: bytes) -> str:
    """Sign the UTF-8 bytes of payload; returns a base64 signature."""
    signature = SigningKey(secret_key).sign(payload.encode('utf-8')).signature
    return b64e(signature)


def verify(signature: str, payload: str, public_key: Union[bytes, str]) -> bool:
    """
    Verify a base64 Ed25519 signature over payload.

    Malformed signatures, payloads or keys are a verification failure,
    never an exception.
    """
    try:
        if isinstance(public_key, str):
            vk = VerifyKey(public_key.strip().lower().encode('ascii'), encoder=HexEncoder)
        else:
            vk = VerifyKey(public_key)
        vk.verify(payload.encode('utf-8'), b64d(signature))
        return True
    except (BadSignatureError, CryptoError, ValueError, TypeError, AttributeError, UnicodeError):
        return False
