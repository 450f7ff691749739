"""
Utility functions for the attestation engine.

Encoding, constant-time comparison, identifiers and timestamps.
"""

import base64
import hmac
import secrets
from datetime import datetime, timezone
from typing import Union

ID_ALPHABET = "abcdefghijklmnopqrstuvwxyz0123456789"


def b64e(b: bytes) -> str:
    """Base64 encode bytes to string."""
    return base64.b64encode(b).decode('ascii')


def b64d(s: str) -> bytes:
    """Strict base64 decode; raises binascii.Error (a ValueError) on bad input."""
    return base64.b64decode(s.encode('ascii'), validate=True)


def constant_time_compare(a: Union[str, bytes], b: Union[str, bytes]) -> bool:
    """
    Compare two strings/bytes in constant time to prevent timing attacks.
    """
    if isinstance(a, str):
        a = a.encode('utf-8')
    if isinstance(b, str):
        b = b.encode('utf-8')
    return hmac.compare_digest(a, b)


def random_id(prefix: str, length: int = 8) -> str:
    """
    Generate "<prefix>-<length lowercase alphanumerics>" from a CSPRNG.

    secrets.choice draws uniformly, so an 8-character suffix gives a
    36**8 keyspace.
    """
    suffix = ''.join(secrets.choice(ID_ALPHABET) for _ in range(length))
    return f"{prefix}-{suffix}"


def utc_now_iso() -> str:
    """Current instant as ISO-8601 UTC with millisecond precision, e.g. 2024-01-01T00:00:00.000Z."""
    return format_iso(datetime.now(timezone.utc))


def format_iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.isoformat(timespec='milliseconds').replace('+00:00', 'Z')
