"""
Request-boundary guards for the attestation service.

Field validators raise :class:`ValidationError`, which the API maps to a
400 naming the offending field. Also here: API-key checks, client
identification for rate limiting and masking of secrets before logging.
"""

import re
import uuid
from typing import Any, Dict, Iterable, Mapping, Optional

from integrity_attest.util import constant_time_compare

SHA256_HEX = re.compile(r"^[0-9a-f]{64}$")
IDENTIFIER = re.compile(r"^[A-Za-z0-9_.:-]{1,128}$")
ISO_TIMESTAMP = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d{1,6})?(Z|[+-]\d{2}:\d{2})$")
VERDICTS = ("clear", "review_needed", "boundary_violation")

SENSITIVE_FIELDS = frozenset({"secret_key_hex", "api_key", "receipt", "secret", "password", "token"})


class ValidationError(Exception):
    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


def _require_str(value: Any, field_name: str) -> str:
    if not isinstance(value, str):
        raise ValidationError(field_name, "must be a string")
    return value


def validate_sha256_hex(value: str, field_name: str) -> str:
    """Accept 64 hex characters in either case; return them lowercased."""
    normalized = _require_str(value, field_name).strip().lower()
    if not SHA256_HEX.match(normalized):
        raise ValidationError(field_name, "must be 64 hexadecimal characters")
    return normalized


def validate_identifier(value: str, field_name: str) -> str:
    if not isinstance(value, str) or not IDENTIFIER.match(value):
        raise ValidationError(field_name, "invalid format")
    return value


def validate_string_length(value: str, field_name: str, min_length: int = 1, max_length: int = 1000) -> str:
    n = len(_require_str(value, field_name))
    if not min_length <= n <= max_length:
        raise ValidationError(field_name, f"length must be between {min_length} and {max_length}")
    return value


def validate_verdict(value: str) -> str:
    if value not in VERDICTS:
        raise ValidationError("verdict", "must be one of " + ", ".join(VERDICTS))
    return value


def validate_timestamp(value: str, field_name: str = "timestamp") -> str:
    if not isinstance(value, str) or not ISO_TIMESTAMP.match(value):
        raise ValidationError(field_name, "must be an ISO-8601 timestamp")
    return value


def validate_certificate_structure(cert: Any) -> Dict[str, Any]:
    """
    Reject only what cannot be verified at all: a non-object, or one with
    no signature section or no subject checkpoint. Everything deeper is
    judged by the verification checks, which report rather than raise.
    """
    if not isinstance(cert, dict):
        raise ValidationError("certificate", "must be an object")
    proofs = cert.get("proofs")
    if not isinstance(proofs, dict) or not isinstance(proofs.get("signature"), dict):
        raise ValidationError("certificate.proofs.signature", "is required")
    subject = cert.get("subject")
    if not isinstance(subject, dict) or not subject.get("checkpoint_id"):
        raise ValidationError("certificate.subject.checkpoint_id", "is required")
    return cert


def check_api_key(presented: Optional[str], accepted: Iterable[str]) -> bool:
    """True if ``presented`` equals one of ``accepted``; every candidate is compared."""
    if not presented:
        return False
    results = [constant_time_compare(presented, key) for key in accepted]
    return any(results)


def generate_request_id() -> str:
    return str(uuid.uuid4())


def extract_client_id(
    headers: Mapping[str, str],
    client_host: Optional[str] = None,
    authenticated: bool = False,
    trust_forwarded: bool = False,
) -> str:
    """
    Rate-limit bucket for a request.

    Client-supplied headers only count when they can be trusted: the API
    key prefix once the key has been checked, X-Forwarded-For only behind
    a proxy that overwrites it. Otherwise the peer address is used.
    """
    api_key = headers.get("x-api-key")
    if authenticated and api_key:
        return "api:" + api_key[:8]
    host = client_host
    if trust_forwarded:
        host = (headers.get("x-forwarded-for") or "").split(",")[0].strip() or client_host
    return f"ip:{host}" if host else "anonymous"


def _mask(value: Any) -> str:
    if isinstance(value, str) and len(value) > 8:
        return f"{value[:4]}...{value[-4:]}"
    return "[REDACTED]"


def sanitize_for_logging(data: Mapping[str, Any], sensitive_fields: Iterable[str] = SENSITIVE_FIELDS) -> Dict[str, Any]:
    """Copy of ``data`` with sensitive values masked, recursing into dicts and lists of dicts."""
    sensitive = frozenset(sensitive_fields)

    def clean(value: Any) -> Any:
        if isinstance(value, Mapping):
            return sanitize_for_logging(value, sensitive)
        if isinstance(value, list):
            return [clean(item) for item in value]
        return value

    return {key: _mask(value) if key in sensitive else clean(value) for key, value in data.items()}
