"""
Configuration module for the attestation service.

Centralizes all configuration with environment variable support and
validation. Module constants are read once at import; Settings is the
immutable snapshot handed to create_app.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple

# ============================================================
# Environment Configuration
# ============================================================

ENV = os.getenv("ATTEST_ENV", "dev")  # dev|stage|prod

# Store
DB_PATH = os.getenv("ATTEST_DB_PATH", "data/attest.db")

# Signing configuration
SIGNER_TYPE = os.getenv("ATTEST_SIGNER", "file")  # file|env|aws_kms
SIGNING_KEY_PATH = os.getenv("SIGNING_KEY_PATH", "secrets/signing_key.json")
SIGNING_KEY_HEX = os.getenv("SIGNING_KEY_HEX", "")
SIGNING_KEY_ID = os.getenv("SIGNING_KEY_ID", "")
AWS_KMS_KEY_ID = os.getenv("AWS_KMS_KEY_ID", "")
AWS_REGION = os.getenv("AWS_REGION", "")
AWS_KMS_KID = os.getenv("AWS_KMS_KID", "aws-kms-ed25519")

# External prover
PROVER_URL = os.getenv("PROVER_URL", "")
PROVER_API_KEY = os.getenv("PROVER_API_KEY", "")
PROVER_TIMEOUT_SECONDS = float(os.getenv("PROVER_TIMEOUT_SECONDS", "5"))
PROOF_QUEUE_SIZE = int(os.getenv("PROOF_QUEUE_SIZE", "256"))
PROVE_SAMPLE_RATE = float(os.getenv("PROVE_SAMPLE_RATE", "0.10"))

# Certificates
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "https://api.mnemom.ai")

# Authentication (comma-separated)
API_KEYS = os.getenv("ATTEST_API_KEYS", "")

# Cache TTL (seconds)
KEY_CACHE_TTL = int(os.getenv("KEY_CACHE_TTL", "300"))

# Rate limits (requests per minute)
VERIFY_RPM = int(os.getenv("VERIFY_RPM", "600"))
ATTEST_RPM = int(os.getenv("ATTEST_RPM", "240"))
# Honour X-Forwarded-For only behind a proxy that overwrites it
TRUST_PROXY_HEADERS = os.getenv("TRUST_PROXY_HEADERS", "false").lower() in ("1", "true", "yes")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("LOG_JSON", "true").lower() in ("1", "true", "yes")


def _split_keys(raw: str) -> Tuple[str, ...]:
    return tuple(k.strip() for k in raw.split(",") if k.strip())


@dataclass(frozen=True)
class Settings:
    """Immutable service settings."""
    env: str = "dev"
    db_path: str = "data/attest.db"
    signer_type: str = "file"
    signing_key_path: str = "secrets/signing_key.json"
    signing_key_hex: str = ""
    signing_key_id: str = ""
    aws_kms_key_id: str = ""
    aws_region: str = ""
    aws_kms_kid: str = "aws-kms-ed25519"
    prover_url: str = ""
    prover_api_key: str = ""
    prover_timeout_seconds: float = 5.0
    proof_queue_size: int = 256
    prove_sample_rate: float = 0.10
    public_base_url: str = "https://api.mnemom.ai"
    api_keys: Tuple[str, ...] = field(default_factory=tuple)
    key_cache_ttl: int = 300
    verify_rpm: int = 600
    attest_rpm: int = 240
    trust_proxy_headers: bool = False

    @classmethod
    def from_env(cls) -> 'Settings':
        """Snapshot of the module-level environment configuration."""
        return cls(
            env=ENV,
            db_path=DB_PATH,
            signer_type=SIGNER_TYPE,
            signing_key_path=SIGNING_KEY_PATH,
            signing_key_hex=SIGNING_KEY_HEX,
            signing_key_id=SIGNING_KEY_ID,
            aws_kms_key_id=AWS_KMS_KEY_ID,
            aws_region=AWS_REGION,
            aws_kms_kid=AWS_KMS_KID,
            prover_url=PROVER_URL,
            prover_api_key=PROVER_API_KEY,
            prover_timeout_seconds=PROVER_TIMEOUT_SECONDS,
            proof_queue_size=PROOF_QUEUE_SIZE,
            prove_sample_rate=PROVE_SAMPLE_RATE,
            public_base_url=PUBLIC_BASE_URL,
            api_keys=_split_keys(API_KEYS),
            key_cache_ttl=KEY_CACHE_TTL,
            verify_rpm=VERIFY_RPM,
            attest_rpm=ATTEST_RPM,
            trust_proxy_headers=TRUST_PROXY_HEADERS,
        )

    @property
    def prover_enabled(self) -> bool:
        return bool(self.prover_url)


# ============================================================
# Validation
# ============================================================

def validate_config(settings: Optional[Settings] = None) -> Dict[str, bool]:
    """
    Validate that required configuration is present.
    Returns dict of name -> present.
    """
    s = settings or Settings.from_env()
    db_dir = Path(s.db_path).parent
    checks = {"db_dir": db_dir.exists() or str(db_dir) in ("", ".")}

    if s.signer_type == "file":
        checks["signing_key"] = Path(s.signing_key_path).exists()
    elif s.signer_type == "env":
        checks["signing_key"] = bool(s.signing_key_hex and s.signing_key_id)
    elif s.signer_type == "aws_kms":
        checks["signing_key"] = bool(s.aws_kms_key_id)
    else:
        checks["signing_key"] = False

    if is_production(s):
        checks["api_keys"] = bool(s.api_keys)

    return checks


# ============================================================
# Feature Flags
# ============================================================

def is_production(settings: Optional[Settings] = None) -> bool:
    """Check if running in production mode."""
    return (settings.env if settings else ENV) == "prod"


