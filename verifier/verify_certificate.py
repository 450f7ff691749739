#!/usr/bin/env python3
"""
Offline Integrity Certificate Verifier

Verifies an integrity certificate without contacting the service.
Suitable for air-gapped auditors: the only inputs are the certificate
and a snapshot of the published signing keys (the body of GET /v1/keys).

Usage:
    python verifier/verify_certificate.py <certificate.json> <keys.json>

Output:
    One PASS/FAIL line per check, then VALID or INVALID.
    Exit code 0 if the certificate is valid, 1 otherwise.
"""

import json
import sys
from typing import Any, Dict, Optional

from integrity_attest import verify_certificate


def load_json_file(path: str) -> Dict[str, Any]:
    """Load a JSON file."""
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def key_resolver(keys_doc: Dict[str, Any]):
    """Resolver over the active keys of a /v1/keys snapshot."""
    active = {
        k["key_id"]: k["public_key"]
        for k in keys_doc.get("keys", [])
        if k.get("is_active", True) and k.get("key_id") and k.get("public_key")
    }

    def resolve(key_id: str) -> Optional[str]:
        return active.get(key_id)

    return resolve


def main():
    if len(sys.argv) != 3:
        print("Usage: python verify_certificate.py <certificate.json> <keys.json>", file=sys.stderr)
        sys.exit(1)

    try:
        certificate = load_json_file(sys.argv[1])
        keys_doc = load_json_file(sys.argv[2])
    except FileNotFoundError as e:
        print(f"INVALID: File not found - {e.filename}", file=sys.stderr)
        sys.exit(1)
    except json.JSONDecodeError as e:
        print(f"INVALID: JSON parse error - {e}", file=sys.stderr)
        sys.exit(1)

    report = verify_certificate(certificate, key_resolver(keys_doc))

    print("\n" + "=" * 60)
    print("INTEGRITY CERTIFICATE VERIFICATION REPORT")
    print("=" * 60)

    for (name, check), reason in zip(report.checks.items(), report.trace):
        if check is None:
            status = "- SKIP"
        else:
            status = "✓ PASS" if check["valid"] else "✗ FAIL"
        print(f"\n{status}: {name}")
        print(f"       {reason}")

    print("\n" + "=" * 60)

    if report.valid:
        print("RESULT: VALID - Certificate verification passed")
        print("=" * 60)

        subject = certificate.get("subject", {})
        chain = certificate.get("proofs", {}).get("chain", {})
        print("\nCERTIFICATE SUMMARY:")
        print(f"  Certificate ID: {certificate.get('certificate_id')}")
        print(f"  Checkpoint ID:  {subject.get('checkpoint_id')}")
        print(f"  Agent ID:       {subject.get('agent_id')}")
        print(f"  Verdict:        {certificate.get('claims', {}).get('verdict')}")
        print(f"  Chain Position: {chain.get('position')}")
        print(f"  Chain Hash:     {str(chain.get('chain_hash', ''))[:32]}...")
        print(f"  Issued At:      {certificate.get('issued_at')}")

        sys.exit(0)
    else:
        failed = [name for name, c in report.checks.items() if c is not None and not c["valid"]]
        print(f"RESULT: INVALID - {len(failed)} check(s) failed")
        print("=" * 60)
        sys.exit(1)


if __name__ == "__main__":
    main()
