"""Integrity attestation service: HTTP API, store and key management around integrity_attest."""

__version__ = "1.0.0"
