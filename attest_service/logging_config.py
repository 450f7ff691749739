"""
Structured logging for the attestation service.

Every record can carry an ``extra_fields`` mapping; the JSON formatter
merges it into the emitted line. Audit events are plain records on the
``attest.audit`` logger whose ``extra_fields`` always include
``event_type`` so log pipelines can index on it.
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from .security import generate_request_id, sanitize_for_logging

request_id_var: ContextVar[str] = ContextVar("request_id", default="")

_TEXT_FORMAT = "%(asctime)s %(levelname)-7s [%(request_id)s] %(name)s: %(message)s"

_SEVERITY_LEVELS = {
    "low": logging.INFO,
    "medium": logging.WARNING,
    "high": logging.ERROR,
    "critical": logging.CRITICAL,
}


class RequestIdFilter(logging.Filter):
    """Stamp the active request id onto every record passing through."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = request_id_var.get() or "-"
        return True


class StructuredFormatter(logging.Formatter):
    """One JSON object per line, millisecond UTC timestamps."""

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry: Dict[str, Any] = {
            "ts": created.strftime("%Y-%m-%dT%H:%M:%S.") + f"{created.microsecond // 1000:03d}Z",
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}:{record.lineno}",
        }
        rid = getattr(record, "request_id", None) or request_id_var.get()
        if rid and rid != "-":
            entry["request_id"] = rid
        entry.update(getattr(record, "extra_fields", None) or {})
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str, ensure_ascii=False)


class AuditLogger:
    """Audit trail: attestations, certificate reads, verifications, proofs."""

    def __init__(self, name: str = "attest.audit"):
        self._logger = logging.getLogger(name)

    def emit(self, event_type: str, summary: str, level: int = logging.INFO, **fields: Any) -> None:
        if not self._logger.isEnabledFor(level):
            return
        payload = {"event_type": event_type}
        payload.update(sanitize_for_logging(fields))
        self._logger.log(level, "%s %s", event_type, summary, extra={"extra_fields": payload})

    def checkpoint_attested(
        self,
        checkpoint_id: str,
        agent_id: str,
        certificate_id: str,
        chain_position: int,
        leaf_index: int,
        key_id: str,
    ) -> None:
        self.emit(
            "CHECKPOINT_ATTESTED",
            f"{checkpoint_id} -> {certificate_id} (agent {agent_id}, position {chain_position})",
            checkpoint_id=checkpoint_id,
            agent_id=agent_id,
            certificate_id=certificate_id,
            chain_position=chain_position,
            leaf_index=leaf_index,
            key_id=key_id,
        )

    def certificate_served(self, checkpoint_id: str, certificate_id: str) -> None:
        self.emit("CERTIFICATE_SERVED", certificate_id,
                  checkpoint_id=checkpoint_id, certificate_id=certificate_id)

    def verification_result(
        self,
        certificate_id: Optional[str],
        valid: bool,
        failed_checks: Optional[Iterable[str]] = None,
    ) -> None:
        failed: List[str] = list(failed_checks or [])
        self.emit(
            "VERIFICATION_RESULT",
            "valid" if valid else "invalid: " + ",".join(failed),
            level=logging.INFO if valid else logging.WARNING,
            certificate_id=certificate_id,
            valid=valid,
            failed_checks=failed,
        )

    def proof_requested(self, proof_id: str, checkpoint_id: str, reason: str) -> None:
        self.emit("PROOF_REQUESTED", f"{proof_id} for {checkpoint_id} ({reason})",
                  proof_id=proof_id, checkpoint_id=checkpoint_id, reason=reason)

    def proof_request_failed(self, checkpoint_id: str, reason: str, proof_id: Optional[str] = None) -> None:
        """Proof requests never fail an attestation; this is the only trace they leave."""
        self.emit("PROOF_REQUEST_FAILED", f"{checkpoint_id}: {reason}", level=logging.WARNING,
                  proof_id=proof_id, checkpoint_id=checkpoint_id, reason=reason)

    def security_event(self, event: str, severity: str = "medium", **details: Any) -> None:
        self.emit("SECURITY_EVENT", event, level=_SEVERITY_LEVELS.get(severity, logging.WARNING),
                  security_event=event, severity=severity, **details)

    def rate_limit_exceeded(self, client_id: str, endpoint: str) -> None:
        self.emit("RATE_LIMIT_EXCEEDED", f"{client_id} on {endpoint}", level=logging.WARNING,
                  client_id=client_id, endpoint=endpoint)


def configure_logging(level: str = "INFO", json_format: bool = True, log_file: Optional[str] = None) -> None:
    """Replace root handlers with stdout (and optionally a file) at ``level``."""
    formatter: logging.Formatter
    if json_format:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(_TEXT_FORMAT)

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    root = logging.getLogger()
    for old in list(root.handlers):
        root.removeHandler(old)
        old.close()
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(RequestIdFilter())
        root.addHandler(handler)
    root.setLevel(level.upper())

    # request lines are already covered by the audit trail
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def set_request_id(request_id: Optional[str] = None) -> str:
    """Bind ``request_id`` (or a fresh one) to the current context and return it."""
    rid = request_id or generate_request_id()
    request_id_var.set(rid)
    return rid


def get_request_id() -> str:
    return request_id_var.get()


audit_log = AuditLogger()
