"""
External prover client and proof dispatch.

The prover service owns the proof lifecycle. This side only submits
work (fire-and-forget, through a bounded queue drained by one worker
thread) and, during verification, asks it to check a receipt.
"""

import logging
import queue
import threading
import time
from typing import Any, Dict, Optional

import requests

from integrity_attest.errors import ProverUnavailableError
from integrity_attest.proving import ProofRequest
from integrity_attest.verifier import DerivationVerifier

from .logging_config import audit_log

logger = logging.getLogger(__name__)


class ProverClient(DerivationVerifier):
    """HTTP client for the prover service."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 5.0,
        session: Optional[requests.Session] = None
    ):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["X-Prover-Key"] = self._api_key
        return headers

    def _post(self, path: str, body: Dict[str, Any]) -> requests.Response:
        url = f"{self._base_url}{path}"
        try:
            r = self._session.post(url, json=body, headers=self._headers(), timeout=self._timeout)
            r.raise_for_status()
            return r
        except requests.RequestException as e:
            raise ProverUnavailableError(f"POST {path} failed: {e}") from e

    def submit_proof(self, request: ProofRequest) -> None:
        """Submit a proof job; the response body is ignored."""
        self._post("/prove", request.to_dict())

    def verify_receipt(self, receipt: str, image_id: str) -> bool:
        r = self._post("/prove/verify", {"receipt": receipt, "image_id": image_id})
        try:
            return bool(r.json().get("valid"))
        except (ValueError, AttributeError) as e:
            raise ProverUnavailableError("malformed response from /prove/verify") from e


_STOP = object()


class ProofDispatcher:
    """
    Submit-once, best-effort delivery of proof requests.

    submit() never blocks and never raises: when the queue is full or
    the dispatcher is closed the request is dropped and logged. There
    are no retries; the prover owns those.
    """

    def __init__(self, client: ProverClient, maxsize: int = 256):
        self._client = client
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=max(1, maxsize))
        self._closed = False
        self._lock = threading.Lock()
        self._worker = threading.Thread(target=self._run, name="proof-dispatcher", daemon=True)
        self._worker.start()

    def submit(self, request: ProofRequest) -> bool:
        with self._lock:
            if self._closed:
                audit_log.proof_request_failed(request.checkpoint_id, "dispatcher closed", request.proof_id)
                return False
            try:
                self._queue.put_nowait(request)
            except queue.Full:
                audit_log.proof_request_failed(request.checkpoint_id, "dispatch queue full", request.proof_id)
                return False
        return True

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._deliver(item)
            finally:
                self._queue.task_done()

    def _deliver(self, request: ProofRequest) -> None:
        try:
            self._client.submit_proof(request)
            logger.debug("proof %s submitted", request.proof_id)
        except ProverUnavailableError as e:
            audit_log.proof_request_failed(request.checkpoint_id, str(e), request.proof_id)
        except Exception:
            # keep the worker alive whatever the client does
            logger.exception("unexpected error submitting proof %s", request.proof_id)

    def drain(self, timeout: float = 5.0) -> bool:
        """Wait until every queued request has been handled. False on timeout."""
        deadline = time.monotonic() + timeout
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._queue.all_tasks_done.wait(remaining)
        return True

    def close(self, timeout: float = 5.0) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        try:
            self._queue.put(_STOP, timeout=timeout)
        except queue.Full:
            logger.warning("proof dispatcher queue still full at shutdown")
            return
        self._worker.join(timeout)

    @property
    def pending(self) -> int:
        return self._queue.qsize()
