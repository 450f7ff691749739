"""
Database module for the attestation service.

Provides SQLite-based storage for signing keys, attested checkpoints,
per-agent Merkle leaf lists and verdict proofs. Implements the store
contract the engine consumes, including the single authoritative
per-agent append.
"""

import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from integrity_attest.chain import ChainLink
from integrity_attest.errors import (
    ChainConsistencyError,
    DuplicateCheckpointError,
    InputError,
    StoreError,
)
from integrity_attest.merkle import MerkleTreeState, build_tree_state
from integrity_attest.proving import PROOF_STATUSES
from integrity_attest.util import utc_now_iso


# ============================================================
# Records
# ============================================================

@dataclass
class SigningKeyRecord:
    key_id: str
    public_key: str  # hex
    algorithm: str
    is_active: bool
    created_at: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CheckpointRecord:
    """A checkpoint plus every attestation field stored alongside it."""
    checkpoint_id: str
    agent_id: str
    session_id: str
    card_id: str
    verdict: str
    reasoning_summary: str
    thinking_block_hash: str
    timestamp: str
    input_commitment: str
    chain_hash: str
    prev_chain_hash: Optional[str]
    chain_position: int
    certificate_id: str
    signature: str
    signed_payload: str
    signing_key_id: str
    concerns: List[Dict[str, Any]] = field(default_factory=list)
    confidence: float = 1.0
    analysis_model: str = "unknown"
    analysis_duration_ms: int = 0
    analysis_json: str = ""
    card_hash: str = ""
    values_hash: str = ""
    context_hash: str = ""
    model_version: str = ""
    merkle_leaf_index: Optional[int] = None
    created_at: Optional[str] = None

    def to_chain_link(self) -> ChainLink:
        return ChainLink(
            checkpoint_id=self.checkpoint_id,
            verdict=self.verdict,
            thinking_block_hash=self.thinking_block_hash,
            input_commitment=self.input_commitment,
            timestamp=self.timestamp,
            chain_hash=self.chain_hash,
            prev_chain_hash=self.prev_chain_hash,
            chain_position=self.chain_position,
        )


@dataclass
class AgentMerkleTree:
    agent_id: str
    leaf_hashes: List[str]
    merkle_root: str
    tree_depth: int
    leaf_count: int
    last_updated: str


@dataclass
class ChainTail:
    chain_hash: str
    chain_position: int


@dataclass
class VerdictProofRecord:
    proof_id: str
    checkpoint_id: str
    status: str
    proof_type: str
    image_id: Optional[str] = None
    receipt: Optional[str] = None
    journal: Optional[str] = None
    proving_duration_ms: Optional[int] = None
    verified: bool = False
    verified_at: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


_CHECKPOINT_COLUMNS = (
    "checkpoint_id", "agent_id", "session_id", "card_id", "verdict",
    "reasoning_summary", "thinking_block_hash", "timestamp", "input_commitment",
    "chain_hash", "prev_chain_hash", "chain_position", "certificate_id",
    "signature", "signed_payload", "signing_key_id", "concerns_json",
    "confidence", "analysis_model", "analysis_duration_ms", "analysis_json",
    "card_hash", "values_hash", "context_hash", "model_version",
    "merkle_leaf_index", "created_at",
)


def _checkpoint_from_row(row: sqlite3.Row) -> CheckpointRecord:
    data = dict(row)
    data["concerns"] = json.loads(data.pop("concerns_json") or "[]")
    return CheckpointRecord(**data)


def _proof_from_row(row: sqlite3.Row) -> VerdictProofRecord:
    data = dict(row)
    data["verified"] = bool(data["verified"])
    return VerdictProofRecord(**data)


# ============================================================
# Store interface
# ============================================================

class AttestationStore(ABC):
    """
    Store operations consumed by the attestation pipeline and the
    verification endpoints.
    """

    @abstractmethod
    def get_active_signing_key(self, key_id: str) -> Optional[SigningKeyRecord]:
        ...

    @abstractmethod
    def list_active_signing_keys(self) -> List[SigningKeyRecord]:
        ...

    @abstractmethod
    def get_agent_merkle_tree(self, agent_id: str) -> Optional[AgentMerkleTree]:
        ...

    @abstractmethod
    def get_checkpoint(self, checkpoint_id: str) -> Optional[CheckpointRecord]:
        ...

    @abstractmethod
    def get_chain_tail(self, agent_id: str) -> Optional[ChainTail]:
        ...

    @abstractmethod
    def append_checkpoint(
        self,
        record: CheckpointRecord,
        leaf_hash: str,
        expected_prev_chain_hash: Optional[str],
        expected_leaf_count: int,
    ) -> MerkleTreeState:
        ...

    @abstractmethod
    def insert_pending_proof(self, proof_id: str, checkpoint_id: str, proof_type: str) -> None:
        ...

    @abstractmethod
    def get_completed_proof(self, checkpoint_id: str) -> Optional[VerdictProofRecord]:
        ...

    @abstractmethod
    def get_latest_proof(self, checkpoint_id: str) -> Optional[VerdictProofRecord]:
        ...


# ============================================================
# SQLite implementation
# ============================================================

class SqliteAttestationStore(AttestationStore):
    """
    SQLite-backed store.

    Connections are thread-local and reused within a thread. Every
    sqlite3 error surfaces as StoreError, except the per-agent position
    conflict, which is a ChainConsistencyError.
    """

    def __init__(self, db_path: str):
        self._db_path = Path(db_path)
        self._local = threading.local()
        self._conns: List[sqlite3.Connection] = []
        self._conns_lock = threading.Lock()
        self.init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get a thread-local database connection.
        Connections are reused within the same thread for performance.
        """
        conn = getattr(self._local, 'conn', None)
        if conn is None:
            try:
                self._db_path.parent.mkdir(parents=True, exist_ok=True)
                # isolation_level=None: transactions are opened explicitly
                conn = sqlite3.connect(str(self._db_path), check_same_thread=False,
                                       isolation_level=None, timeout=10.0)
                conn.execute("PRAGMA journal_mode=WAL;")
                conn.execute("PRAGMA synchronous=NORMAL;")
                conn.execute("PRAGMA cache_size=10000;")  # ~10MB cache
                conn.execute("PRAGMA temp_store=MEMORY;")
            except (sqlite3.Error, OSError) as e:
                raise StoreError(f"cannot open store at {self._db_path}: {e}") from e
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
            with self._conns_lock:
                self._conns.append(conn)
        return conn

    @contextmanager
    def _transaction(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """
        Context manager for database transactions.
        Automatically commits on success, rolls back on failure.
        """
        conn = self._get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
        except sqlite3.Error as e:
            raise StoreError(f"cannot begin transaction: {e}") from e
        try:
            yield conn
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            conn.execute("ROLLBACK")
            raise StoreError(str(e)) from e
        except Exception:
            conn.execute("ROLLBACK")
            raise

    def _query(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        try:
            return self._get_connection().execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e

    def init_db(self) -> None:
        """
        Initialize database schema with proper indexes.
        Safe to call multiple times (uses IF NOT EXISTS).
        """
        with self._transaction() as conn:
            conn.execute("""
            CREATE TABLE IF NOT EXISTS signing_keys (
                key_id TEXT PRIMARY KEY,
                public_key TEXT NOT NULL,
                algorithm TEXT NOT NULL DEFAULT 'Ed25519',
                is_active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL
            );""")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS checkpoints (
                checkpoint_id TEXT PRIMARY KEY,
                agent_id TEXT NOT NULL,
                session_id TEXT NOT NULL,
                card_id TEXT NOT NULL,
                verdict TEXT NOT NULL,
                reasoning_summary TEXT NOT NULL,
                thinking_block_hash TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                input_commitment TEXT NOT NULL,
                chain_hash TEXT NOT NULL,
                prev_chain_hash TEXT,
                chain_position INTEGER NOT NULL,
                certificate_id TEXT NOT NULL,
                signature TEXT NOT NULL,
                signed_payload TEXT NOT NULL,
                signing_key_id TEXT NOT NULL,
                concerns_json TEXT NOT NULL DEFAULT '[]',
                confidence REAL NOT NULL DEFAULT 1.0,
                analysis_model TEXT NOT NULL DEFAULT 'unknown',
                analysis_duration_ms INTEGER NOT NULL DEFAULT 0,
                analysis_json TEXT NOT NULL DEFAULT '',
                card_hash TEXT NOT NULL DEFAULT '',
                values_hash TEXT NOT NULL DEFAULT '',
                context_hash TEXT NOT NULL DEFAULT '',
                model_version TEXT NOT NULL DEFAULT '',
                merkle_leaf_index INTEGER,
                created_at TEXT NOT NULL,
                UNIQUE (agent_id, chain_position)
            );""")
            conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_checkpoints_agent
            ON checkpoints(agent_id, chain_position);""")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS agent_merkle_trees (
                agent_id TEXT PRIMARY KEY,
                leaf_hashes_json TEXT NOT NULL,
                merkle_root TEXT NOT NULL,
                tree_depth INTEGER NOT NULL,
                leaf_count INTEGER NOT NULL,
                last_updated TEXT NOT NULL
            );""")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS verdict_proofs (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                proof_id TEXT NOT NULL UNIQUE,
                checkpoint_id TEXT NOT NULL,
                status TEXT NOT NULL,
                proof_type TEXT NOT NULL,
                image_id TEXT,
                receipt TEXT,
                journal TEXT,
                proving_duration_ms INTEGER,
                verified INTEGER NOT NULL DEFAULT 0,
                verified_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );""")
            conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_verdict_proofs_checkpoint
            ON verdict_proofs(checkpoint_id);""")

    # ---- Signing keys ----

    def register_signing_key(self, key_id: str, public_key_hex: str, algorithm: str = "Ed25519") -> None:
        """Register (or re-activate) a public key."""
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO signing_keys(key_id, public_key, algorithm, is_active, created_at) "
                "VALUES(?,?,?,1,?) ON CONFLICT(key_id) DO UPDATE SET "
                "public_key=excluded.public_key, algorithm=excluded.algorithm, is_active=1",
                (key_id, public_key_hex.lower(), algorithm, utc_now_iso())
            )

    def deactivate_signing_key(self, key_id: str) -> bool:
        with self._transaction() as conn:
            cur = conn.execute("UPDATE signing_keys SET is_active=0 WHERE key_id=?", (key_id,))
            return cur.rowcount == 1

    def get_active_signing_key(self, key_id: str) -> Optional[SigningKeyRecord]:
        rows = self._query(
            "SELECT key_id, public_key, algorithm, is_active, created_at FROM signing_keys "
            "WHERE key_id=? AND is_active=1",
            (key_id,)
        )
        if not rows:
            return None
        row = dict(rows[0])
        row["is_active"] = bool(row["is_active"])
        return SigningKeyRecord(**row)

    def list_active_signing_keys(self) -> List[SigningKeyRecord]:
        rows = self._query(
            "SELECT key_id, public_key, algorithm, is_active, created_at FROM signing_keys "
            "WHERE is_active=1 ORDER BY created_at ASC, key_id ASC"
        )
        return [SigningKeyRecord(**{**dict(r), "is_active": bool(r["is_active"])}) for r in rows]

    # ---- Checkpoints and chain ----

    def get_checkpoint(self, checkpoint_id: str) -> Optional[CheckpointRecord]:
        rows = self._query(
            f"SELECT {', '.join(_CHECKPOINT_COLUMNS)} FROM checkpoints WHERE checkpoint_id=?",
            (checkpoint_id,)
        )
        return _checkpoint_from_row(rows[0]) if rows else None

    def get_chain_tail(self, agent_id: str) -> Optional[ChainTail]:
        """Latest chain link for the agent, or None before its first checkpoint."""
        rows = self._query(
            "SELECT chain_hash, chain_position FROM checkpoints WHERE agent_id=? "
            "ORDER BY chain_position DESC LIMIT 1",
            (agent_id,)
        )
        if not rows:
            return None
        return ChainTail(chain_hash=rows[0]["chain_hash"], chain_position=rows[0]["chain_position"])

    def list_agent_chain(self, agent_id: str) -> List[ChainLink]:
        """Ordered chain links for the agent, oldest first."""
        rows = self._query(
            f"SELECT {', '.join(_CHECKPOINT_COLUMNS)} FROM checkpoints WHERE agent_id=? "
            "ORDER BY chain_position ASC",
            (agent_id,)
        )
        return [_checkpoint_from_row(r).to_chain_link() for r in rows]

    def get_agent_merkle_tree(self, agent_id: str) -> Optional[AgentMerkleTree]:
        rows = self._query(
            "SELECT agent_id, leaf_hashes_json, merkle_root, tree_depth, leaf_count, last_updated "
            "FROM agent_merkle_trees WHERE agent_id=?",
            (agent_id,)
        )
        if not rows:
            return None
        data = dict(rows[0])
        data["leaf_hashes"] = json.loads(data.pop("leaf_hashes_json"))
        return AgentMerkleTree(**data)

    def append_checkpoint(
        self,
        record: CheckpointRecord,
        leaf_hash: str,
        expected_prev_chain_hash: Optional[str],
        expected_leaf_count: int,
    ) -> MerkleTreeState:
        """
        Append the next checkpoint for record.agent_id together with its
        Merkle leaf, atomically.

        The write lock is taken up front (BEGIN IMMEDIATE), then the tail
        is compared with what the caller computed against. The Merkle
        root, depth and count are recomputed from the full leaf list.

        Returns:
            The agent's tree state after the append

        Raises:
            DuplicateCheckpointError: If checkpoint_id is already stored
            ChainConsistencyError: If the chain tail or leaf count moved
            StoreError: On any other database failure
        """
        agent_id = record.agent_id
        with self._transaction(immediate=True) as conn:
            if conn.execute("SELECT 1 FROM checkpoints WHERE checkpoint_id=?",
                            (record.checkpoint_id,)).fetchone():
                raise DuplicateCheckpointError(record.checkpoint_id)

            tail = conn.execute(
                "SELECT chain_hash, chain_position FROM checkpoints WHERE agent_id=? "
                "ORDER BY chain_position DESC LIMIT 1",
                (agent_id,)
            ).fetchone()
            tail_hash = tail["chain_hash"] if tail else None
            expected_position = tail["chain_position"] + 1 if tail else 0
            if tail_hash != expected_prev_chain_hash or record.prev_chain_hash != tail_hash:
                raise ChainConsistencyError(agent_id, "prev_chain_hash does not match chain tail")
            if record.chain_position != expected_position:
                raise ChainConsistencyError(
                    agent_id, f"chain_position {record.chain_position} != {expected_position}"
                )

            tree_row = conn.execute(
                "SELECT leaf_hashes_json FROM agent_merkle_trees WHERE agent_id=?", (agent_id,)
            ).fetchone()
            leaves = json.loads(tree_row["leaf_hashes_json"]) if tree_row else []
            if len(leaves) != expected_leaf_count:
                raise ChainConsistencyError(
                    agent_id, f"leaf_count {len(leaves)} != expected {expected_leaf_count}"
                )

            leaves.append(leaf_hash)
            state = build_tree_state(leaves)
            now = utc_now_iso()

            values = asdict(record)
            values["concerns_json"] = json.dumps(values.pop("concerns"))
            values["merkle_leaf_index"] = expected_leaf_count
            values["created_at"] = now
            try:
                conn.execute(
                    f"INSERT INTO checkpoints({', '.join(_CHECKPOINT_COLUMNS)}) "
                    f"VALUES({', '.join('?' for _ in _CHECKPOINT_COLUMNS)})",
                    tuple(values[c] for c in _CHECKPOINT_COLUMNS)
                )
            except sqlite3.IntegrityError as e:
                raise ChainConsistencyError(agent_id, f"append conflict: {e}") from e

            conn.execute(
                "INSERT INTO agent_merkle_trees(agent_id, leaf_hashes_json, merkle_root, "
                "tree_depth, leaf_count, last_updated) VALUES(?,?,?,?,?,?) "
                "ON CONFLICT(agent_id) DO UPDATE SET leaf_hashes_json=excluded.leaf_hashes_json, "
                "merkle_root=excluded.merkle_root, tree_depth=excluded.tree_depth, "
                "leaf_count=excluded.leaf_count, last_updated=excluded.last_updated",
                (agent_id, json.dumps(leaves), state.root, state.depth, state.leaf_count, now)
            )

        record.merkle_leaf_index = expected_leaf_count
        record.created_at = now
        return state

    # ---- Verdict proofs ----

    def insert_pending_proof(self, proof_id: str, checkpoint_id: str, proof_type: str) -> None:
        now = utc_now_iso()
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO verdict_proofs(proof_id, checkpoint_id, status, proof_type, "
                "created_at, updated_at) VALUES(?,?,'pending',?,?,?)",
                (proof_id, checkpoint_id, proof_type, now, now)
            )

    def get_completed_proof(self, checkpoint_id: str) -> Optional[VerdictProofRecord]:
        rows = self._query(
            "SELECT proof_id, checkpoint_id, status, proof_type, image_id, receipt, journal, "
            "proving_duration_ms, verified, verified_at, created_at, updated_at "
            "FROM verdict_proofs WHERE checkpoint_id=? AND status='completed' "
            "ORDER BY seq DESC LIMIT 1",
            (checkpoint_id,)
        )
        return _proof_from_row(rows[0]) if rows else None

    def get_latest_proof(self, checkpoint_id: str) -> Optional[VerdictProofRecord]:
        rows = self._query(
            "SELECT proof_id, checkpoint_id, status, proof_type, image_id, receipt, journal, "
            "proving_duration_ms, verified, verified_at, created_at, updated_at "
            "FROM verdict_proofs WHERE checkpoint_id=? ORDER BY seq DESC LIMIT 1",
            (checkpoint_id,)
        )
        return _proof_from_row(rows[0]) if rows else None

    def update_proof(
        self,
        proof_id: str,
        status: str,
        image_id: Optional[str] = None,
        receipt: Optional[str] = None,
        journal: Optional[str] = None,
        proving_duration_ms: Optional[int] = None,
        verified: Optional[bool] = None,
        verified_at: Optional[str] = None,
    ) -> bool:
        """
        Record prover-side progress for a proof. Normally written by the
        prover itself; exposed for tools and tests.
        """
        if status not in PROOF_STATUSES:
            raise InputError(f"unknown proof status: {status}")
        with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE verdict_proofs SET status=?, image_id=COALESCE(?, image_id), "
                "receipt=COALESCE(?, receipt), journal=COALESCE(?, journal), "
                "proving_duration_ms=COALESCE(?, proving_duration_ms), "
                "verified=COALESCE(?, verified), verified_at=COALESCE(?, verified_at), "
                "updated_at=? WHERE proof_id=?",
                (status, image_id, receipt, journal, proving_duration_ms,
                 None if verified is None else int(verified), verified_at,
                 utc_now_iso(), proof_id)
            )
            return cur.rowcount == 1

    # ============================================================
    # Metrics and Health
    # ============================================================

    def get_db_stats(self) -> Dict[str, int]:
        """Get database statistics for monitoring."""
        stats = {}
        for table in ['signing_keys', 'checkpoints', 'agent_merkle_trees', 'verdict_proofs']:
            rows = self._query(f"SELECT COUNT(*) as cnt FROM {table}")
            stats[f"{table}_count"] = rows[0]['cnt']
        return stats

    # ============================================================
    # Test Support
    # ============================================================

    def reset(self) -> None:
        """
        Reset the database for test isolation.
        Clears all tables but preserves schema.
        """
        with self._transaction() as conn:
            conn.execute("DELETE FROM signing_keys")
            conn.execute("DELETE FROM checkpoints")
            conn.execute("DELETE FROM agent_merkle_trees")
            conn.execute("DELETE FROM verdict_proofs")

    def close(self) -> None:
        """Close every connection this store opened."""
        with self._conns_lock:
            for conn in self._conns:
                conn.close()
            self._conns.clear()
        self._local = threading.local()
