"""Verify the stored hash chain, Merkle leaves and Merkle root of one agent."""
import sys

from attest_service.config import DB_PATH
from attest_service.db import SqliteAttestationStore
from integrity_attest.chain import verify_chain_sequence
from integrity_attest.merkle import compute_leaf_hash, compute_merkle_root


def check_leaves(links, leaf_hashes):
    """Return a failure message, or None when every leaf recomputes from its link."""
    if len(links) != len(leaf_hashes):
        return f"{len(links)} chain links but {len(leaf_hashes)} Merkle leaves"
    for i, (link, stored) in enumerate(zip(links, leaf_hashes)):
        leaf = compute_leaf_hash(link.checkpoint_id, link.verdict, link.thinking_block_hash,
                                 link.chain_hash, link.timestamp)
        if leaf != stored:
            return f"Merkle leaf {i} ({link.checkpoint_id}) does not match its chain link"
    return None


def main(agent_id, db_path=DB_PATH):
    store = SqliteAttestationStore(db_path)
    try:
        links = store.list_agent_chain(agent_id)
        tree = store.get_agent_merkle_tree(agent_id)
    finally:
        store.close()

    result = verify_chain_sequence(links)
    if not result.valid:
        print(f"FAIL: {result.details}")
        return 1
    if tree is not None:
        problem = check_leaves(links, tree.leaf_hashes)
        if problem:
            print(f"FAIL: {problem}")
            return 1
        if compute_merkle_root(tree.leaf_hashes) != tree.merkle_root:
            print("FAIL: stored Merkle root does not match leaf list")
            return 1
    print(f"PASS: {result.details}")
    return 0


if __name__ == "__main__":
    if len(sys.argv) not in (2, 3):
        print("Usage: python tools/verify_agent_chain.py <agent_id> [db_path]")
        raise SystemExit(2)
    raise SystemExit(main(*sys.argv[1:]))
