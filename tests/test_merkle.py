"""Per-agent Merkle tree tests."""

import unittest

from integrity_attest import (
    EMPTY_TREE_ROOT,
    InclusionProof,
    InputError,
    MerkleIndexError,
    ProofSibling,
    build_tree_state,
    canonicalize,
    compute_leaf_hash,
    compute_merkle_root,
    compute_tree_depth,
    generate_inclusion_proof,
    sha256_hex,
    verify_inclusion_proof,
)
from integrity_attest.merkle import compute_node_hash

TBH = "ab" * 32


def leaves(n):
    return [
        compute_leaf_hash(f"cp-{i}", "clear", TBH, sha256_hex(f"chain-{i}"), f"2024-01-01T00:00:{i:02d}.000Z")
        for i in range(n)
    ]


class TestTreeConstruction(unittest.TestCase):

    def test_leaf_hash_preimage(self):
        expected = sha256_hex(canonicalize({
            "chain_hash": "c" * 64,
            "checkpoint_id": "cp-1",
            "thinking_block_hash": TBH,
            "timestamp": "t",
            "verdict": "clear",
        }))
        self.assertEqual(compute_leaf_hash("cp-1", "clear", TBH, "c" * 64, "t"), expected)

    def test_node_hash_concatenates_hex(self):
        self.assertEqual(compute_node_hash("aa", "bb"), sha256_hex("aabb"))

    def test_empty_root(self):
        self.assertEqual(compute_merkle_root([]), EMPTY_TREE_ROOT)
        self.assertEqual(EMPTY_TREE_ROOT, sha256_hex(b""))

    def test_single_leaf_is_root(self):
        ls = leaves(1)
        self.assertEqual(compute_merkle_root(ls), ls[0])

    def test_three_leaves_promotes_odd_node(self):
        a, b, c = leaves(3)
        self.assertEqual(compute_merkle_root([a, b, c]), compute_node_hash(compute_node_hash(a, b), c))

    def test_depth(self):
        self.assertEqual(compute_tree_depth(0), 0)
        self.assertEqual(compute_tree_depth(1), 0)
        self.assertEqual(compute_tree_depth(2), 1)
        self.assertEqual(compute_tree_depth(3), 2)
        self.assertEqual(compute_tree_depth(8), 3)
        self.assertEqual(compute_tree_depth(9), 4)

    def test_tree_state(self):
        state = build_tree_state(leaves(5))
        self.assertEqual(state.leaf_count, 5)
        self.assertEqual(state.depth, 3)
        self.assertEqual(state.root, compute_merkle_root(state.leaf_hashes))

    def test_root_changes_on_append(self):
        ls = leaves(4)
        self.assertNotEqual(compute_merkle_root(ls[:3]), compute_merkle_root(ls))


class TestInclusionProofs(unittest.TestCase):

    def test_every_leaf_verifies_for_many_sizes(self):
        for n in range(1, 18):
            ls = leaves(n)
            root = compute_merkle_root(ls)
            for i in range(n):
                proof = generate_inclusion_proof(ls, i)
                self.assertEqual(proof.root, root)
                self.assertTrue(verify_inclusion_proof(proof, ls[i], root), f"n={n} i={i}")

    def test_promoted_node_has_no_sibling_at_that_level(self):
        ls = leaves(3)
        proof = generate_inclusion_proof(ls, 2)
        self.assertEqual(len(proof.siblings), 1)
        self.assertEqual(proof.siblings[0].position, "left")

    def test_single_leaf_proof_is_empty(self):
        ls = leaves(1)
        proof = generate_inclusion_proof(ls, 0)
        self.assertEqual(proof.siblings, [])
        self.assertTrue(verify_inclusion_proof(proof, ls[0], ls[0]))

    def test_ten_leaves_index_seven(self):
        ls = leaves(10)
        proof = generate_inclusion_proof(ls, 7)
        self.assertEqual(proof.tree_size, 10)
        self.assertEqual(proof.leaf_index, 7)
        self.assertTrue(verify_inclusion_proof(proof, ls[7], compute_merkle_root(ls)))

    def test_tampered_sibling_fails(self):
        ls = leaves(8)
        proof = generate_inclusion_proof(ls, 3)
        proof.siblings[1] = ProofSibling(hash="00" * 32, position=proof.siblings[1].position)
        self.assertFalse(verify_inclusion_proof(proof, ls[3], compute_merkle_root(ls)))

    def test_flipped_position_fails(self):
        ls = leaves(8)
        proof = generate_inclusion_proof(ls, 3)
        s = proof.siblings[0]
        proof.siblings[0] = ProofSibling(hash=s.hash, position="right" if s.position == "left" else "left")
        self.assertFalse(verify_inclusion_proof(proof, ls[3], compute_merkle_root(ls)))

    def test_wrong_leaf_fails(self):
        ls = leaves(8)
        proof = generate_inclusion_proof(ls, 3)
        self.assertFalse(verify_inclusion_proof(proof, ls[4], compute_merkle_root(ls)))

    def test_wrong_root_fails(self):
        ls = leaves(8)
        proof = generate_inclusion_proof(ls, 3)
        self.assertFalse(verify_inclusion_proof(proof, ls[3], compute_merkle_root(ls[:7])))

    def test_unknown_position_fails(self):
        ls = leaves(2)
        proof = generate_inclusion_proof(ls, 0)
        proof.siblings[0] = ProofSibling(hash=proof.siblings[0].hash, position="up")
        self.assertFalse(verify_inclusion_proof(proof, ls[0], compute_merkle_root(ls)))

    def test_out_of_range(self):
        ls = leaves(4)
        for bad in (-1, 4, 100):
            with self.assertRaises(MerkleIndexError):
                generate_inclusion_proof(ls, bad)

    def test_empty_tree(self):
        with self.assertRaises(MerkleIndexError):
            generate_inclusion_proof([], 0)

    def test_old_proof_fails_after_append(self):
        ls = leaves(10)
        old = generate_inclusion_proof(ls, 3)
        ls.append(leaves(11)[10])
        new_root = compute_merkle_root(ls)
        self.assertFalse(verify_inclusion_proof(old, ls[3], new_root))
        fresh = generate_inclusion_proof(ls, 3)
        self.assertTrue(verify_inclusion_proof(fresh, ls[3], new_root))

    def test_wire_round_trip(self):
        ls = leaves(6)
        proof = generate_inclusion_proof(ls, 5)
        parsed = InclusionProof.from_dict(proof.to_dict())
        self.assertEqual(parsed, proof)

    def test_from_certificate_section(self):
        ls = leaves(6)
        proof = generate_inclusion_proof(ls, 2)
        section = proof.to_dict()
        section["inclusion_proof"] = section.pop("siblings")
        self.assertEqual(InclusionProof.from_dict(section), proof)

    def test_from_dict_malformed(self):
        with self.assertRaises(InputError):
            InclusionProof.from_dict({"leaf_hash": "aa"})


if __name__ == "__main__":
    unittest.main()
