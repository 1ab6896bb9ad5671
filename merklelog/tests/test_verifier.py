"""
Proof Verifier CLI Tests

Copyright (c) 2025 VeritasChain Standards Organization
License: MIT
"""

import json

import pytest

from merklelog.merkle import MerkleTree, digest_to_hex
from merklelog.verifier import load_proof_file, main, verify_record


@pytest.fixture
def tree():
    tree = MerkleTree()
    for data in (b"a", b"b", b"c", b"d", b"e"):
        tree.add(data)
    return tree


def hex_proof(tree, index):
    return [digest_to_hex(h) for h in tree.get_proof(index)]


class TestVerifyRecord:
    """Test the standalone fold against a trusted root."""

    def test_valid_record(self, tree):
        root = digest_to_hex(tree.get_root())

        result = verify_record(b"c", 2, hex_proof(tree, 2), root)

        assert result.valid is True
        assert result.computed_root == root

    def test_wrong_record(self, tree):
        result = verify_record(b"x", 2, hex_proof(tree, 2), digest_to_hex(tree.get_root()))

        assert result.valid is False

    def test_negative_index(self, tree):
        with pytest.raises(ValueError):
            verify_record(b"c", -1, [], digest_to_hex(tree.get_root()))


class TestLoadProofFile:
    """Test proof file formats."""

    def test_api_response(self, tmp_path, tree):
        path = tmp_path / "proof.json"
        path.write_text(json.dumps({"status": True, "hashes": hex_proof(tree, 1)}))

        assert load_proof_file(str(path)) == hex_proof(tree, 1)

    def test_bare_list(self, tmp_path, tree):
        path = tmp_path / "proof.json"
        path.write_text(json.dumps(hex_proof(tree, 1)))

        assert load_proof_file(str(path)) == hex_proof(tree, 1)

    def test_not_a_list(self, tmp_path):
        path = tmp_path / "proof.json"
        path.write_text(json.dumps("0x00"))

        with pytest.raises(ValueError):
            load_proof_file(str(path))


class TestMain:
    """Test command-line exit codes and output."""

    def test_pass_with_hash_arguments(self, tree, capsys):
        argv = ["d", "--index", "3", "--root", digest_to_hex(tree.get_root())]
        for h in hex_proof(tree, 3):
            argv += ["--hash", h]

        assert main(argv) == 0
        assert "[PASS]" in capsys.readouterr().out

    def test_pass_with_proof_file(self, tree, tmp_path, capsys):
        path = tmp_path / "proof.json"
        path.write_text(json.dumps({"status": True, "hashes": hex_proof(tree, 4)}))

        code = main(["e", "-i", "4", "-r", digest_to_hex(tree.get_root()), "-p", str(path), "-v"])

        out = capsys.readouterr().out
        assert code == 0
        assert "Computed root" in out

    def test_fail(self, tree, capsys):
        argv = ["a", "--index", "3", "--root", digest_to_hex(tree.get_root())]
        for h in hex_proof(tree, 3):
            argv += ["--hash", h]

        assert main(argv) == 1
        assert "[FAIL]" in capsys.readouterr().out

    def test_malformed_root(self, capsys):
        assert main(["a", "--index", "0", "--root", "0x1234"]) == 2
        assert "Error" in capsys.readouterr().out

    def test_missing_proof_file(self, tree, tmp_path, capsys):
        missing = str(tmp_path / "missing.json")

        assert main(["a", "-i", "0", "-r", digest_to_hex(tree.get_root()), "-p", missing]) == 2
