"""
Merkle Log Proof Verifier
Third-party inclusion proof check

Folds the record's leaf hash through a sibling-hash path and compares the
result with a root obtained separately (e.g. from GET /v1/api/merkletree).
No access to the service or its storage is needed.

Usage:
    python -m merklelog.verifier <data> --index 2 --root 0x... --proof-file proof.json
    python -m merklelog.verifier <data> --index 2 --root 0x... --hash 0x... --hash 0x...

Copyright (c) 2025 VeritasChain Standards Organization
License: MIT
"""

import argparse
import json
import sys
from dataclasses import dataclass
from typing import List, Optional

from .merkle import digest_to_hex, fold_proof, hash_data, hex_to_digest


@dataclass
class VerificationResult:
    """Outcome of one proof check."""
    valid: bool
    leaf_hash: str
    computed_root: str
    expected_root: str


def load_proof_file(path: str) -> List[str]:
    """
    Load sibling hashes from JSON.

    Accepts either a bare list of hex hashes or the response body of
    GET /v1/api/merkletree/hashes/{index}.
    """
    with open(path, 'r') as f:
        payload = json.load(f)

    if isinstance(payload, dict):
        payload = payload.get("hashes", [])
    if not isinstance(payload, list):
        raise ValueError(f"No list of hashes found in {path}")
    return payload


def verify_record(data: bytes, index: int, hashes: List[str], root: str) -> VerificationResult:
    """
    Verify that ``data`` is included at ``index`` under ``root``.

    Raises:
        ValueError: If the index is negative or a hash is malformed
    """
    if index < 0:
        raise ValueError(f"Leaf index {index} must not be negative")

    proof = [hex_to_digest(h) for h in hashes]
    expected = hex_to_digest(root)

    leaf_hash = hash_data(data)
    computed = fold_proof(leaf_hash, index, proof)

    return VerificationResult(
        valid=computed == expected,
        leaf_hash=digest_to_hex(leaf_hash),
        computed_root=digest_to_hex(computed),
        expected_root=digest_to_hex(expected),
    )


def main(argv: Optional[List[str]] = None) -> int:
    """Command-line entry point."""
    parser = argparse.ArgumentParser(
        description="Merkle Log inclusion proof verifier",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m merklelog.verifier "c" --index 2 --root 0x... --proof-file proof.json
  python -m merklelog.verifier "c" --index 2 --root 0x... --hash 0x... --hash 0x...
        """
    )
    parser.add_argument("data", help="Original record (encoded as UTF-8)")
    parser.add_argument("--index", "-i", type=int, required=True, help="Claimed leaf index")
    parser.add_argument("--root", "-r", required=True, help="Trusted root hash")
    parser.add_argument("--hash", dest="hashes", action="append", default=[],
                        help="Sibling hash, bottom to top (repeatable)")
    parser.add_argument("--proof-file", "-p", help="JSON file with the sibling hashes")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    args = parser.parse_args(argv)

    try:
        hashes = load_proof_file(args.proof_file) if args.proof_file else []
        hashes += args.hashes
        result = verify_record(args.data.encode('utf-8'), args.index, hashes, args.root)
    except (OSError, ValueError) as e:
        print(f"Error: {e}")
        return 2

    if args.verbose:
        print(f"Leaf hash:     {result.leaf_hash}")
        print(f"Proof length:  {len(hashes)}")
        print(f"Computed root: {result.computed_root}")
        print(f"Expected root: {result.expected_root}")

    if result.valid:
        print(f"[PASS] Record is included at index {args.index}")
        return 0

    print(f"[FAIL] Record is not included at index {args.index}")
    return 1


if __name__ == "__main__":
    sys.exit(main())
