"""
Merkle Log Package
Append-only Merkle tree service with inclusion proofs

This package provides:
- Incremental Keccak-256 Merkle tree with O(log n) appends
- Inclusion proof generation and verification
- SQL hash log for durable replay on restart
- FastAPI REST service and a standalone proof verifier

Copyright (c) 2025 VeritasChain Standards Organization
License: MIT
"""

__version__ = "1.0.0"

from .merkle import (
    EmptyTreeError,
    MerkleTree,
    Node,
    OutOfRangeError,
    StaleTreeError,
    digest_to_hex,
    hash_data,
    hash_pair,
    hex_to_digest,
    verify_proof,
)
from .store import HashStore, PersistenceError, PersistentMerkleTree, load_merkle_tree

__all__ = [
    "EmptyTreeError",
    "MerkleTree",
    "Node",
    "OutOfRangeError",
    "StaleTreeError",
    "digest_to_hex",
    "hash_data",
    "hash_pair",
    "hex_to_digest",
    "verify_proof",
    "HashStore",
    "PersistenceError",
    "PersistentMerkleTree",
    "load_merkle_tree",
]
