"""
Incremental Merkle Tree for the Merkle Log
Append-only Keccak-256 accumulator over arbitrary byte records

Implements:
- Leaf hashing H(data) and internal node hashing H(left || right)
- Incremental propagation: each append rewrites only its ancestor chain
- Self-pairing of the unpaired last node of a level
- Inclusion proofs (bottom-to-top sibling hashes) and their verification
- Raw replay of stored leaf hashes followed by one bulk rebuild

Copyright (c) 2025 VeritasChain Standards Organization
License: MIT
"""

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

from eth_utils import decode_hex, encode_hex, keccak

DIGEST_SIZE = 32

Digest = bytes
DigestLike = Union[bytes, str]


class OutOfRangeError(IndexError):
    """Leaf index is negative or not below the leaf count."""


class EmptyTreeError(ValueError):
    """The tree holds no leaves, so it has no root."""


class StaleTreeError(RuntimeError):
    """Leaves were raw-inserted and recalculate() has not run yet."""


# ============================================================================
# Hash Primitive
# ============================================================================

def hash_data(data: bytes) -> Digest:
    """Leaf hash: Keccak-256 of the raw record."""
    return keccak(bytes(data))


def hash_pair(left: Digest, right: Digest) -> Digest:
    """Internal node hash: Keccak-256 of left || right. Order is significant."""
    return keccak(left + right)


def digest_to_hex(digest: Digest) -> str:
    """Encode a digest as 0x-prefixed lowercase hex (66 characters)."""
    return encode_hex(digest)


def hex_to_digest(value: str) -> Digest:
    """
    Decode a hex digest, with or without the 0x prefix.

    Raises:
        ValueError: If the value is not hex or not exactly 32 bytes long
    """
    try:
        digest = decode_hex(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid hash {value!r}: {e}") from e

    if len(digest) != DIGEST_SIZE:
        raise ValueError(f"Invalid hash {value!r}: expected {DIGEST_SIZE} bytes, got {len(digest)}")
    return digest


def as_digest(value: DigestLike) -> Digest:
    """Accept either raw digest bytes or their hex encoding."""
    if isinstance(value, str):
        return hex_to_digest(value)

    digest = bytes(value)
    if len(digest) != DIGEST_SIZE:
        raise ValueError(f"Invalid hash: expected {DIGEST_SIZE} bytes, got {len(digest)}")
    return digest


# ============================================================================
# Proof Folding (no tree access)
# ============================================================================

def fold_proof(leaf_hash: Digest, index: int, proof: Iterable[DigestLike]) -> Digest:
    """
    Fold a leaf hash up through a sibling-hash path.

    At every level an even index means the running hash is the left half,
    an odd index means it is the right half.

    Args:
        leaf_hash: Hash of the leaf being proven
        index: Position of the leaf in level 0
        proof: Sibling hashes, bottom to top

    Returns:
        The candidate root
    """
    current = leaf_hash
    for sibling in proof:
        sibling = as_digest(sibling)
        if index % 2 == 0:
            current = hash_pair(current, sibling)
        else:
            current = hash_pair(sibling, current)
        index //= 2
    return current


def verify_proof(data: bytes, index: int, proof: Iterable[DigestLike], root: DigestLike) -> bool:
    """
    Verify an inclusion proof against a separately obtained root.

    This is the check a third party performs: it never looks at any stored
    leaf, only at the record, its claimed position, the path and the root.

    Args:
        data: Original record bytes
        index: Claimed leaf index
        proof: Sibling hashes from MerkleTree.get_proof()
        root: Trusted root digest

    Returns:
        True if the folded path reproduces the root
    """
    if index < 0:
        raise ValueError(f"Leaf index {index} must not be negative")
    return fold_proof(hash_data(data), index, proof) == as_digest(root)


# ============================================================================
# Locking
# ============================================================================

class ReadWriteLock:
    """
    Shared/exclusive lock.

    Any number of readers may hold the lock together; a writer holds it
    alone. A waiting writer blocks new readers so appends are not starved.
    Not reentrant.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


# ============================================================================
# Tree
# ============================================================================

@dataclass
class Node:
    """
    Single hash in the tree.

    ``parent`` is a (level, index) lookup key, never a reference to the
    parent object. ``provisional`` is set when this node or one below it was
    produced by self-pairing, i.e. its hash changes once the missing sibling
    arrives.
    """
    hash: Digest
    index: int
    parent: Optional[Tuple[int, int]] = None
    provisional: bool = False

    def hex(self) -> str:
        return digest_to_hex(self.hash)

    def __str__(self) -> str:
        return self.hex()


def levels_needed(leaf_count: int) -> int:
    """Number of levels for ``leaf_count`` leaves: ceil(log2(n)) + 1."""
    if leaf_count <= 1:
        return 1
    return (leaf_count - 1).bit_length() + 1


class MerkleTree:
    """
    Append-only incremental Merkle tree.

    Level 0 holds the leaves in insertion order; level k+1 holds the parents
    of adjacent pairs of level k, the unpaired last node being hashed with
    itself. Each append recomputes only the ancestors of the new leaf.

    All public methods are thread-safe: ``add``, ``raw_insert`` and
    ``recalculate`` take the lock exclusively, readers share it.

    Usage:
        tree = MerkleTree()
        index, leaf_hash = tree.add(b"record")
        proof = tree.get_proof(index)
        assert tree.verify(b"record", index, proof)
    """

    def __init__(self):
        """Initialize empty tree with a single, empty leaf level."""
        self._levels: List[List[Node]] = [[]]
        self._root: Optional[Node] = None
        self._dirty = False  # raw_insert() ran without recalculate()
        self._lock = ReadWriteLock()

    @classmethod
    def from_hashes(cls, leaf_hashes: Iterable[DigestLike]) -> 'MerkleTree':
        """
        Construct a tree from already computed leaf hashes.

        Args:
            leaf_hashes: Leaf digests in insertion order

        Returns:
            Tree with every level rebuilt in one pass
        """
        tree = cls()
        for leaf_hash in leaf_hashes:
            tree.raw_insert(leaf_hash)
        tree.recalculate()
        return tree

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def add(self, data: bytes) -> Tuple[int, Digest]:
        """
        Append a record as a new leaf.

        Args:
            data: Raw record bytes (any length, including empty)

        Returns:
            Tuple of (leaf index, leaf hash)
        """
        with self._lock.write():
            if self._dirty:
                self._rebuild()

            index = len(self._levels[0])
            leaf = Node(hash=hash_data(data), index=index)
            self._levels[0].append(leaf)

            if index == 0:
                self._root = leaf
            else:
                self._root = self._propagate()

            self._on_leaf_added(index, leaf.hash)

        return index, leaf.hash

    def raw_insert(self, leaf_hash: DigestLike) -> int:
        """
        Append an already computed leaf hash without touching upper levels.

        Used to replay a stored hash log. The tree must be brought back to a
        consistent state with recalculate() before it is read.

        Returns:
            Index of the inserted leaf
        """
        digest = as_digest(leaf_hash)
        with self._lock.write():
            index = len(self._levels[0])
            self._levels[0].append(Node(hash=digest, index=index))
            self._dirty = True
        return index

    def recalculate(self) -> Optional[Digest]:
        """
        Rebuild every level above the leaves by pairwise reduction.

        Returns:
            The new root hash, or None for an empty tree
        """
        with self._lock.write():
            root = self._rebuild()
        return root.hash if root else None

    def _on_leaf_added(self, index: int, leaf_hash: Digest):
        """Hook run after each add(), still under the exclusive lock."""

    def _resize_vertically(self):
        needed = levels_needed(len(self._levels[0]))
        while len(self._levels) < needed:
            self._levels.append([])

    def _create_parent(self, level: int, left: Node, right: Node) -> Node:
        parent = Node(
            hash=hash_pair(left.hash, right.hash),
            index=right.index // 2,
            provisional=left is right or left.provisional or right.provisional,
        )
        left.parent = (level + 1, parent.index)
        right.parent = (level + 1, parent.index)
        return parent

    def _place(self, level: int, node: Node):
        nodes = self._levels[level]
        if node.index == len(nodes):
            # First time this slot is reached
            nodes.append(node)
        else:
            assert node.index == len(nodes) - 1, "only the last slot of a level is rewritten"
            nodes[node.index] = node

    def _propagate(self) -> Node:
        """Recompute the ancestors of the last leaf; returns the new root."""
        self._resize_vertically()
        top = len(self._levels) - 1

        for level in range(top):
            nodes = self._levels[level]
            length = len(nodes)

            right = nodes[length - 1]
            if length % 2 == 0:
                # The last node completed a pair
                left = nodes[length - 2]
            else:
                # The last node is alone and pairs with itself
                left = right

            self._place(level + 1, self._create_parent(level, left, right))

        assert len(self._levels[top]) == 1, "top level must hold exactly the root"
        return self._levels[top][0]

    def _rebuild(self) -> Optional[Node]:
        leaves = self._levels[0]
        self._levels = [leaves]
        self._dirty = False

        if not leaves:
            self._root = None
            return None

        for leaf in leaves:
            leaf.parent = None

        current = leaves
        while len(current) > 1:
            level = len(self._levels) - 1
            parents = []
            for i in range(0, len(current), 2):
                left = current[i]
                right = current[i + 1] if i + 1 < len(current) else left
                parents.append(self._create_parent(level, left, right))
            self._levels.append(parents)
            current = parents

        self._root = current[0]
        return self._root

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _check_fresh(self):
        if self._dirty:
            raise StaleTreeError("recalculate() must follow raw_insert() before the tree is read")

    def _check_index(self, index: int):
        self._check_fresh()
        leaf_count = len(self._levels[0])
        if index < 0 or index >= leaf_count:
            raise OutOfRangeError(
                f"Incorrect index - Index {index} out of bounds for {leaf_count} leaves"
            )

    def _sibling(self, level: int, index: int) -> Node:
        nodes = self._levels[level]
        if index % 2 == 1:
            return nodes[index - 1]
        if index == len(nodes) - 1:
            # Unpaired last node, mirrors self-pairing
            return nodes[index]
        return nodes[index + 1]

    def get_proof(self, index: int) -> List[Digest]:
        """
        Get the sibling-hash path of a leaf.

        Args:
            index: Leaf index

        Returns:
            Sibling hashes from level 0 up to the level below the root;
            empty for a single-leaf tree

        Raises:
            OutOfRangeError: If index is out of bounds
            StaleTreeError: If raw-inserted leaves are not recalculated yet
        """
        with self._lock.read():
            self._check_index(index)

            proof = []
            level = 0
            node = self._levels[0][index]
            while node.parent is not None:
                proof.append(self._sibling(level, index).hash)
                level, index = node.parent
                node = self._levels[level][index]
            return proof

    def verify(self, data: bytes, index: int, proof: Sequence[DigestLike]) -> bool:
        """
        Check that ``data`` is the leaf at ``index`` and the path reaches the root.

        The record is first compared with the stored leaf, so this is a local
        sanity check that trusts the tree. Third parties use verify_proof().

        Raises:
            OutOfRangeError: If index is out of bounds
        """
        with self._lock.read():
            self._check_index(index)

            leaf_hash = hash_data(data)
            if leaf_hash != self._levels[0][index].hash:
                return False
            return fold_proof(leaf_hash, index, proof) == self._root.hash

    def hash_at(self, index: int) -> Digest:
        """
        Get the hash of the leaf at ``index``.

        Raises:
            OutOfRangeError: If index is out of bounds
        """
        with self._lock.read():
            self._check_index(index)
            return self._levels[0][index].hash

    def get_root(self) -> Digest:
        """
        Get the Merkle root.

        Raises:
            EmptyTreeError: If tree is empty
            StaleTreeError: If raw-inserted leaves are not recalculated yet
        """
        with self._lock.read():
            self._check_fresh()
            if self._root is None:
                raise EmptyTreeError("Cannot get root of empty tree")
            return self._root.hash

    @property
    def size(self) -> int:
        """Number of leaves in the tree."""
        with self._lock.read():
            return len(self._levels[0])

    def __len__(self) -> int:
        return self.size

    @property
    def depth(self) -> int:
        """Number of levels, leaves included."""
        with self._lock.read():
            return len(self._levels)

    def get_leaf_hashes(self) -> List[Digest]:
        """Get all leaf hashes in insertion order."""
        with self._lock.read():
            return [leaf.hash for leaf in self._levels[0]]

    def to_dict(self) -> Dict[str, object]:
        """
        Serialize the public view of the tree: root and leaf count only.

        The root is None for an empty tree.

        Raises:
            StaleTreeError: If raw-inserted leaves are not recalculated yet
        """
        with self._lock.read():
            self._check_fresh()
            return {
                "root": self._root.hex() if self._root else None,
                "length": len(self._levels[0]),
            }

    def dump(self) -> str:
        """Human readable listing of every level, top first. Provisional hashes end in '*'."""
        with self._lock.read():
            lines = []
            for level in range(len(self._levels) - 1, -1, -1):
                nodes = self._levels[level]
                lines.append(f"Level: {level}, Count: {len(nodes)}")
                lines.append("\t".join(
                    node.hex() + ("*" if node.provisional else "") for node in nodes
                ))
            return "\n".join(lines)

    def __str__(self) -> str:
        return self.dump()
