"""
Hash Log Persistence for the Merkle Log

Implements:
- HashStore: append-only SQL table of leaf hashes, one row per leaf
- PersistentMerkleTree: tree that writes every new leaf hash to the store
- load_merkle_tree: startup replay of the stored log with one bulk rebuild

Any SQLAlchemy database URL works; PostgreSQL in production, SQLite for
local runs and tests.

Copyright (c) 2025 VeritasChain Standards Organization
License: MIT
"""

import logging
from pathlib import Path
from typing import List

from sqlalchemy import BigInteger, Column, Integer, String, create_engine, func, select
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .merkle import Digest, MerkleTree, digest_to_hex, hex_to_digest

logger = logging.getLogger(__name__)

Base = declarative_base()


class PersistenceError(Exception):
    """Raised when the hash log cannot be read or written."""


# ============================================================================
# Hash Log Model
# ============================================================================

class HashRecord(Base):
    """
    One leaf hash of the tree.

    Rows are only ever inserted; ``id`` order is leaf index order.
    """

    __tablename__ = "hashes"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    hash = Column(String(66), nullable=False)


def _engine_options(database_url: str) -> dict:
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        return {"pool_pre_ping": True}

    if url.database in (None, "", ":memory:"):
        # In-memory SQLite: all threads must share one connection
        return {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}

    Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    return {}


# ============================================================================
# Hash Store
# ============================================================================

class HashStore:
    """
    Append-only hash log backed by a SQL table.

    The table is created on first use if it does not exist.
    """

    def __init__(self, database_url: str = "sqlite:///./data/merklelog.db"):
        """
        Connect to the database and make sure the table exists.

        Raises:
            PersistenceError: If the database is unreachable
        """
        self.database_url = database_url

        try:
            self._engine = create_engine(database_url, **_engine_options(database_url))
            Base.metadata.create_all(self._engine)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not open hash log: {e}") from e

        self._session_factory = sessionmaker(bind=self._engine, expire_on_commit=False)

    def append(self, leaf_hash: Digest):
        """Store one leaf hash at the end of the log."""
        try:
            with self._session_factory() as session, session.begin():
                session.add(HashRecord(hash=digest_to_hex(leaf_hash)))
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not store hash {digest_to_hex(leaf_hash)}: {e}") from e

    def load_hashes(self) -> List[Digest]:
        """
        Read every stored leaf hash in insertion order.

        Raises:
            PersistenceError: If the log cannot be read or holds a malformed hash
        """
        try:
            with self._session_factory() as session:
                rows = session.execute(
                    select(HashRecord.hash).order_by(HashRecord.id)
                ).scalars().all()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not query the stored hashes: {e}") from e

        try:
            return [hex_to_digest(row) for row in rows]
        except ValueError as e:
            raise PersistenceError(f"Corrupt hash log: {e}") from e

    def count(self) -> int:
        """Number of stored hashes."""
        try:
            with self._session_factory() as session:
                return session.execute(select(func.count(HashRecord.id))).scalar_one()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not count the stored hashes: {e}") from e

    def close(self):
        """Release pooled connections."""
        self._engine.dispose()


# ============================================================================
# Persistent Tree
# ============================================================================

class PersistentMerkleTree(MerkleTree):
    """
    Merkle tree that appends every new leaf hash to a HashStore.

    Writes are best-effort: a failed write is logged and the in-memory leaf
    stays. The write happens under the tree's exclusive lock, so log order
    always matches leaf order.
    """

    def __init__(self, store: HashStore):
        super().__init__()
        self.store = store

    def _on_leaf_added(self, index: int, leaf_hash: Digest):
        try:
            self.store.append(leaf_hash)
        except PersistenceError as e:
            logger.error(f"Failed to persist leaf {index}: {e}")


def load_merkle_tree(store: HashStore) -> PersistentMerkleTree:
    """
    Rebuild a tree from the stored hash log.

    Stored hashes are inserted as-is (the records they came from are not
    needed) and the upper levels are computed once at the end.

    Args:
        store: Hash log to replay

    Returns:
        Tree ready for concurrent use, persisting new leaves to ``store``

    Raises:
        PersistenceError: If the log cannot be read
    """
    tree = PersistentMerkleTree(store)

    hashes = store.load_hashes()
    for leaf_hash in hashes:
        tree.raw_insert(leaf_hash)
    root = tree.recalculate()

    if root is None:
        logger.info("Hash log is empty - starting with an empty tree")
    else:
        logger.info(f"Replayed {len(hashes)} leaves - root {digest_to_hex(root)}")
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(f"Replayed tree:\n{tree}")

    return tree
