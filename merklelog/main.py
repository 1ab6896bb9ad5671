"""
Merkle Log Service
REST API over the incremental Merkle tree

Endpoints (under /v1/api/merkletree):
- GET  ""              tree status (root and length)
- POST ""              append a record
- GET  /hashes/{index} inclusion proof of a leaf
- GET  /hash/{index}   hash of a leaf
- POST /validate       check a record against its proof

Copyright (c) 2025 VeritasChain Standards Organization
License: MIT
"""

import copy
import logging
import os
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional

import uvicorn
import yaml
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .merkle import MerkleTree, OutOfRangeError, StaleTreeError, digest_to_hex, hex_to_digest
from .store import HashStore, PersistentMerkleTree, load_merkle_tree

# ============================================================================
# Configuration
# ============================================================================

CONFIG_PATH = Path(
    os.environ.get("MERKLELOG_CONFIG", Path(__file__).parent / "config" / "settings.yaml")
)

DEFAULT_CONFIG = {
    "server": {"host": "0.0.0.0", "port": 8080, "log_level": "INFO", "cors_origins": ["*"]},
    "storage": {"enabled": True, "database_url": "sqlite:///./data/merklelog.db"},
}


def load_config(path: Optional[Path] = None) -> dict:
    """Load configuration from YAML file over the built-in defaults."""
    path = Path(path) if path else CONFIG_PATH
    config = copy.deepcopy(DEFAULT_CONFIG)

    if path.exists():
        with open(path, 'r') as f:
            loaded = yaml.safe_load(f) or {}
        for section, values in loaded.items():
            config.setdefault(section, {}).update(values or {})

    database_url = os.environ.get("MERKLELOG_DATABASE_URL")
    if database_url:
        config["storage"]["database_url"] = database_url

    return config


config = load_config()

# ============================================================================
# Logging Setup
# ============================================================================

logging.basicConfig(
    level=getattr(logging, str(config["server"]["log_level"]).upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("merklelog")

# ============================================================================
# Request/Response Models
# ============================================================================

class MerkleAPIResponse(BaseModel):
    """Envelope shared by every response."""
    status: bool
    error: Optional[str] = None


class TreeStatus(BaseModel):
    root: str
    length: int


class TreeStatusResponse(MerkleAPIResponse):
    tree: Optional[TreeStatus] = None


class AddDataRequest(BaseModel):
    data: Optional[str] = Field(default=None, description="Record to append, stored as UTF-8 bytes")


class AddDataResponse(MerkleAPIResponse):
    index: int = -1
    hash: Optional[str] = None


class IntermediaryHashesResponse(MerkleAPIResponse):
    hashes: Optional[List[str]] = None


class HashAtResponse(MerkleAPIResponse):
    hash: Optional[str] = None


class ValidateRequest(BaseModel):
    data: Optional[str] = Field(default=None, description="Record to check")
    index: int = Field(default=0, description="Claimed leaf index")
    hashes: List[str] = Field(default_factory=list, description="Sibling hashes, bottom to top")


class ValidateResponse(MerkleAPIResponse):
    exists: bool = False


def envelope(response: MerkleAPIResponse, status_code: int = 200, keep: tuple = ()) -> JSONResponse:
    """Render a response, leaving out empty fields except those in ``keep``."""
    content = response.model_dump(exclude_none=True)
    for field in keep:
        content.setdefault(field, None)
    return JSONResponse(status_code=status_code, content=content)


# ============================================================================
# API Endpoints
# ============================================================================

router = APIRouter(prefix="/v1/api/merkletree")


def get_tree(request: Request) -> MerkleTree:
    return request.app.state.tree


# Tree handlers are sync; FastAPI runs them on its thread pool.

@router.get("")
def get_tree_status(tree: MerkleTree = Depends(get_tree)):
    """Current root and leaf count, or a null tree when nothing was added."""
    snapshot = tree.to_dict()
    if snapshot["length"] == 0:
        return envelope(TreeStatusResponse(status=True), keep=("tree",))
    return envelope(TreeStatusResponse(status=True, tree=TreeStatus(**snapshot)))


@router.post("")
def add_data(body: AddDataRequest, tree: MerkleTree = Depends(get_tree)):
    """Append a record and return its leaf index and hash."""
    if not body.data:
        return envelope(AddDataResponse(status=False, error="Missing data field"), 400)

    index, leaf_hash = tree.add(body.data.encode('utf-8'))
    logger.info(f"Added leaf {index}: {digest_to_hex(leaf_hash)}")

    return envelope(AddDataResponse(status=True, index=index, hash=digest_to_hex(leaf_hash)))


@router.get("/hashes/{index}")
def get_intermediary_hashes(index: int, tree: MerkleTree = Depends(get_tree)):
    """Sibling hashes needed to fold the leaf at ``index`` up to the root."""
    try:
        proof = tree.get_proof(index)
    except OutOfRangeError as e:
        return envelope(IntermediaryHashesResponse(status=False, error=str(e)), 404)

    return envelope(IntermediaryHashesResponse(
        status=True, hashes=[digest_to_hex(h) for h in proof]
    ))


@router.get("/hash/{index}")
def get_hash_at(index: int, tree: MerkleTree = Depends(get_tree)):
    try:
        leaf_hash = tree.hash_at(index)
    except OutOfRangeError as e:
        return envelope(HashAtResponse(status=False, error=str(e)), 404)

    return envelope(HashAtResponse(status=True, hash=digest_to_hex(leaf_hash)))


@router.post("/validate")
def validate(body: ValidateRequest, tree: MerkleTree = Depends(get_tree)):
    """
    Check that ``data`` sits at ``index`` and that ``hashes`` lead to the root.

    ``exists`` is false when the record does not match; errors are reserved
    for malformed requests and indexes outside the tree.
    """
    if not body.data:
        return envelope(ValidateResponse(status=False, error="Missing data field"), 400)

    try:
        proof = [hex_to_digest(h) for h in body.hashes]
    except ValueError as e:
        return envelope(ValidateResponse(status=False, error=str(e)), 400)

    try:
        exists = tree.verify(body.data.encode('utf-8'), body.index, proof)
    except OutOfRangeError as e:
        return envelope(ValidateResponse(status=False, error=str(e)), 404)

    return envelope(ValidateResponse(status=True, exists=exists))


def health_check(request: Request):
    """Health check endpoint."""
    tree = request.app.state.tree
    return {
        "status": "healthy",
        "leaves": tree.size,
        "persistence": isinstance(tree, PersistentMerkleTree),
    }


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg')}"
        for err in exc.errors()
    )
    return envelope(MerkleAPIResponse(status=False, error=errors or "Malformed request"), 400)


async def stale_tree_handler(request: Request, exc: StaleTreeError):
    logger.error(f"Request {request.method} {request.url.path} hit an unrebuilt tree: {exc}")
    return envelope(MerkleAPIResponse(status=False, error="Tree is not ready"), 503)


async def log_requests(request: Request, call_next):
    """Log method, path, status and duration of every request."""
    start = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - start) * 1000
    logger.info(f"{request.method} {request.url.path} - {response.status_code} ({elapsed_ms:.1f} ms)")
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Request {request.method} {request.url.path} failed: {exc}")
    return envelope(MerkleAPIResponse(status=False, error="Internal server error"), 500)


# ============================================================================
# FastAPI Application
# ============================================================================

def create_app(tree: Optional[MerkleTree] = None, settings: Optional[dict] = None) -> FastAPI:
    """
    Build the API application.

    Args:
        tree: Tree to serve; when omitted one is created on startup, replayed
              from the configured hash log if storage is enabled
        settings: Configuration dictionary (default: loaded configuration)

    Returns:
        FastAPI application
    """
    settings = settings or config

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store = None

        if tree is None:
            storage = settings["storage"]
            if storage.get("enabled"):
                store = HashStore(storage["database_url"])
                app.state.tree = load_merkle_tree(store)
                logger.info(f"Persisting leaf hashes to {store.database_url}")
            else:
                app.state.tree = MerkleTree()
                logger.warning("Storage disabled - leaves are kept in memory only")

        logger.info(f"Merkle Log started - {app.state.tree.size} leaves")
        yield

        if store is not None:
            store.close()
        logger.info("Merkle Log stopped")

    app = FastAPI(
        title="Merkle Log",
        description="Append-only Merkle tree with inclusion proofs",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    if tree is not None:
        app.state.tree = tree

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings["server"].get("cors_origins", ["*"]),
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(log_requests)

    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StaleTreeError, stale_tree_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
    app.add_api_route("/health", health_check, methods=["GET"])
    app.include_router(router)

    return app


app = create_app()

# ============================================================================
# Main Entry Point
# ============================================================================

def main():
    """Run the Merkle Log server."""
    uvicorn.run(
        "merklelog.main:app",
        host=config["server"]["host"],
        port=config["server"]["port"],
        log_level=str(config["server"]["log_level"]).lower()
    )


if __name__ == "__main__":
    main()
