"""FastAPI application exposing search and indexing over HTTP."""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, List

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from semindex.config import AppConfig
from semindex.errors import (
    ConfigurationError,
    IndexBusyError,
    IndexNotBuilt,
    ProviderError,
    StorageError,
)
from semindex.index.indexer import ReconcileReport
from semindex.index.search import SearchResult
from semindex.index.service import SemanticIndex
from semindex.ingestion.corpus import load_corpus

LOGGER = logging.getLogger(__name__)

MAX_TOP_K = 50
# Seconds a search waits for a batch being applied before answering 409.
SEARCH_LOCK_TIMEOUT = 10.0

app = FastAPI(title="semindex", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

_indexes: Dict[Path, SemanticIndex] = {}
_indexes_lock = threading.Lock()


class SearchPayload(BaseModel):
    query: str
    top_k: int = 5
    index_dir: str | None = None


class IndexPayload(BaseModel):
    paths: List[str]
    index_dir: str | None = None
    partial: bool = False


def _resolve_index_dir(index_dir: str | Path | None) -> Path:
    if index_dir is None:
        index_dir = getattr(app.state, "index_dir", None)
    config = AppConfig(index_dir=Path(index_dir) if index_dir is not None else None)
    return config.resolve_index_dir(Path.cwd())


def _get_index(index_dir: Path) -> SemanticIndex:
    """One shared instance per directory so its lock covers every request."""
    with _indexes_lock:
        semantic_index = _indexes.get(index_dir)
        if semantic_index is None:
            model_name = getattr(app.state, "model_name", None)
            semantic_index = SemanticIndex(AppConfig(index_dir=index_dir, model_name=model_name))
            _indexes[index_dir] = semantic_index
        return semantic_index


def _result_to_dict(result: SearchResult) -> Dict[str, Any]:
    return {
        "id": result.id,
        "path": str(result.path),
        "score": result.score,
        "preview": result.preview,
        "last_modified": result.last_modified,
    }


def _report_to_dict(report: ReconcileReport) -> Dict[str, Any]:
    data = asdict(report)
    data["failed"] = report.failed
    data["succeeded"] = report.succeeded
    return data


def _validate_paths(paths: List[str]) -> List[Path]:
    """Resolve request paths, allowing only existing directories under the home directory."""
    safe_base = os.path.realpath(str(Path.home())) + os.sep
    resolved: List[Path] = []
    for raw in paths:
        clean_path = raw.strip().replace("\r", "").replace("\n", "")
        if not clean_path:
            continue
        if "\0" in clean_path:
            raise HTTPException(status_code=400, detail="Invalid path: contains null byte")

        real_path = os.path.realpath(os.path.expanduser(clean_path))
        if not (real_path + os.sep).startswith(safe_base):
            raise HTTPException(
                status_code=403, detail="Access denied: path is outside allowed directory"
            )
        validated = Path(real_path)
        if not validated.exists():
            raise HTTPException(status_code=404, detail=f"Path not found: {clean_path}")
        if not validated.is_dir():
            raise HTTPException(status_code=400, detail=f"Path must be a directory: {clean_path}")
        resolved.append(validated)
    return resolved


@app.exception_handler(IndexNotBuilt)
async def index_not_built_handler(request: Request, exc: IndexNotBuilt) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(IndexBusyError)
async def index_busy_handler(request: Request, exc: IndexBusyError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
    LOGGER.error("Configuration error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": str(exc)})


@app.exception_handler(ProviderError)
async def provider_error_handler(request: Request, exc: ProviderError) -> JSONResponse:
    LOGGER.warning("Embedding provider error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    LOGGER.error("Storage error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": str(exc)})


@app.on_event("startup")
async def startup_event() -> None:
    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")


@app.on_event("shutdown")
async def shutdown_event() -> None:
    with _indexes_lock:
        for semantic_index in _indexes.values():
            semantic_index.close()
        _indexes.clear()


@app.post("/search")
async def search_documents(payload: SearchPayload) -> Dict[str, Any]:
    query = payload.query.strip()
    if not query:
        raise HTTPException(status_code=400, detail="Empty query")

    top_k = max(1, min(payload.top_k, MAX_TOP_K))
    index_dir = _resolve_index_dir(payload.index_dir)
    if not index_dir.exists():
        raise HTTPException(
            status_code=404,
            detail=f"Index not found at {index_dir}. Index some documents first.",
        )

    semantic_index = _get_index(index_dir)
    results = await asyncio.to_thread(
        semantic_index.search, query, top_k=top_k, timeout=SEARCH_LOCK_TIMEOUT
    )
    return {"results": [_result_to_dict(result) for result in results]}


@app.post("/index")
async def index_documents(payload: IndexPayload) -> Dict[str, Any]:
    if not payload.paths:
        raise HTTPException(status_code=400, detail="No path provided")

    paths = _validate_paths(payload.paths)
    if not paths:
        raise HTTPException(status_code=400, detail="No path provided")

    index_dir = _resolve_index_dir(payload.index_dir)
    corpus = await asyncio.to_thread(load_corpus, paths)
    if not corpus and not payload.partial:
        raise HTTPException(
            status_code=400,
            detail="No supported documents found; refusing to remove every document from the index",
        )
    semantic_index = _get_index(index_dir)
    report = await asyncio.to_thread(semantic_index.reconcile, corpus, full=not payload.partial)
    return {"status": "ok", "index_dir": str(index_dir), "report": _report_to_dict(report)}


@app.get("/stats")
async def index_stats(index_dir: str | None = None) -> Dict[str, Any]:
    resolved = _resolve_index_dir(index_dir)
    if not resolved.exists():
        return {
            "document_count": 0,
            "vector_count": 0,
            "dimension": None,
            "metric": None,
            "last_updated": None,
            "index_dir": str(resolved),
            "model_name": None,
        }

    view = _get_index(resolved).stats()
    data = asdict(view)
    data["index_dir"] = str(view.index_dir)
    return data
