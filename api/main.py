"""
Code Nexus API

HTTP command surface over the incremental learner and the cross-project
service. Each repository path gets its own ProjectStore and learner; all
repositories share one Global Store.
"""

import hashlib
import logging
import os
import secrets
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, field_validator

from code_nexus import __version__
from code_nexus.config import NexusConfig
from code_nexus.core.global_store import GlobalStore
from code_nexus.core.models import ChangeRecord, ChangeType, CommitInfo, TriggerType
from code_nexus.core.store import ProjectStore
from code_nexus.crossproject.service import CrossProjectService, normalize_project_path
from code_nexus.errors import ConfigValidationError, NexusError, ProjectNotFoundError, QueueFullError
from code_nexus.learning.learner import IncrementalLearner
from code_nexus.sources.git import GitChangeSource
from code_nexus.sources.oracle import LexicalOracle

logger = logging.getLogger(__name__)

# =============================================================================
# Configuration
# =============================================================================

API_KEY = os.environ.get("NEXUS_API_KEY")

ALLOWED_ORIGINS = os.environ.get("NEXUS_ALLOWED_ORIGINS", "http://localhost:3000").split(",")

ENABLE_DOCS = os.environ.get("NEXUS_ENABLE_DOCS")

# =============================================================================
# Per-project state
# =============================================================================


@dataclass
class ProjectContext:
    path: str
    store: ProjectStore
    learner: IncrementalLearner


_config: Optional[NexusConfig] = None
_global_store: Optional[GlobalStore] = None
_service: Optional[CrossProjectService] = None
_projects: Dict[str, ProjectContext] = {}


def get_config() -> NexusConfig:
    if _config is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return _config


def get_service() -> CrossProjectService:
    if _service is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return _service


def get_project_context(project_path: str) -> ProjectContext:
    """Get or create the store and learner for a repository path."""
    path = normalize_project_path(project_path)
    if not os.path.isdir(path):
        raise HTTPException(status_code=404, detail=f"Project directory not found: {path}")

    if path not in _projects:
        config = get_config()
        path_hash = hashlib.sha256(path.encode()).hexdigest()[:16]
        db_path = os.path.join(
            os.path.expanduser(config.storage.data_dir), "projects", path_hash, "nexus.db"
        )
        store = ProjectStore(path, db_path=db_path, wal_mode=config.storage.wal_mode)
        learner = IncrementalLearner(store, LexicalOracle(root_dir=path), config)
        _projects[path] = ProjectContext(path=path, store=store, learner=learner)
        logger.info(f"Opened project {path}")
    return _projects[path]


def validate_api_key(x_api_key: Optional[str] = Header(default=None, alias="X-API-Key")) -> Optional[str]:
    """Require X-API-Key when NEXUS_API_KEY is set."""
    if API_KEY and not (x_api_key and secrets.compare_digest(x_api_key, API_KEY)):
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


@contextmanager
def translate_errors() -> Iterator[None]:
    """Map library errors onto HTTP status codes."""
    try:
        yield
    except ProjectNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except QueueFullError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except (ConfigValidationError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except NexusError as e:
        logger.error(f"Request failed: {type(e).__name__}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


# =============================================================================
# Lifespan
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown."""
    global _config, _global_store, _service
    _config = NexusConfig.load()
    os.makedirs(os.path.expanduser(_config.storage.data_dir), exist_ok=True)
    _global_store = GlobalStore(
        _config.storage.resolved_global_db_path(), wal_mode=_config.storage.wal_mode
    )
    _service = CrossProjectService(_global_store, config=_config)
    yield
    for context in _projects.values():
        await context.learner.stop()
        context.store.close()
    _projects.clear()
    _global_store.close()
    _config = _global_store = _service = None


# =============================================================================
# FastAPI App
# =============================================================================

app = FastAPI(
    title="Code Nexus API",
    description="Incremental code intelligence and cross-project pattern aggregation.",
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs" if ENABLE_DOCS else None,
    redoc_url=None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=False,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "X-API-Key"],
)


# =============================================================================
# Request Models
# =============================================================================

class CommitModel(BaseModel):
    id: str = Field(..., max_length=200)
    message: str = Field(default="", max_length=10000)
    author: str = Field(default="", max_length=200)
    email: str = Field(default="", max_length=200)

    def to_commit_info(self) -> CommitInfo:
        return CommitInfo(id=self.id, message=self.message, author=self.author, email=self.email)


class QueueLearningRequest(BaseModel):
    project_path: str = Field(..., description="Repository root")
    files: List[str] = Field(..., description="Repository-relative paths to (re)learn")
    trigger: str = Field(default="manual", description="commit, manual, or save")
    priority: int = Field(default=0, description="Higher runs first")
    commit: Optional[CommitModel] = None

    @field_validator("trigger")
    @classmethod
    def validate_trigger(cls, v):
        if v not in {t.value for t in TriggerType}:
            raise ValueError(f"trigger must be one of {[t.value for t in TriggerType]}")
        return v


class ChangeModel(BaseModel):
    type: str = Field(..., description="added, modified, deleted, or renamed")
    path: str
    old_path: Optional[str] = None

    @field_validator("type")
    @classmethod
    def validate_type(cls, v):
        if v not in {t.value for t in ChangeType}:
            raise ValueError(f"type must be one of {[t.value for t in ChangeType]}")
        return v


class ProcessChangesRequest(BaseModel):
    project_path: str
    changes: List[ChangeModel]
    commit: Optional[CommitModel] = None


class LearnFromGitRequest(BaseModel):
    project_path: str
    since: Optional[str] = Field(default=None, description="Ref to diff against HEAD; omit for uncommitted changes")


class LinkProjectRequest(BaseModel):
    path: str = Field(..., description="Repository root")
    name: Optional[str] = Field(default=None, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)


class SearchRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=500)
    project_filter: Optional[List[str]] = None
    language_filter: Optional[str] = None
    limit: int = Field(default=20, ge=1, le=200)


# =============================================================================
# Public Endpoints
# =============================================================================

@app.get("/")
async def root():
    """API status and endpoint listing."""
    return {
        "service": "Code Nexus API",
        "status": "operational",
        "version": __version__,
        "endpoints": {
            "queue_learning": "POST /v1/learning/queue",
            "process_queue": "POST /v1/learning/queue/process",
            "process_changes": "POST /v1/learning/changes",
            "learn_from_git": "POST /v1/learning/git",
            "recent_deltas": "GET /v1/learning/deltas",
            "learning_status": "GET /v1/learning/status",
            "link_project": "POST /v1/projects/link",
            "sync_projects": "POST /v1/projects/sync",
            "global_patterns": "GET /v1/patterns",
            "search": "POST /v1/search",
            "portfolio": "GET /v1/portfolio",
        },
    }


@app.get("/health")
async def health():
    """Health check."""
    return {"status": "healthy"}


# =============================================================================
# Learning Endpoints
# =============================================================================

@app.post("/v1/learning/queue")
async def queue_learning(
    request: QueueLearningRequest,
    _key: Optional[str] = Depends(validate_api_key),
):
    """Queue files for background learning."""
    context = get_project_context(request.project_path)
    with translate_errors():
        task_id = await context.learner.queue_learning(
            request.files,
            trigger=request.trigger,
            commit_info=request.commit.to_commit_info() if request.commit else None,
            priority=request.priority,
        )
    return {
        "task_id": task_id,
        "queued": task_id is not None,
        "files": len(request.files),
        "message": "Queued" if task_id else "Learning is disabled",
    }


@app.post("/v1/learning/queue/process")
async def process_learning_queue(
    project_path: str,
    _key: Optional[str] = Depends(validate_api_key),
):
    """Drain the project's queue now and wait for it to empty."""
    context = get_project_context(project_path)
    before = context.learner.get_learning_status()["total_deltas_processed"]
    await context.learner.process_queue()
    status = context.learner.get_learning_status()
    return {
        "processed": status["total_deltas_processed"] - before,
        "queue_length": status["queue_length"],
    }


@app.post("/v1/learning/changes")
async def process_changes(
    request: ProcessChangesRequest,
    _key: Optional[str] = Depends(validate_api_key),
):
    """Apply a change batch immediately and return its delta."""
    context = get_project_context(request.project_path)
    changes = [
        ChangeRecord(change_type=ChangeType(c.type), path=c.path, old_path=c.old_path)
        for c in request.changes
    ]
    with translate_errors():
        delta = await context.learner.process_changes(
            changes, request.commit.to_commit_info() if request.commit else None
        )
    return delta.to_dict()


@app.post("/v1/learning/git")
async def learn_from_git(
    request: LearnFromGitRequest,
    _key: Optional[str] = Depends(validate_api_key),
):
    """Learn from the repository's git changes."""
    context = get_project_context(request.project_path)
    with translate_errors():
        delta = await context.learner.learn_from_change_source(
            GitChangeSource(context.path), since=request.since
        )
    return delta.to_dict()


@app.get("/v1/learning/deltas")
async def recent_deltas(
    project_path: str,
    limit: int = 10,
    since: Optional[datetime] = None,
    _key: Optional[str] = Depends(validate_api_key),
):
    """Most recent learning deltas for a project."""
    context = get_project_context(project_path)
    with translate_errors():
        deltas = context.learner.get_recent_deltas(limit=limit, since_timestamp=since)
    return {"count": len(deltas), "deltas": [d.to_dict() for d in deltas]}


@app.get("/v1/learning/status")
async def learning_status(
    project_path: str,
    _key: Optional[str] = Depends(validate_api_key),
):
    context = get_project_context(project_path)
    status = context.learner.get_learning_status()
    with translate_errors():
        status["statistics"] = context.learner.get_statistics()
        status["index"] = context.store.get_stats()
    return status


@app.delete("/v1/learning/queue")
async def clear_learning_queue(
    project_path: str,
    _key: Optional[str] = Depends(validate_api_key),
):
    context = get_project_context(project_path)
    return {"cleared": context.learner.clear_queue()}


# =============================================================================
# Cross-Project Endpoints
# =============================================================================

@app.post("/v1/projects/link")
async def link_project(
    request: LinkProjectRequest,
    _key: Optional[str] = Depends(validate_api_key),
):
    """Link a repository into the Global Store (idempotent by path)."""
    context = get_project_context(request.path)
    with translate_errors():
        link = await get_service().link_project(
            context.path, context.store, name=request.name, description=request.description
        )
    return link.to_dict()


@app.get("/v1/projects")
async def linked_projects(_key: Optional[str] = Depends(validate_api_key)):
    with translate_errors():
        links = get_service().get_linked_projects()
    return {"count": len(links), "projects": [link.to_dict() for link in links]}


@app.delete("/v1/projects/{project_id}")
async def unlink_project(project_id: str, _key: Optional[str] = Depends(validate_api_key)):
    with translate_errors():
        get_service().unlink_project(project_id)
    return {"id": project_id, "message": "Unlinked"}


@app.post("/v1/projects/sync")
async def sync_all_projects(_key: Optional[str] = Depends(validate_api_key)):
    """Sync every linked project that has an open store."""
    stores = {path: context.store for path, context in _projects.items()}
    with translate_errors():
        results = await get_service().sync_all_projects(stores)
    return {"count": len(results), "results": [r.to_dict() for r in results]}


@app.post("/v1/projects/{project_id}/sync")
async def sync_project(project_id: str, _key: Optional[str] = Depends(validate_api_key)):
    service = get_service()
    with translate_errors():
        project = service.global_store.get_project(project_id)
        if project is None:
            raise ProjectNotFoundError(project_id)
    context = get_project_context(project.path)
    result = await service.sync_project(project_id, context.store)
    return result.to_dict()


@app.get("/v1/projects/{project_a}/similarity/{project_b}")
async def project_similarity(
    project_a: str,
    project_b: str,
    _key: Optional[str] = Depends(validate_api_key),
):
    with translate_errors():
        score = get_service().get_project_similarity(project_a, project_b)
    return {"project_a": project_a, "project_b": project_b, "similarity": score}


@app.get("/v1/patterns")
async def global_patterns(
    category: Optional[str] = None,
    min_project_count: Optional[int] = None,
    min_consensus: Optional[float] = None,
    language: Optional[str] = None,
    limit: int = 50,
    _key: Optional[str] = Depends(validate_api_key),
):
    """Global patterns, ranked by relevance."""
    with translate_errors():
        patterns = get_service().get_global_patterns(
            category=category,
            min_project_count=min_project_count,
            min_consensus=min_consensus,
            language=language,
            limit=limit,
        )
    return {"count": len(patterns), "patterns": [p.to_dict() for p in patterns]}


@app.get("/v1/patterns/aggregations")
async def pattern_aggregations(
    category: Optional[str] = None,
    min_consensus: Optional[float] = None,
    limit: int = 50,
    _key: Optional[str] = Depends(validate_api_key),
):
    with translate_errors():
        aggregations = get_service().get_pattern_aggregations(
            category=category, min_consensus=min_consensus, limit=limit
        )
    return {"count": len(aggregations), "aggregations": [a.to_dict() for a in aggregations]}


@app.get("/v1/patterns/diff")
async def pattern_diff(
    project_a: str,
    project_b: str,
    _key: Optional[str] = Depends(validate_api_key),
):
    with translate_errors():
        diff = get_service().aggregator.get_pattern_diff(project_a, project_b)
    return {key: [p.to_dict() for p in patterns] for key, patterns in diff.items()}


@app.post("/v1/search")
async def search_all_projects(
    request: SearchRequest,
    _key: Optional[str] = Depends(validate_api_key),
):
    """Search concept names across linked projects."""
    with translate_errors():
        results = get_service().search_all_projects(
            request.query,
            project_filter=request.project_filter,
            language_filter=request.language_filter,
            limit=request.limit,
        )
    return {"query": request.query, "count": len(results), "results": [r.to_dict() for r in results]}


@app.get("/v1/portfolio")
async def portfolio(_key: Optional[str] = Depends(validate_api_key)):
    with translate_errors():
        view = get_service().get_portfolio_view()
    return view.to_dict()


# =============================================================================
# Run with: uvicorn api.main:app --reload --port 8000
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=os.environ.get("NEXUS_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        app,
        host=os.environ.get("NEXUS_HOST", "127.0.0.1"),
        port=int(os.environ.get("NEXUS_PORT", "8000")),
    )
