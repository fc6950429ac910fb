"""
Data models for Code Nexus.

Plain dataclasses - no over-abstraction. Repository-local records
(concepts, patterns, file intelligence, learning deltas) and their
consolidated global counterparts (projects, patterns, concepts,
aggregations) all live here so both stores share one vocabulary.
"""

import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from ..errors import DeltaStateError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def parse_datetime(value: Any) -> Optional[datetime]:
    """Accept a datetime, an ISO string, or None."""
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def derive_concept_id(file_path: str, concept_type: str, name: str) -> str:
    """Stable concept identity: the same entity in the same file keeps its id."""
    key = f"{file_path}\x00{concept_type}\x00{name}"
    return hashlib.sha1(key.encode("utf-8")).hexdigest()[:16]


# =============================================================================
# Change input
# =============================================================================

class ChangeType(Enum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
    RENAMED = "renamed"


class TriggerType(Enum):
    COMMIT = "commit"
    MANUAL = "manual"
    SAVE = "save"


@dataclass
class ChangeRecord:
    """A single file-level change reported by a change source."""
    change_type: ChangeType
    path: str
    old_path: Optional[str] = None           # Renames only
    commit_id: Optional[str] = None
    commit_message: Optional[str] = None
    timestamp: Optional[datetime] = None

    @classmethod
    def modified(cls, path: str) -> "ChangeRecord":
        return cls(change_type=ChangeType.MODIFIED, path=path)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.change_type.value,
            "path": self.path,
            "old_path": self.old_path,
            "commit_id": self.commit_id,
            "commit_message": self.commit_message,
            "timestamp": format_datetime(self.timestamp),
        }


@dataclass
class CommitInfo:
    """Commit metadata attached to a change batch."""
    id: str
    message: str = ""
    author: str = ""
    email: str = ""
    timestamp: Optional[datetime] = None
    files_changed: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "message": self.message,
            "author": self.author,
            "email": self.email,
            "timestamp": format_datetime(self.timestamp),
            "files_changed": list(self.files_changed),
        }


# =============================================================================
# Learning deltas (append-only audit log)
# =============================================================================

class DeltaStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DeltaStatus.COMPLETED, DeltaStatus.FAILED)


_ALLOWED_TRANSITIONS = {
    DeltaStatus.PENDING: {DeltaStatus.PROCESSING, DeltaStatus.FAILED},
    DeltaStatus.PROCESSING: {DeltaStatus.COMPLETED, DeltaStatus.FAILED},
    DeltaStatus.COMPLETED: set(),
    DeltaStatus.FAILED: set(),
}


@dataclass
class LearningDelta:
    """One audited application of a change batch to the index."""
    repository_id: str
    id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=utcnow)
    trigger_type: TriggerType = TriggerType.MANUAL
    commit_id: Optional[str] = None
    commit_message: Optional[str] = None
    files_changed: List[str] = field(default_factory=list)

    concepts_added: int = 0
    concepts_removed: int = 0
    concepts_modified: int = 0
    patterns_added: int = 0
    patterns_removed: int = 0
    patterns_modified: int = 0

    duration_ms: int = 0
    status: DeltaStatus = DeltaStatus.PENDING
    error_message: Optional[str] = None

    def transition(self, status: DeltaStatus) -> None:
        """Move to a new status; terminal deltas never change again."""
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise DeltaStateError(
                f"Delta {self.id}: illegal transition "
                f"{self.status.value} -> {status.value}"
            )
        self.status = status

    @property
    def total_concept_changes(self) -> int:
        return self.concepts_added + self.concepts_modified + self.concepts_removed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "repository_id": self.repository_id,
            "timestamp": format_datetime(self.timestamp),
            "trigger_type": self.trigger_type.value,
            "commit_id": self.commit_id,
            "commit_message": self.commit_message,
            "files_changed": list(self.files_changed),
            "concepts_added": self.concepts_added,
            "concepts_removed": self.concepts_removed,
            "concepts_modified": self.concepts_modified,
            "patterns_added": self.patterns_added,
            "patterns_removed": self.patterns_removed,
            "patterns_modified": self.patterns_modified,
            "duration_ms": self.duration_ms,
            "status": self.status.value,
            "error_message": self.error_message,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LearningDelta":
        data = data.copy()
        data["timestamp"] = parse_datetime(data.get("timestamp")) or utcnow()
        data["trigger_type"] = TriggerType(data.get("trigger_type", "manual"))
        data["status"] = DeltaStatus(data.get("status", "pending"))
        data["files_changed"] = list(data.get("files_changed") or [])
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


# =============================================================================
# Repository-local records
# =============================================================================

@dataclass
class ConceptRecord:
    """A named code entity observed in one file."""
    id: str
    name: str
    concept_type: str
    file_path: str
    confidence_score: float = 0.5
    relationships: Dict[str, Any] = field(default_factory=dict)
    line_range: Dict[str, int] = field(default_factory=lambda: {"start": 0, "end": 0})
    created_at_commit: Optional[str] = None
    last_modified_commit: Optional[str] = None
    is_deleted: bool = False
    version: int = 1
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "concept_type": self.concept_type,
            "file_path": self.file_path,
            "confidence_score": self.confidence_score,
            "relationships": self.relationships,
            "line_range": self.line_range,
            "created_at_commit": self.created_at_commit,
            "last_modified_commit": self.last_modified_commit,
            "is_deleted": self.is_deleted,
            "version": self.version,
            "created_at": format_datetime(self.created_at),
            "updated_at": format_datetime(self.updated_at),
        }


@dataclass
class PatternRecord:
    """A recurring idiom learned in one repository. Never deleted."""
    pattern_id: str
    pattern_type: str
    content: Dict[str, Any] = field(default_factory=dict)
    frequency: int = 1
    contexts: List[str] = field(default_factory=list)
    examples: List[Dict[str, Any]] = field(default_factory=list)
    confidence: float = 0.5
    version: int = 1
    created_at: datetime = field(default_factory=utcnow)
    last_seen: datetime = field(default_factory=utcnow)
    last_updated_commit: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pattern_id": self.pattern_id,
            "pattern_type": self.pattern_type,
            "content": self.content,
            "frequency": self.frequency,
            "contexts": list(self.contexts),
            "examples": list(self.examples),
            "confidence": self.confidence,
            "version": self.version,
            "created_at": format_datetime(self.created_at),
            "last_seen": format_datetime(self.last_seen),
            "last_updated_commit": self.last_updated_commit,
        }


@dataclass
class ComplexityMetrics:
    cyclomatic: int = 0
    cognitive: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"cyclomatic": self.cyclomatic, "cognitive": self.cognitive}


@dataclass
class FileIntelligence:
    """What the index currently knows about one file."""
    file_path: str
    file_hash: str = ""
    concept_ids: List[str] = field(default_factory=list)
    patterns_used: List[str] = field(default_factory=list)
    complexity: ComplexityMetrics = field(default_factory=ComplexityMetrics)
    last_analyzed: datetime = field(default_factory=utcnow)
    last_learned_commit: Optional[str] = None
    last_learned_timestamp: Optional[datetime] = None


@dataclass
class ProjectMetadata:
    """Repository-level facts recorded in the local store."""
    project_path: str
    project_name: Optional[str] = None
    primary_language: Optional[str] = None
    languages: List[str] = field(default_factory=list)
    frameworks: List[str] = field(default_factory=list)


# =============================================================================
# Global (cross-project) records
# =============================================================================

@dataclass
class GlobalProject:
    """A repository linked into the Global Store."""
    id: str
    name: str
    path: str
    description: Optional[str] = None
    primary_language: Optional[str] = None
    frameworks: List[str] = field(default_factory=list)
    linked_at: datetime = field(default_factory=utcnow)
    last_synced: Optional[datetime] = None
    pattern_count: int = 0
    concept_count: int = 0
    is_active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "path": self.path,
            "description": self.description,
            "primary_language": self.primary_language,
            "frameworks": list(self.frameworks),
            "linked_at": format_datetime(self.linked_at),
            "last_synced": format_datetime(self.last_synced),
            "pattern_count": self.pattern_count,
            "concept_count": self.concept_count,
            "is_active": self.is_active,
        }


@dataclass
class ProjectLink:
    """Summary returned when a project is linked or listed."""
    id: str
    name: str
    path: str
    linked_at: datetime
    last_synced: Optional[datetime] = None
    pattern_count: int = 0
    concept_count: int = 0

    @classmethod
    def from_project(cls, project: GlobalProject) -> "ProjectLink":
        return cls(
            id=project.id,
            name=project.name,
            path=project.path,
            linked_at=project.linked_at,
            last_synced=project.last_synced,
            pattern_count=project.pattern_count,
            concept_count=project.concept_count,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "path": self.path,
            "linked_at": format_datetime(self.linked_at),
            "last_synced": format_datetime(self.last_synced),
            "pattern_count": self.pattern_count,
            "concept_count": self.concept_count,
        }


@dataclass
class GlobalPattern:
    """A pattern copied into the Global Store, tagged by source project."""
    id: str
    category: str
    pattern_data: Dict[str, Any] = field(default_factory=dict)
    subcategory: Optional[str] = None
    language: Optional[str] = None
    project_count: int = 1
    total_frequency: int = 1
    confidence: float = 0.5
    source_projects: List[str] = field(default_factory=list)
    first_seen: datetime = field(default_factory=utcnow)
    last_seen: datetime = field(default_factory=utcnow)
    source_project_id: Optional[str] = None
    local_pattern_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category,
            "subcategory": self.subcategory,
            "language": self.language,
            "pattern_data": self.pattern_data,
            "project_count": self.project_count,
            "total_frequency": self.total_frequency,
            "confidence": self.confidence,
            "source_projects": list(self.source_projects),
            "first_seen": format_datetime(self.first_seen),
            "last_seen": format_datetime(self.last_seen),
        }


@dataclass
class GlobalConcept:
    """A denormalized concept copy used for cross-project search."""
    id: str
    name: str
    concept_type: str
    file_path: str
    project_id: str
    language: str = "unknown"
    local_concept_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class PatternOccurrence:
    project_id: str
    frequency: int
    confidence: float
    pattern_data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "frequency": self.frequency,
            "confidence": self.confidence,
            "pattern_data": self.pattern_data,
        }


@dataclass
class PatternAggregation:
    """Equivalent patterns across projects, grouped by signature."""
    pattern_signature: str
    category: str
    occurrences: List[PatternOccurrence] = field(default_factory=list)
    aggregated_confidence: float = 0.0
    consensus_score: float = 0.0
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def project_count(self) -> int:
        return len({o.project_id for o in self.occurrences})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pattern_signature": self.pattern_signature,
            "category": self.category,
            "occurrences": [o.to_dict() for o in self.occurrences],
            "project_count": self.project_count,
            "aggregated_confidence": self.aggregated_confidence,
            "consensus_score": self.consensus_score,
            "created_at": format_datetime(self.created_at),
            "updated_at": format_datetime(self.updated_at),
        }


@dataclass
class SyncResult:
    project_id: str
    project_name: str = ""
    patterns_added: int = 0
    patterns_updated: int = 0
    concepts_added: int = 0
    concepts_updated: int = 0
    concepts_pruned: int = 0
    duration_ms: int = 0
    status: str = "success"                  # "success" or "failed"
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "project_name": self.project_name,
            "patterns_added": self.patterns_added,
            "patterns_updated": self.patterns_updated,
            "concepts_added": self.concepts_added,
            "concepts_updated": self.concepts_updated,
            "concepts_pruned": self.concepts_pruned,
            "duration_ms": self.duration_ms,
            "status": self.status,
            "error": self.error,
        }


@dataclass
class SearchResult:
    project_id: str
    project_name: str
    file_path: str
    code: str
    score: float
    context: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "project_name": self.project_name,
            "file_path": self.file_path,
            "match": {"code": self.code, "score": self.score, "context": self.context},
        }


@dataclass
class PortfolioView:
    projects: List[Dict[str, Any]] = field(default_factory=list)
    total_projects: int = 0
    total_patterns: int = 0
    total_concepts: int = 0
    most_used_languages: List[str] = field(default_factory=list)
    most_used_frameworks: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "projects": self.projects,
            "total_projects": self.total_projects,
            "total_patterns": self.total_patterns,
            "total_concepts": self.total_concepts,
            "most_used_languages": self.most_used_languages,
            "most_used_frameworks": self.most_used_frameworks,
        }
