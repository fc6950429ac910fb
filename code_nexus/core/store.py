"""
Project Store - Repository-local knowledge index.

One SQLite file per repository holding:
- learning_deltas: append-only audit log of learning runs
- semantic_concepts: named code entities (soft-deleted, never removed)
- file_intelligence: what the index knows about each file
- developer_patterns: learned idioms (never deleted)
- project_metadata: repository-level facts

Only the repository's IncrementalLearner writes here. Every statement runs
under one RLock so the store can be shared with the FastAPI threadpool.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from ..errors import DeltaStateError, StoreError
from .models import (
    ComplexityMetrics,
    ConceptRecord,
    DeltaStatus,
    FileIntelligence,
    LearningDelta,
    PatternRecord,
    ProjectMetadata,
    format_datetime,
    parse_datetime,
    utcnow,
)

logger = logging.getLogger(__name__)

_TERMINAL = (DeltaStatus.COMPLETED.value, DeltaStatus.FAILED.value)


class SQLiteStore:
    """
    One SQLite connection shared across threads behind an RLock.

    Subclasses create their schema in _init_db() and run every statement
    through _transaction(), which commits on success and turns
    sqlite3.Error into StoreError.
    """

    def __init__(self, db_path: str, wal_mode: bool = True):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()
        self.db = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.db.row_factory = sqlite3.Row
        if wal_mode:
            self.db.execute("PRAGMA journal_mode=WAL")
        self._init_db()

    def _init_db(self) -> None:
        raise NotImplementedError

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Serialize access and wrap SQLite failures in StoreError."""
        with self._lock:
            try:
                with self.db:
                    yield self.db
            except sqlite3.Error as e:
                logger.error(f"Store operation {operation} failed: {e}")
                raise StoreError(f"{operation}: {e}", operation=operation) from e

    def close(self) -> None:
        with self._lock:
            self.db.close()


class ProjectStore(SQLiteStore):
    """
    SQLite-backed index for a single repository.

    Example:
        store = ProjectStore("/work/my-repo")
        store.upsert_concept(concept)
        active = store.get_concepts_by_file("src/app.ts")
    """

    def __init__(
        self,
        project_path: str,
        db_path: Optional[str] = None,
        repository_id: Optional[str] = None,
        wal_mode: bool = True,
    ):
        """
        Open (or create) the store for a repository.

        Args:
            project_path: Repository root
            db_path: SQLite file; defaults to <project_path>/.code-nexus/nexus.db
            repository_id: Id written on deltas; defaults to the resolved path
            wal_mode: Enable SQLite write-ahead logging
        """
        self.project_path = str(Path(project_path).expanduser().resolve())
        self.repository_id = repository_id or self.project_path
        if db_path is None:
            db_path = str(Path(self.project_path) / ".code-nexus" / "nexus.db")
        super().__init__(db_path, wal_mode=wal_mode)
        logger.info(f"Project store initialized at {self.db_path}")

    def _init_db(self) -> None:
        with self._lock, self.db:
            self.db.executescript("""
                CREATE TABLE IF NOT EXISTS learning_deltas (
                    id TEXT PRIMARY KEY,
                    repository_id TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    trigger_type TEXT NOT NULL,
                    commit_id TEXT,
                    commit_message TEXT,
                    files_changed JSON NOT NULL,
                    concepts_added INTEGER DEFAULT 0,
                    concepts_removed INTEGER DEFAULT 0,
                    concepts_modified INTEGER DEFAULT 0,
                    patterns_added INTEGER DEFAULT 0,
                    patterns_removed INTEGER DEFAULT 0,
                    patterns_modified INTEGER DEFAULT 0,
                    duration_ms INTEGER DEFAULT 0,
                    status TEXT NOT NULL,
                    error_message TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_deltas_repository
                ON learning_deltas(repository_id, timestamp);

                CREATE TABLE IF NOT EXISTS semantic_concepts (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    concept_type TEXT NOT NULL,
                    file_path TEXT NOT NULL,
                    confidence_score REAL DEFAULT 0.5,
                    relationships JSON NOT NULL,
                    line_range JSON NOT NULL,
                    created_at_commit TEXT,
                    last_modified_commit TEXT,
                    is_deleted INTEGER DEFAULT 0,
                    version INTEGER DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_concepts_file
                ON semantic_concepts(file_path);

                CREATE TABLE IF NOT EXISTS file_intelligence (
                    file_path TEXT PRIMARY KEY,
                    file_hash TEXT,
                    concept_ids JSON NOT NULL,
                    patterns_used JSON NOT NULL,
                    complexity JSON NOT NULL,
                    last_analyzed TEXT NOT NULL,
                    last_learned_commit TEXT,
                    last_learned_timestamp TEXT
                );

                CREATE TABLE IF NOT EXISTS developer_patterns (
                    pattern_id TEXT PRIMARY KEY,
                    pattern_type TEXT NOT NULL,
                    content JSON NOT NULL,
                    frequency INTEGER DEFAULT 1,
                    contexts JSON NOT NULL,
                    examples JSON NOT NULL,
                    confidence REAL DEFAULT 0.5,
                    version INTEGER DEFAULT 1,
                    created_at TEXT NOT NULL,
                    last_seen TEXT NOT NULL,
                    last_updated_commit TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_patterns_type
                ON developer_patterns(pattern_type);

                CREATE TABLE IF NOT EXISTS project_metadata (
                    project_path TEXT PRIMARY KEY,
                    project_name TEXT,
                    primary_language TEXT,
                    languages JSON NOT NULL,
                    frameworks JSON NOT NULL,
                    updated_at TEXT NOT NULL
                );
            """)

    # =========================================================================
    # Learning deltas
    # =========================================================================

    def save_delta(self, delta: LearningDelta) -> None:
        """Persist a newly created delta."""
        with self._transaction("save_delta") as db:
            db.execute(
                """INSERT INTO learning_deltas
                   (id, repository_id, timestamp, trigger_type, commit_id,
                    commit_message, files_changed, concepts_added, concepts_removed,
                    concepts_modified, patterns_added, patterns_removed,
                    patterns_modified, duration_ms, status, error_message)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                self._delta_params(delta),
            )

    def update_delta(self, delta: LearningDelta) -> None:
        """
        Rewrite a delta's counters and status.

        Raises:
            DeltaStateError: the stored row is already completed or failed
        """
        params = self._delta_params(delta)
        with self._transaction("update_delta") as db:
            cursor = db.execute(
                """UPDATE learning_deltas SET
                   repository_id = ?, timestamp = ?, trigger_type = ?, commit_id = ?,
                   commit_message = ?, files_changed = ?, concepts_added = ?,
                   concepts_removed = ?, concepts_modified = ?, patterns_added = ?,
                   patterns_removed = ?, patterns_modified = ?, duration_ms = ?,
                   status = ?, error_message = ?
                   WHERE id = ? AND status NOT IN (?, ?)""",
                params[1:] + (delta.id,) + _TERMINAL,
            )
            updated = cursor.rowcount
        if not updated:
            raise DeltaStateError(f"Delta {delta.id} is missing or already terminal")

    def get_delta(self, delta_id: str) -> Optional[LearningDelta]:
        with self._transaction("get_delta") as db:
            row = db.execute(
                "SELECT * FROM learning_deltas WHERE id = ?", (delta_id,)
            ).fetchone()
        return self._row_to_delta(row) if row else None

    def get_recent_deltas(
        self,
        limit: int = 10,
        since: Optional[datetime] = None,
    ) -> List[LearningDelta]:
        """Most recent deltas first, optionally only those at or after `since`."""
        sql = "SELECT * FROM learning_deltas WHERE repository_id = ?"
        params: List[Any] = [self.repository_id]
        if since is not None:
            sql += " AND timestamp >= ?"
            params.append(format_datetime(since))
        sql += " ORDER BY timestamp DESC, rowid DESC LIMIT ?"
        params.append(limit)
        with self._transaction("get_recent_deltas") as db:
            rows = db.execute(sql, params).fetchall()
        return [self._row_to_delta(row) for row in rows]

    def get_delta_statistics(self) -> Dict[str, Any]:
        """Totals across every recorded delta for this repository."""
        with self._transaction("get_delta_statistics") as db:
            row = db.execute(
                """SELECT COUNT(*) AS total,
                          COALESCE(SUM(concepts_added), 0) AS concepts_added,
                          COALESCE(SUM(concepts_removed), 0) AS concepts_removed,
                          COALESCE(SUM(patterns_added), 0) AS patterns_added,
                          COALESCE(AVG(duration_ms), 0) AS avg_duration,
                          COALESCE(SUM(status = 'completed'), 0) AS completed
                   FROM learning_deltas WHERE repository_id = ?""",
                (self.repository_id,),
            ).fetchone()
        total = row["total"]
        return {
            "total_deltas": total,
            "total_concepts_added": row["concepts_added"],
            "total_concepts_removed": row["concepts_removed"],
            "total_patterns_added": row["patterns_added"],
            "average_duration_ms": float(row["avg_duration"]),
            "success_rate": (row["completed"] / total) if total else 0.0,
        }

    @staticmethod
    def _delta_params(delta: LearningDelta) -> tuple:
        return (
            delta.id,
            delta.repository_id,
            format_datetime(delta.timestamp),
            delta.trigger_type.value,
            delta.commit_id,
            delta.commit_message,
            json.dumps(delta.files_changed),
            delta.concepts_added,
            delta.concepts_removed,
            delta.concepts_modified,
            delta.patterns_added,
            delta.patterns_removed,
            delta.patterns_modified,
            delta.duration_ms,
            delta.status.value,
            delta.error_message,
        )

    @staticmethod
    def _row_to_delta(row: sqlite3.Row) -> LearningDelta:
        data = dict(row)
        data["files_changed"] = json.loads(data["files_changed"])
        return LearningDelta.from_dict(data)

    # =========================================================================
    # Concepts
    # =========================================================================

    def get_concept(self, concept_id: str) -> Optional[ConceptRecord]:
        with self._transaction("get_concept") as db:
            row = db.execute(
                "SELECT * FROM semantic_concepts WHERE id = ?", (concept_id,)
            ).fetchone()
        return self._row_to_concept(row) if row else None

    def upsert_concept(self, concept: ConceptRecord) -> None:
        with self._transaction("upsert_concept") as db:
            db.execute(
                """INSERT OR REPLACE INTO semantic_concepts
                   (id, name, concept_type, file_path, confidence_score, relationships,
                    line_range, created_at_commit, last_modified_commit, is_deleted,
                    version, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    concept.id,
                    concept.name,
                    concept.concept_type,
                    concept.file_path,
                    concept.confidence_score,
                    json.dumps(concept.relationships),
                    json.dumps(concept.line_range),
                    concept.created_at_commit,
                    concept.last_modified_commit,
                    int(concept.is_deleted),
                    concept.version,
                    format_datetime(concept.created_at),
                    format_datetime(concept.updated_at),
                ),
            )

    def mark_concept_deleted(self, concept_id: str, commit_id: Optional[str] = None) -> bool:
        """Soft-delete a concept. Returns False if it was missing or already deleted."""
        with self._transaction("mark_concept_deleted") as db:
            cursor = db.execute(
                """UPDATE semantic_concepts
                   SET is_deleted = 1, last_modified_commit = ?, updated_at = ?
                   WHERE id = ? AND is_deleted = 0""",
                (commit_id, format_datetime(utcnow()), concept_id),
            )
            return cursor.rowcount > 0

    def get_concepts_by_file(
        self,
        file_path: str,
        include_deleted: bool = False,
    ) -> List[ConceptRecord]:
        sql = "SELECT * FROM semantic_concepts WHERE file_path = ?"
        if not include_deleted:
            sql += " AND is_deleted = 0"
        with self._transaction("get_concepts_by_file") as db:
            rows = db.execute(sql + " ORDER BY name", (file_path,)).fetchall()
        return [self._row_to_concept(row) for row in rows]

    def get_active_concepts(self, limit: Optional[int] = None) -> List[ConceptRecord]:
        sql = "SELECT * FROM semantic_concepts WHERE is_deleted = 0 ORDER BY file_path, name"
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (limit,)
        with self._transaction("get_active_concepts") as db:
            rows = db.execute(sql, params).fetchall()
        return [self._row_to_concept(row) for row in rows]

    def count_concepts(self, include_deleted: bool = False) -> int:
        sql = "SELECT COUNT(*) FROM semantic_concepts"
        if not include_deleted:
            sql += " WHERE is_deleted = 0"
        with self._transaction("count_concepts") as db:
            return db.execute(sql).fetchone()[0]

    @staticmethod
    def _row_to_concept(row: sqlite3.Row) -> ConceptRecord:
        return ConceptRecord(
            id=row["id"],
            name=row["name"],
            concept_type=row["concept_type"],
            file_path=row["file_path"],
            confidence_score=row["confidence_score"],
            relationships=json.loads(row["relationships"]),
            line_range=json.loads(row["line_range"]),
            created_at_commit=row["created_at_commit"],
            last_modified_commit=row["last_modified_commit"],
            is_deleted=bool(row["is_deleted"]),
            version=row["version"],
            created_at=parse_datetime(row["created_at"]),
            updated_at=parse_datetime(row["updated_at"]),
        )

    # =========================================================================
    # File intelligence
    # =========================================================================

    def get_file_intelligence(self, file_path: str) -> Optional[FileIntelligence]:
        with self._transaction("get_file_intelligence") as db:
            row = db.execute(
                "SELECT * FROM file_intelligence WHERE file_path = ?", (file_path,)
            ).fetchone()
        if not row:
            return None
        return FileIntelligence(
            file_path=row["file_path"],
            file_hash=row["file_hash"] or "",
            concept_ids=json.loads(row["concept_ids"]),
            patterns_used=json.loads(row["patterns_used"]),
            complexity=ComplexityMetrics(**json.loads(row["complexity"])),
            last_analyzed=parse_datetime(row["last_analyzed"]),
            last_learned_commit=row["last_learned_commit"],
            last_learned_timestamp=parse_datetime(row["last_learned_timestamp"]),
        )

    def save_file_intelligence(self, info: FileIntelligence) -> None:
        with self._transaction("save_file_intelligence") as db:
            db.execute(
                """INSERT OR REPLACE INTO file_intelligence
                   (file_path, file_hash, concept_ids, patterns_used, complexity,
                    last_analyzed, last_learned_commit, last_learned_timestamp)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    info.file_path,
                    info.file_hash,
                    json.dumps(info.concept_ids),
                    json.dumps(info.patterns_used),
                    json.dumps(info.complexity.to_dict()),
                    format_datetime(info.last_analyzed),
                    info.last_learned_commit,
                    format_datetime(info.last_learned_timestamp),
                ),
            )

    def delete_file_intelligence(self, file_path: str) -> bool:
        with self._transaction("delete_file_intelligence") as db:
            cursor = db.execute(
                "DELETE FROM file_intelligence WHERE file_path = ?", (file_path,)
            )
            return cursor.rowcount > 0

    # =========================================================================
    # Developer patterns
    # =========================================================================

    def get_pattern(self, pattern_id: str) -> Optional[PatternRecord]:
        with self._transaction("get_pattern") as db:
            row = db.execute(
                "SELECT * FROM developer_patterns WHERE pattern_id = ?", (pattern_id,)
            ).fetchone()
        return self._row_to_pattern(row) if row else None

    def save_pattern(self, pattern: PatternRecord) -> None:
        with self._transaction("save_pattern") as db:
            db.execute(
                """INSERT OR REPLACE INTO developer_patterns
                   (pattern_id, pattern_type, content, frequency, contexts, examples,
                    confidence, version, created_at, last_seen, last_updated_commit)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    pattern.pattern_id,
                    pattern.pattern_type,
                    json.dumps(pattern.content),
                    pattern.frequency,
                    json.dumps(pattern.contexts),
                    json.dumps(pattern.examples),
                    pattern.confidence,
                    pattern.version,
                    format_datetime(pattern.created_at),
                    format_datetime(pattern.last_seen),
                    pattern.last_updated_commit,
                ),
            )

    def get_patterns(self, pattern_type: Optional[str] = None) -> List[PatternRecord]:
        sql = "SELECT * FROM developer_patterns"
        params: tuple = ()
        if pattern_type:
            sql += " WHERE pattern_type = ?"
            params = (pattern_type,)
        with self._transaction("get_patterns") as db:
            rows = db.execute(sql + " ORDER BY frequency DESC, pattern_id", params).fetchall()
        return [self._row_to_pattern(row) for row in rows]

    def count_patterns(self) -> int:
        with self._transaction("count_patterns") as db:
            return db.execute("SELECT COUNT(*) FROM developer_patterns").fetchone()[0]

    @staticmethod
    def _row_to_pattern(row: sqlite3.Row) -> PatternRecord:
        return PatternRecord(
            pattern_id=row["pattern_id"],
            pattern_type=row["pattern_type"],
            content=json.loads(row["content"]),
            frequency=row["frequency"],
            contexts=json.loads(row["contexts"]),
            examples=json.loads(row["examples"]),
            confidence=row["confidence"],
            version=row["version"],
            created_at=parse_datetime(row["created_at"]),
            last_seen=parse_datetime(row["last_seen"]),
            last_updated_commit=row["last_updated_commit"],
        )

    # =========================================================================
    # Project metadata
    # =========================================================================

    def get_project_metadata(self) -> ProjectMetadata:
        """Stored metadata, or an empty record named after the directory."""
        with self._transaction("get_project_metadata") as db:
            row = db.execute(
                "SELECT * FROM project_metadata WHERE project_path = ?",
                (self.project_path,),
            ).fetchone()
        if not row:
            return ProjectMetadata(project_path=self.project_path)
        return ProjectMetadata(
            project_path=row["project_path"],
            project_name=row["project_name"],
            primary_language=row["primary_language"],
            languages=json.loads(row["languages"]),
            frameworks=json.loads(row["frameworks"]),
        )

    def save_project_metadata(self, metadata: ProjectMetadata) -> None:
        with self._transaction("save_project_metadata") as db:
            db.execute(
                """INSERT OR REPLACE INTO project_metadata
                   (project_path, project_name, primary_language, languages,
                    frameworks, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    self.project_path,
                    metadata.project_name,
                    metadata.primary_language,
                    json.dumps(metadata.languages),
                    json.dumps(metadata.frameworks),
                    format_datetime(utcnow()),
                ),
            )

    def get_stats(self) -> Dict[str, Any]:
        """Row counts for the API's project view."""
        return {
            "repository_id": self.repository_id,
            "db_path": str(self.db_path),
            "active_concepts": self.count_concepts(),
            "total_concepts": self.count_concepts(include_deleted=True),
            "patterns": self.count_patterns(),
        }
