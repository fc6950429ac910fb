"""
Global Store - consolidated cross-project knowledge.

A single SQLite file holding:
- global_projects: one row per linked repository (unique by path)
- global_patterns: pattern copies tagged with their source project
- global_concepts: concept copies for cross-project search
- pattern_aggregations: equivalent patterns grouped by signature

Written only by the CrossProjectService and the PatternAggregator it runs.
"""

import json
import logging
import sqlite3
from typing import Any, Dict, Iterable, List, Optional

from .models import (
    GlobalConcept,
    GlobalPattern,
    GlobalProject,
    PatternAggregation,
    PatternOccurrence,
    format_datetime,
    parse_datetime,
    utcnow,
)
from .store import SQLiteStore

logger = logging.getLogger(__name__)

_ACTIVE_PROJECT_IDS = "SELECT id FROM global_projects WHERE is_active = 1"


class GlobalStore(SQLiteStore):
    """
    Example:
        store = GlobalStore("~/.code-nexus/global-patterns.db")
        project = store.get_project_by_path("/work/api")
        patterns = store.get_global_patterns(category="naming", limit=20)
    """

    def __init__(self, db_path: str = "~/.code-nexus/global-patterns.db", wal_mode: bool = True):
        super().__init__(db_path, wal_mode=wal_mode)
        logger.info(f"Global store initialized at {self.db_path}")

    def _init_db(self) -> None:
        with self._lock, self.db:
            self.db.executescript("""
                CREATE TABLE IF NOT EXISTS global_projects (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    path TEXT NOT NULL UNIQUE,
                    description TEXT,
                    primary_language TEXT,
                    frameworks JSON NOT NULL,
                    linked_at TEXT NOT NULL,
                    last_synced TEXT,
                    pattern_count INTEGER DEFAULT 0,
                    concept_count INTEGER DEFAULT 0,
                    is_active INTEGER DEFAULT 1
                );

                CREATE TABLE IF NOT EXISTS global_patterns (
                    id TEXT PRIMARY KEY,
                    category TEXT NOT NULL,
                    subcategory TEXT,
                    language TEXT,
                    pattern_data JSON NOT NULL,
                    project_count INTEGER DEFAULT 1,
                    total_frequency INTEGER DEFAULT 1,
                    confidence REAL DEFAULT 0.5,
                    source_projects JSON NOT NULL,
                    first_seen TEXT NOT NULL,
                    last_seen TEXT NOT NULL,
                    source_project_id TEXT,
                    local_pattern_id TEXT,
                    UNIQUE (source_project_id, local_pattern_id)
                );

                CREATE INDEX IF NOT EXISTS idx_global_patterns_category
                ON global_patterns(category, language);

                CREATE TABLE IF NOT EXISTS global_concepts (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    concept_type TEXT NOT NULL,
                    file_path TEXT NOT NULL,
                    project_id TEXT NOT NULL,
                    language TEXT,
                    local_concept_id TEXT,
                    metadata JSON NOT NULL,
                    created_at TEXT NOT NULL,
                    UNIQUE (project_id, local_concept_id)
                );

                CREATE INDEX IF NOT EXISTS idx_global_concepts_project
                ON global_concepts(project_id);

                CREATE TABLE IF NOT EXISTS pattern_aggregations (
                    id TEXT PRIMARY KEY,
                    pattern_signature TEXT NOT NULL UNIQUE,
                    category TEXT NOT NULL,
                    occurrences JSON NOT NULL,
                    aggregated_confidence REAL NOT NULL,
                    consensus_score REAL NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
            """)

    # =========================================================================
    # Projects
    # =========================================================================

    def add_project(self, project: GlobalProject) -> None:
        with self._transaction("add_project") as db:
            db.execute(
                """INSERT INTO global_projects
                   (id, name, path, description, primary_language, frameworks,
                    linked_at, last_synced, pattern_count, concept_count, is_active)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    project.id,
                    project.name,
                    project.path,
                    project.description,
                    project.primary_language,
                    json.dumps(project.frameworks),
                    format_datetime(project.linked_at),
                    format_datetime(project.last_synced),
                    project.pattern_count,
                    project.concept_count,
                    int(project.is_active),
                ),
            )

    def get_project(self, project_id: str) -> Optional[GlobalProject]:
        with self._transaction("get_project") as db:
            row = db.execute(
                "SELECT * FROM global_projects WHERE id = ?", (project_id,)
            ).fetchone()
        return self._row_to_project(row) if row else None

    def get_project_by_path(self, path: str) -> Optional[GlobalProject]:
        with self._transaction("get_project_by_path") as db:
            row = db.execute(
                "SELECT * FROM global_projects WHERE path = ?", (path,)
            ).fetchone()
        return self._row_to_project(row) if row else None

    def list_projects(self, active_only: bool = True) -> List[GlobalProject]:
        sql = "SELECT * FROM global_projects"
        if active_only:
            sql += " WHERE is_active = 1"
        with self._transaction("list_projects") as db:
            rows = db.execute(sql + " ORDER BY linked_at, name").fetchall()
        return [self._row_to_project(row) for row in rows]

    def update_project_details(
        self,
        project_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        primary_language: Optional[str] = None,
        frameworks: Optional[List[str]] = None,
        is_active: Optional[bool] = None,
    ) -> None:
        """Overwrite the given fields; None leaves a field unchanged."""
        updates: Dict[str, Any] = {
            "name": name,
            "description": description,
            "primary_language": primary_language,
            "frameworks": json.dumps(frameworks) if frameworks is not None else None,
            "is_active": int(is_active) if is_active is not None else None,
        }
        updates = {k: v for k, v in updates.items() if v is not None}
        if not updates:
            return
        assignments = ", ".join(f"{column} = ?" for column in updates)
        with self._transaction("update_project_details") as db:
            db.execute(
                f"UPDATE global_projects SET {assignments} WHERE id = ?",
                (*updates.values(), project_id),
            )

    def update_project_stats(self, project_id: str, pattern_count: int, concept_count: int) -> None:
        with self._transaction("update_project_stats") as db:
            db.execute(
                """UPDATE global_projects
                   SET pattern_count = ?, concept_count = ?, last_synced = ?
                   WHERE id = ?""",
                (pattern_count, concept_count, format_datetime(utcnow()), project_id),
            )

    @staticmethod
    def _row_to_project(row: sqlite3.Row) -> GlobalProject:
        return GlobalProject(
            id=row["id"],
            name=row["name"],
            path=row["path"],
            description=row["description"],
            primary_language=row["primary_language"],
            frameworks=json.loads(row["frameworks"]),
            linked_at=parse_datetime(row["linked_at"]),
            last_synced=parse_datetime(row["last_synced"]),
            pattern_count=row["pattern_count"],
            concept_count=row["concept_count"],
            is_active=bool(row["is_active"]),
        )

    # =========================================================================
    # Global patterns
    # =========================================================================

    def upsert_global_pattern(self, pattern: GlobalPattern) -> bool:
        """
        Insert or refresh a pattern keyed by (source_project_id, local_pattern_id).

        Returns:
            True if a new row was inserted, False if an existing one was updated
        """
        with self._transaction("upsert_global_pattern") as db:
            row = db.execute(
                """SELECT id, first_seen FROM global_patterns
                   WHERE source_project_id = ? AND local_pattern_id = ?""",
                (pattern.source_project_id, pattern.local_pattern_id),
            ).fetchone()

            if row:
                pattern.id = row["id"]
                pattern.first_seen = parse_datetime(row["first_seen"])
                db.execute(
                    """UPDATE global_patterns SET
                       category = ?, subcategory = ?, language = ?, pattern_data = ?,
                       project_count = ?, total_frequency = ?, confidence = ?,
                       source_projects = ?, last_seen = ?
                       WHERE id = ?""",
                    (
                        pattern.category,
                        pattern.subcategory,
                        pattern.language,
                        json.dumps(pattern.pattern_data),
                        pattern.project_count,
                        pattern.total_frequency,
                        pattern.confidence,
                        json.dumps(pattern.source_projects),
                        format_datetime(pattern.last_seen),
                        pattern.id,
                    ),
                )
                return False

            db.execute(
                """INSERT INTO global_patterns
                   (id, category, subcategory, language, pattern_data, project_count,
                    total_frequency, confidence, source_projects, first_seen, last_seen,
                    source_project_id, local_pattern_id)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    pattern.id,
                    pattern.category,
                    pattern.subcategory,
                    pattern.language,
                    json.dumps(pattern.pattern_data),
                    pattern.project_count,
                    pattern.total_frequency,
                    pattern.confidence,
                    json.dumps(pattern.source_projects),
                    format_datetime(pattern.first_seen),
                    format_datetime(pattern.last_seen),
                    pattern.source_project_id,
                    pattern.local_pattern_id,
                ),
            )
            return True

    def get_global_patterns(
        self,
        category: Optional[str] = None,
        language: Optional[str] = None,
        min_project_count: Optional[int] = None,
        project_id: Optional[str] = None,
        active_only: bool = True,
        limit: int = 100,
    ) -> List[GlobalPattern]:
        """Patterns ordered by project count, then confidence.

        Patterns of unlinked projects are left out unless active_only is False.
        """
        clauses: List[str] = []
        params: List[Any] = []
        if active_only:
            clauses.append(f"source_project_id IN ({_ACTIVE_PROJECT_IDS})")
        if category:
            clauses.append("category = ?")
            params.append(category)
        if language:
            clauses.append("language = ?")
            params.append(language)
        if min_project_count:
            clauses.append("project_count >= ?")
            params.append(min_project_count)
        if project_id:
            clauses.append("source_project_id = ?")
            params.append(project_id)

        sql = "SELECT * FROM global_patterns"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY project_count DESC, confidence DESC, id LIMIT ?"
        params.append(limit)

        with self._transaction("get_global_patterns") as db:
            rows = db.execute(sql, params).fetchall()
        return [self._row_to_pattern(row) for row in rows]

    def count_patterns(self, project_id: Optional[str] = None, active_only: bool = False) -> int:
        with self._transaction("count_patterns") as db:
            if project_id:
                return db.execute(
                    "SELECT COUNT(*) FROM global_patterns WHERE source_project_id = ?",
                    (project_id,),
                ).fetchone()[0]
            sql = "SELECT COUNT(*) FROM global_patterns"
            if active_only:
                sql += f" WHERE source_project_id IN ({_ACTIVE_PROJECT_IDS})"
            return db.execute(sql).fetchone()[0]

    @staticmethod
    def _row_to_pattern(row: sqlite3.Row) -> GlobalPattern:
        return GlobalPattern(
            id=row["id"],
            category=row["category"],
            subcategory=row["subcategory"],
            language=row["language"],
            pattern_data=json.loads(row["pattern_data"]),
            project_count=row["project_count"],
            total_frequency=row["total_frequency"],
            confidence=row["confidence"],
            source_projects=json.loads(row["source_projects"]),
            first_seen=parse_datetime(row["first_seen"]),
            last_seen=parse_datetime(row["last_seen"]),
            source_project_id=row["source_project_id"],
            local_pattern_id=row["local_pattern_id"],
        )

    # =========================================================================
    # Global concepts
    # =========================================================================

    def upsert_global_concept(self, concept: GlobalConcept) -> bool:
        """Insert or refresh a concept keyed by (project_id, local_concept_id)."""
        with self._transaction("upsert_global_concept") as db:
            row = db.execute(
                """SELECT id FROM global_concepts
                   WHERE project_id = ? AND local_concept_id = ?""",
                (concept.project_id, concept.local_concept_id),
            ).fetchone()

            if row:
                concept.id = row["id"]
                db.execute(
                    """UPDATE global_concepts SET
                       name = ?, concept_type = ?, file_path = ?, language = ?, metadata = ?
                       WHERE id = ?""",
                    (
                        concept.name,
                        concept.concept_type,
                        concept.file_path,
                        concept.language,
                        json.dumps(concept.metadata),
                        concept.id,
                    ),
                )
                return False

            db.execute(
                """INSERT INTO global_concepts
                   (id, name, concept_type, file_path, project_id, language,
                    local_concept_id, metadata, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    concept.id,
                    concept.name,
                    concept.concept_type,
                    concept.file_path,
                    concept.project_id,
                    concept.language,
                    concept.local_concept_id,
                    json.dumps(concept.metadata),
                    format_datetime(concept.created_at),
                ),
            )
            return True

    def prune_global_concepts(self, project_id: str, keep_local_ids: Iterable[str]) -> int:
        """Delete a project's concepts whose local id is not in keep_local_ids."""
        keep = set(keep_local_ids)
        with self._transaction("prune_global_concepts") as db:
            rows = db.execute(
                "SELECT id, local_concept_id FROM global_concepts WHERE project_id = ?",
                (project_id,),
            ).fetchall()
            stale = [(row["id"],) for row in rows if row["local_concept_id"] not in keep]
            db.executemany("DELETE FROM global_concepts WHERE id = ?", stale)
        return len(stale)

    def get_global_concepts(
        self,
        project_ids: Optional[List[str]] = None,
        language: Optional[str] = None,
        active_only: bool = True,
        limit: int = 10000,
        offset: int = 0,
    ) -> List[GlobalConcept]:
        clauses: List[str] = []
        params: List[Any] = []
        if active_only:
            clauses.append(f"project_id IN ({_ACTIVE_PROJECT_IDS})")
        if project_ids:
            clauses.append(f"project_id IN ({', '.join('?' for _ in project_ids)})")
            params.extend(project_ids)
        if language:
            clauses.append("language = ?")
            params.append(language)

        sql = "SELECT * FROM global_concepts"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY name, file_path, id LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        with self._transaction("get_global_concepts") as db:
            rows = db.execute(sql, params).fetchall()
        return [
            GlobalConcept(
                id=row["id"],
                name=row["name"],
                concept_type=row["concept_type"],
                file_path=row["file_path"],
                project_id=row["project_id"],
                language=row["language"] or "unknown",
                local_concept_id=row["local_concept_id"],
                metadata=json.loads(row["metadata"]),
                created_at=parse_datetime(row["created_at"]),
            )
            for row in rows
        ]

    def count_concepts(self, project_id: Optional[str] = None, active_only: bool = False) -> int:
        with self._transaction("count_concepts") as db:
            if project_id:
                return db.execute(
                    "SELECT COUNT(*) FROM global_concepts WHERE project_id = ?",
                    (project_id,),
                ).fetchone()[0]
            sql = "SELECT COUNT(*) FROM global_concepts"
            if active_only:
                sql += f" WHERE project_id IN ({_ACTIVE_PROJECT_IDS})"
            return db.execute(sql).fetchone()[0]

    # =========================================================================
    # Aggregations
    # =========================================================================

    def upsert_aggregation(self, aggregation: PatternAggregation) -> None:
        """Insert or replace the aggregation for its signature, keeping id and created_at."""
        with self._transaction("upsert_aggregation") as db:
            row = db.execute(
                "SELECT id, created_at FROM pattern_aggregations WHERE pattern_signature = ?",
                (aggregation.pattern_signature,),
            ).fetchone()
            if row:
                aggregation.id = row["id"]
                aggregation.created_at = parse_datetime(row["created_at"])

            db.execute(
                """INSERT OR REPLACE INTO pattern_aggregations
                   (id, pattern_signature, category, occurrences, aggregated_confidence,
                    consensus_score, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    aggregation.id,
                    aggregation.pattern_signature,
                    aggregation.category,
                    json.dumps([o.to_dict() for o in aggregation.occurrences]),
                    aggregation.aggregated_confidence,
                    aggregation.consensus_score,
                    format_datetime(aggregation.created_at),
                    format_datetime(aggregation.updated_at),
                ),
            )

    def delete_aggregations_except(self, signatures: Iterable[str]) -> int:
        """Remove aggregations whose signature is not in `signatures`."""
        keep = set(signatures)
        with self._transaction("delete_aggregations_except") as db:
            rows = db.execute("SELECT pattern_signature FROM pattern_aggregations").fetchall()
            stale = [(row[0],) for row in rows if row[0] not in keep]
            db.executemany(
                "DELETE FROM pattern_aggregations WHERE pattern_signature = ?", stale
            )
        return len(stale)

    def get_aggregations(
        self,
        category: Optional[str] = None,
        min_consensus: Optional[float] = None,
        limit: int = 100,
    ) -> List[PatternAggregation]:
        clauses: List[str] = []
        params: List[Any] = []
        if category:
            clauses.append("category = ?")
            params.append(category)
        if min_consensus is not None:
            clauses.append("consensus_score >= ?")
            params.append(min_consensus)

        sql = "SELECT * FROM pattern_aggregations"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY aggregated_confidence DESC, pattern_signature LIMIT ?"
        params.append(limit)

        with self._transaction("get_aggregations") as db:
            rows = db.execute(sql, params).fetchall()
        return [self._row_to_aggregation(row) for row in rows]

    def get_aggregation(self, signature: str) -> Optional[PatternAggregation]:
        with self._transaction("get_aggregation") as db:
            row = db.execute(
                "SELECT * FROM pattern_aggregations WHERE pattern_signature = ?",
                (signature,),
            ).fetchone()
        return self._row_to_aggregation(row) if row else None

    @staticmethod
    def _row_to_aggregation(row: sqlite3.Row) -> PatternAggregation:
        return PatternAggregation(
            id=row["id"],
            pattern_signature=row["pattern_signature"],
            category=row["category"],
            occurrences=[PatternOccurrence(**o) for o in json.loads(row["occurrences"])],
            aggregated_confidence=row["aggregated_confidence"],
            consensus_score=row["consensus_score"],
            created_at=parse_datetime(row["created_at"]),
            updated_at=parse_datetime(row["updated_at"]),
        )

    # =========================================================================
    # Stats
    # =========================================================================

    def get_stats(self) -> Dict[str, Any]:
        with self._transaction("get_stats") as db:
            projects = db.execute(
                "SELECT COUNT(*) FROM global_projects WHERE is_active = 1"
            ).fetchone()[0]
            languages = db.execute(
                f"""SELECT language, COUNT(*) AS n FROM global_concepts
                   WHERE language IS NOT NULL AND language != 'unknown'
                   AND project_id IN ({_ACTIVE_PROJECT_IDS})
                   GROUP BY language ORDER BY n DESC, language LIMIT 10"""
            ).fetchall()
            aggregations = db.execute(
                "SELECT COUNT(*) FROM pattern_aggregations"
            ).fetchone()[0]
        return {
            "total_projects": projects,
            "total_patterns": self.count_patterns(active_only=True),
            "total_concepts": self.count_concepts(active_only=True),
            "total_aggregations": aggregations,
            "top_languages": [
                {"language": row["language"], "count": row["n"]} for row in languages
            ],
        }
