"""
Cross-Project Service - links repositories into the Global Store.

Orchestrates linking, syncing local patterns/concepts into the Global Store,
re-running aggregation, and the read-only cross-project views (search,
portfolio, pattern listings, project similarity).
"""

import logging
import time
from collections import Counter
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional

from ..config import NexusConfig
from ..core.global_store import GlobalStore
from ..core.languages import (
    detect_language_from_path,
    detect_language_from_pattern,
    primary_language,
)
from ..core.models import (
    GlobalConcept,
    GlobalPattern,
    GlobalProject,
    PatternAggregation,
    PortfolioView,
    ProjectLink,
    SearchResult,
    SyncResult,
    new_id,
    utcnow,
)
from ..core.store import ProjectStore
from ..errors import ProjectNotFoundError
from ..patterns.aggregator import PatternAggregator
from ..patterns.similarity import bigram_dice, dice_overlap
from ..patterns.types import as_open_map, parse_pattern_data

logger = logging.getLogger(__name__)

SMALL_PROJECT_CONCEPTS = 100
LARGE_PROJECT_CONCEPTS = 1000
MIN_SEARCH_SCORE = 0.3


def normalize_project_path(path: str) -> str:
    return str(Path(path).expanduser().resolve())


def categorize_project_size(concept_count: int) -> str:
    if concept_count < SMALL_PROJECT_CONCEPTS:
        return "small"
    if concept_count < LARGE_PROJECT_CONCEPTS:
        return "medium"
    return "large"


def name_match_score(query: str, name: str) -> float:
    """Exact match 1.0; substring 0.6-1.0 by coverage; otherwise bigram Dice."""
    q, n = query.lower(), name.lower()
    if q == n:
        return 1.0
    if q in n:
        return 0.6 + 0.4 * len(q) / len(n)
    return bigram_dice(q, n)


class CrossProjectService:
    """
    Example:
        service = CrossProjectService(GlobalStore(db_path))
        link = await service.link_project("/work/api", ProjectStore("/work/api"))
        results = service.search_all_projects("UserService")
        view = service.get_portfolio_view()
    """

    def __init__(
        self,
        global_store: GlobalStore,
        aggregator: Optional[PatternAggregator] = None,
        config: Optional[NexusConfig] = None,
    ):
        self.config = config or NexusConfig()
        self.global_store = global_store
        self.aggregator = aggregator or PatternAggregator(global_store, self.config.aggregation)

    # =========================================================================
    # Linking
    # =========================================================================

    async def link_project(
        self,
        path: str,
        local_store: ProjectStore,
        name: Optional[str] = None,
        description: Optional[str] = None,
        sync: bool = True,
    ) -> ProjectLink:
        """
        Link a repository, or return the existing link for the same path.

        Args:
            path: Repository root; normalized before lookup
            local_store: The repository's ProjectStore
            name: Display name; defaults to stored metadata, then the directory name
            description: Free-text description
            sync: Run an initial sync after linking
        """
        started = time.monotonic()
        normalized = normalize_project_path(path)

        project = self.global_store.get_project_by_path(normalized)
        if project is not None:
            if not project.is_active:
                self.global_store.update_project_details(project.id, is_active=True)
                logger.info(f"Re-activated project {project.name} ({normalized})")
            else:
                logger.debug(f"Project already linked: {project.name} ({normalized})")
        else:
            metadata = local_store.get_project_metadata()
            project = GlobalProject(
                id=new_id(),
                name=name or metadata.project_name or Path(normalized).name,
                path=normalized,
                description=description,
                primary_language=metadata.primary_language,
                frameworks=list(metadata.frameworks),
            )
            self.global_store.add_project(project)
            logger.info(f"Linked project {project.name} ({normalized})")

        if sync:
            await self.sync_project(project.id, local_store)

        project = self.global_store.get_project(project.id)
        logger.debug(f"link_project finished in {int((time.monotonic() - started) * 1000)}ms")
        return ProjectLink.from_project(project)

    def get_linked_projects(self) -> List[ProjectLink]:
        return [ProjectLink.from_project(p) for p in self.global_store.list_projects()]

    def unlink_project(self, project_id: str) -> None:
        """
        Deactivate a project and re-aggregate without it.

        Its global rows stay for history but drop out of every listing.

        Raises:
            ProjectNotFoundError: unknown project id
        """
        project = self._require_project(project_id)
        self.global_store.update_project_details(project.id, is_active=False)
        self.aggregator.aggregate_patterns()
        logger.info(f"Unlinked project {project.name}")

    # =========================================================================
    # Sync
    # =========================================================================

    async def sync_project(self, project_id: str, local_store: ProjectStore) -> SyncResult:
        """
        Copy a project's patterns and active concepts into the Global Store.

        Never raises: failures are reported through SyncResult.status/error.
        """
        started = time.monotonic()
        result = SyncResult(project_id=project_id)

        try:
            project = self._require_project(project_id)
            result.project_name = project.name
            self._sync_patterns(project, local_store, result)
            self._sync_concepts(project, local_store, result)

            self.global_store.update_project_stats(
                project_id,
                pattern_count=self.global_store.count_patterns(project_id),
                concept_count=self.global_store.count_concepts(project_id),
            )
            self.aggregator.aggregate_patterns()
        except Exception as e:
            result.status = "failed"
            result.error = str(e)
            logger.error(f"Sync of project {project_id} failed: {e}")

        result.duration_ms = int((time.monotonic() - started) * 1000)
        if result.status == "success":
            logger.info(
                f"Synced {result.project_name} in {result.duration_ms}ms: "
                f"patterns +{result.patterns_added} ~{result.patterns_updated}, "
                f"concepts +{result.concepts_added} ~{result.concepts_updated} "
                f"-{result.concepts_pruned}"
            )
        return result

    def _sync_patterns(self, project: GlobalProject, local_store: ProjectStore, result: SyncResult) -> None:
        for local in local_store.get_patterns():
            pattern = GlobalPattern(
                id=new_id(),
                category=local.pattern_type,
                language=detect_language_from_pattern(local.content),
                pattern_data=as_open_map(parse_pattern_data(local.pattern_type, local.content)),
                project_count=1,
                total_frequency=local.frequency,
                confidence=local.confidence,
                source_projects=[project.id],
                first_seen=local.created_at,
                last_seen=local.last_seen,
                source_project_id=project.id,
                local_pattern_id=local.pattern_id,
            )
            if self.global_store.upsert_global_pattern(pattern):
                result.patterns_added += 1
            else:
                result.patterns_updated += 1

    def _sync_concepts(self, project: GlobalProject, local_store: ProjectStore, result: SyncResult) -> None:
        concepts = local_store.get_active_concepts()
        for local in concepts:
            concept = GlobalConcept(
                id=new_id(),
                name=local.name,
                concept_type=local.concept_type,
                file_path=local.file_path,
                project_id=project.id,
                language=detect_language_from_path(local.file_path),
                local_concept_id=local.id,
                metadata={
                    "confidence": local.confidence_score,
                    "line_range": local.line_range,
                },
            )
            if self.global_store.upsert_global_concept(concept):
                result.concepts_added += 1
            else:
                result.concepts_updated += 1

        result.concepts_pruned = self.global_store.prune_global_concepts(
            project.id, (c.id for c in concepts)
        )

        if not project.primary_language and concepts:
            language = primary_language(c.file_path for c in concepts)
            if language:
                self.global_store.update_project_details(project.id, primary_language=language)

    async def sync_all_projects(self, local_stores: Mapping[str, ProjectStore]) -> List[SyncResult]:
        """
        Sync every active project whose path has a store in `local_stores`.

        Projects without a store are skipped with a warning.
        """
        stores = {normalize_project_path(path): store for path, store in local_stores.items()}
        results: List[SyncResult] = []
        for project in self.global_store.list_projects():
            store = stores.get(project.path)
            if store is None:
                logger.warning(f"No local store for project {project.name} at {project.path}")
                continue
            results.append(await self.sync_project(project.id, store))
        return results

    # =========================================================================
    # Views
    # =========================================================================

    def get_global_patterns(
        self,
        category: Optional[str] = None,
        min_project_count: Optional[int] = None,
        min_consensus: Optional[float] = None,
        language: Optional[str] = None,
        limit: int = 50,
    ) -> List[GlobalPattern]:
        """
        Global patterns, most relevant first.

        min_consensus keeps only patterns whose aggregation group reaches
        that consensus score.
        """
        page = self.config.aggregation.page_size if min_consensus is not None else limit
        patterns = self.global_store.get_global_patterns(
            category=category,
            language=language,
            min_project_count=min_project_count,
            limit=page,
        )

        if min_consensus is not None:
            accepted = {
                a.pattern_signature
                for a in self.global_store.get_aggregations(
                    category=category, min_consensus=min_consensus, limit=page
                )
            }
            patterns = [p for p in patterns if self.aggregator.generate_signature(p) in accepted]

        ranked = self.aggregator.rank_patterns_by_relevance(patterns, {"language": language})
        return ranked[:limit]

    def get_pattern_aggregations(
        self,
        category: Optional[str] = None,
        min_consensus: Optional[float] = None,
        limit: int = 50,
    ) -> List[PatternAggregation]:
        return self.global_store.get_aggregations(
            category=category, min_consensus=min_consensus, limit=limit
        )

    def search_all_projects(
        self,
        query: str,
        project_filter: Optional[List[str]] = None,
        language_filter: Optional[str] = None,
        limit: int = 20,
    ) -> List[SearchResult]:
        """
        Search concept names across active projects.

        Raises:
            ValueError: query is empty
        """
        query = (query or "").strip()
        if not query:
            raise ValueError("Search query must not be empty")

        projects = {p.id: p for p in self.global_store.list_projects()}
        project_ids = [pid for pid in (project_filter or projects) if pid in projects]
        if not project_ids:
            return []

        results: List[SearchResult] = []
        for concept in self._iter_concepts(project_ids, language_filter):
            score = name_match_score(query, concept.name)
            if score < MIN_SEARCH_SCORE:
                continue
            line = (concept.metadata.get("line_range") or {}).get("start")
            location = f"{concept.file_path}:{line}" if line else concept.file_path
            results.append(SearchResult(
                project_id=concept.project_id,
                project_name=projects[concept.project_id].name,
                file_path=concept.file_path,
                code=f"{concept.concept_type} {concept.name}",
                score=round(score, 4),
                context=f"Found in {location}",
            ))

        results.sort(key=lambda r: r.score, reverse=True)
        logger.debug(f"Search {query!r}: {len(results)} matches across {len(project_ids)} projects")
        return results[:limit]

    def _iter_concepts(self, project_ids: List[str], language: Optional[str]) -> Iterator[GlobalConcept]:
        page_size = self.config.aggregation.page_size
        offset = 0
        while True:
            page = self.global_store.get_global_concepts(
                project_ids=project_ids, language=language, limit=page_size, offset=offset
            )
            yield from page
            if len(page) < page_size:
                return
            offset += page_size

    def get_portfolio_view(self) -> PortfolioView:
        projects = self.global_store.list_projects()
        stats = self.global_store.get_stats()

        framework_counts: Counter = Counter(
            framework for project in projects for framework in project.frameworks
        )

        return PortfolioView(
            projects=[
                {
                    "id": p.id,
                    "name": p.name,
                    "path": p.path,
                    "primary_language": p.primary_language,
                    "frameworks": list(p.frameworks),
                    "pattern_count": p.pattern_count,
                    "concept_count": p.concept_count,
                    "last_synced": p.last_synced.isoformat() if p.last_synced else None,
                    "size": categorize_project_size(p.concept_count),
                }
                for p in projects
            ],
            total_projects=stats["total_projects"],
            total_patterns=stats["total_patterns"],
            total_concepts=stats["total_concepts"],
            most_used_languages=[entry["language"] for entry in stats["top_languages"]],
            most_used_frameworks=[name for name, _ in framework_counts.most_common(5)],
        )

    def get_project_similarity(self, project_a: str, project_b: str) -> float:
        """
        0.3 for a shared primary language, plus 0.3 x framework overlap,
        plus 0.4 x overlap of pattern signatures.

        Raises:
            ProjectNotFoundError: either project is unknown
        """
        first = self._require_project(project_a)
        second = self._require_project(project_b)

        similarity = 0.0
        if first.primary_language and first.primary_language == second.primary_language:
            similarity += 0.3
        similarity += 0.3 * dice_overlap(first.frameworks, second.frameworks)

        diff = self.aggregator.get_pattern_diff(first.id, second.id)
        shared = len(diff["shared"])
        total_a = shared + len(diff["only_a"])
        total_b = shared + len(diff["only_b"])
        if total_a + total_b:
            similarity += 0.4 * (2 * shared / (total_a + total_b))

        return min(1.0, similarity)

    def get_stats(self) -> Dict[str, Any]:
        stats = self.global_store.get_stats()
        stats["generated_at"] = utcnow().isoformat()
        return stats

    def _require_project(self, project_id: str) -> GlobalProject:
        project = self.global_store.get_project(project_id)
        if project is None:
            raise ProjectNotFoundError(project_id)
        return project
