import math
from pathlib import Path

import pytest

from code_nexus.config import NexusConfig
from code_nexus.core.models import ConceptRecord, PatternRecord, derive_concept_id
from code_nexus.core.store import ProjectStore
from code_nexus.crossproject.service import (
    CrossProjectService,
    categorize_project_size,
    name_match_score,
)
from code_nexus.errors import ProjectNotFoundError

CAMEL = {"category": "naming", "convention": "camelCase", "language": "ts"}


def add_concept(store: ProjectStore, name: str, path: str, concept_type: str = "class") -> str:
    concept_id = derive_concept_id(path, concept_type, name)
    store.upsert_concept(ConceptRecord(
        id=concept_id,
        name=name,
        concept_type=concept_type,
        file_path=path,
        line_range={"start": 3, "end": 3},
    ))
    return concept_id


def add_pattern(store: ProjectStore, pattern_id: str, content=None, confidence: float = 0.6) -> None:
    store.save_pattern(PatternRecord(
        pattern_id=pattern_id,
        pattern_type="naming",
        content=dict(content if content is not None else CAMEL),
        confidence=confidence,
    ))


@pytest.fixture
def make_store(tmp_path: Path):
    stores = []

    def factory(name: str) -> ProjectStore:
        path = tmp_path / name
        path.mkdir()
        store = ProjectStore(str(path), db_path=str(tmp_path / f"{name}.db"))
        stores.append(store)
        return store

    yield factory
    for store in stores:
        store.close()


@pytest.fixture
def service(global_store) -> CrossProjectService:
    return CrossProjectService(global_store)


# =============================================================================
# Linking
# =============================================================================

@pytest.mark.asyncio
async def test_linking_same_path_twice_returns_same_project(service, make_store):
    store = make_store("alpha")

    first = await service.link_project(store.project_path, store)
    second = await service.link_project(store.project_path + "/.", store)

    assert first.id == second.id
    assert first.name == "alpha"
    assert len(service.get_linked_projects()) == 1


@pytest.mark.asyncio
async def test_link_runs_initial_sync(service, make_store, global_store):
    store = make_store("alpha")
    add_concept(store, "UserService", "src/user.ts")
    add_pattern(store, "naming_typescript_class_PascalCase")

    link = await service.link_project(store.project_path, store, description="API server")

    assert link.concept_count == 1
    assert link.pattern_count == 1
    assert link.last_synced is not None
    project = global_store.get_project(link.id)
    assert project.description == "API server"
    assert project.primary_language == "typescript"


@pytest.mark.asyncio
async def test_unlink_then_relink_reactivates(service, make_store):
    store = make_store("alpha")
    link = await service.link_project(store.project_path, store)

    service.unlink_project(link.id)
    assert service.get_linked_projects() == []

    again = await service.link_project(store.project_path, store)
    assert again.id == link.id
    assert [p.id for p in service.get_linked_projects()] == [link.id]


def test_unlink_unknown_project_raises(service):
    with pytest.raises(ProjectNotFoundError):
        service.unlink_project("nope")


# =============================================================================
# Sync
# =============================================================================

@pytest.mark.asyncio
async def test_resync_updates_and_prunes(service, make_store, global_store):
    store = make_store("alpha")
    keep = add_concept(store, "Keep", "a.ts")
    gone = add_concept(store, "Gone", "b.ts")
    add_pattern(store, "p1")
    link = await service.link_project(store.project_path, store)

    store.mark_concept_deleted(gone)
    result = await service.sync_project(link.id, store)

    assert result.status == "success"
    assert (result.patterns_added, result.patterns_updated) == (0, 1)
    assert (result.concepts_added, result.concepts_updated, result.concepts_pruned) == (0, 1, 1)
    [concept] = global_store.get_global_concepts(project_ids=[link.id])
    assert concept.local_concept_id == keep
    assert global_store.count_patterns(link.id) == 1


@pytest.mark.asyncio
async def test_sync_reports_failure_instead_of_raising(service, make_store):
    result = await service.sync_project("missing", make_store("alpha"))

    assert result.status == "failed"
    assert "missing" in result.error


@pytest.mark.asyncio
async def test_sync_all_skips_projects_without_store(service, make_store):
    alpha, beta = make_store("alpha"), make_store("beta")
    await service.link_project(alpha.project_path, alpha, sync=False)
    await service.link_project(beta.project_path, beta, sync=False)

    results = await service.sync_all_projects({alpha.project_path: alpha})

    assert [r.project_name for r in results] == ["alpha"]


@pytest.mark.asyncio
async def test_shared_pattern_aggregates_across_two_projects(service, make_store):
    alpha, beta = make_store("alpha"), make_store("beta")
    add_pattern(alpha, "camel", CAMEL, confidence=0.6)
    add_pattern(beta, "camel", {"language": "ts", "convention": "camelCase", "category": "naming"}, confidence=0.8)

    await service.link_project(alpha.project_path, alpha)
    await service.link_project(beta.project_path, beta)

    [aggregation] = service.get_pattern_aggregations()
    assert aggregation.project_count == 2
    assert aggregation.aggregated_confidence == pytest.approx(0.7 * (1 + math.log10(3) * 0.2))
    assert aggregation.consensus_score == pytest.approx(1.0)

    assert len(service.get_global_patterns(min_consensus=0.9)) == 2
    assert service.get_global_patterns(min_consensus=0.9, category="structural") == []


@pytest.mark.asyncio
async def test_unlinked_project_drops_out_of_global_views(service, make_store):
    alpha, beta = make_store("alpha"), make_store("beta")
    for store in (alpha, beta):
        add_pattern(store, "camel")
        add_concept(store, "UserService", "src/user.ts")
    link_a = await service.link_project(alpha.project_path, alpha)
    link_b = await service.link_project(beta.project_path, beta)

    service.unlink_project(link_b.id)

    assert [p.source_projects for p in service.get_global_patterns()] == [[link_a.id]]
    [aggregation] = service.get_pattern_aggregations()
    assert aggregation.project_count == 1
    view = service.get_portfolio_view()
    assert (view.total_projects, view.total_patterns, view.total_concepts) == (1, 1, 1)


# =============================================================================
# Views
# =============================================================================

def test_name_match_score():
    assert name_match_score("UserService", "userservice") == 1.0
    assert name_match_score("User", "UserService") == pytest.approx(0.6 + 0.4 * 4 / 11)
    assert name_match_score("zz", "UserService") == 0.0


@pytest.mark.asyncio
async def test_search_across_projects(service, make_store):
    alpha, beta = make_store("alpha"), make_store("beta")
    add_concept(alpha, "UserService", "src/user.ts")
    add_concept(alpha, "parseConfig", "src/config.ts", "function")
    add_concept(beta, "UserServiceFactory", "lib/factory.py")
    link_a = await service.link_project(alpha.project_path, alpha)
    link_b = await service.link_project(beta.project_path, beta)

    results = service.search_all_projects("UserService")

    assert [r.code for r in results] == ["class UserService", "class UserServiceFactory"]
    assert results[0].score == 1.0
    assert results[0].context == "Found in src/user.ts:3"
    assert results[1].project_name == "beta"

    only_b = service.search_all_projects("UserService", project_filter=[link_b.id])
    assert [r.project_id for r in only_b] == [link_b.id]
    python = service.search_all_projects("UserService", language_filter="python")
    assert [r.file_path for r in python] == ["lib/factory.py"]

    service.unlink_project(link_a.id)
    assert [r.project_id for r in service.search_all_projects("UserService")] == [link_b.id]


@pytest.mark.asyncio
async def test_search_reaches_concepts_beyond_the_first_page(global_store, make_store):
    config = NexusConfig()
    config.aggregation.page_size = 2
    service = CrossProjectService(global_store, config=config)
    alpha = make_store("alpha")
    for name in ("Alpha", "Beta", "ZetaService"):
        add_concept(alpha, name, f"src/{name.lower()}.ts")
    await service.link_project(alpha.project_path, alpha)

    results = service.search_all_projects("ZetaService")

    assert results[0].code == "class ZetaService"
    assert results[0].score == 1.0


def test_empty_search_query_is_rejected(service):
    with pytest.raises(ValueError):
        service.search_all_projects("   ")


@pytest.mark.asyncio
async def test_portfolio_view(service, make_store):
    alpha = make_store("alpha")
    for i in range(3):
        add_concept(alpha, f"Widget{i}", f"src/w{i}.ts")
    await service.link_project(alpha.project_path, alpha)

    view = service.get_portfolio_view()

    assert view.total_projects == 1
    assert view.total_concepts == 3
    assert view.most_used_languages == ["typescript"]
    assert view.projects[0]["size"] == "small"
    assert service.get_stats()["total_concepts"] == 3


@pytest.mark.parametrize("count, size", [(0, "small"), (99, "small"), (100, "medium"), (999, "medium"), (1000, "large")])
def test_categorize_project_size(count, size):
    assert categorize_project_size(count) == size


@pytest.mark.asyncio
async def test_project_similarity(service, make_store, global_store):
    alpha, beta = make_store("alpha"), make_store("beta")
    add_concept(alpha, "A", "a.ts")
    add_concept(beta, "B", "b.ts")
    add_pattern(alpha, "camel")
    add_pattern(beta, "camel")
    link_a = await service.link_project(alpha.project_path, alpha)
    link_b = await service.link_project(beta.project_path, beta)
    global_store.update_project_details(link_a.id, frameworks=["react"])
    global_store.update_project_details(link_b.id, frameworks=["react", "express"])

    similarity = service.get_project_similarity(link_a.id, link_b.id)

    assert similarity == pytest.approx(0.3 + 0.3 * (2 / 3) + 0.4)
    with pytest.raises(ProjectNotFoundError):
        service.get_project_similarity(link_a.id, "missing")
