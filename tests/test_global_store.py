from code_nexus.core.models import GlobalConcept, GlobalPattern, GlobalProject, new_id


def project(global_store, project_id: str = "alpha") -> GlobalProject:
    p = GlobalProject(id=project_id, name=project_id, path=f"/work/{project_id}", frameworks=["react"])
    global_store.add_project(p)
    return p


def test_project_lookup_and_deactivation(global_store):
    p = project(global_store)

    assert global_store.get_project_by_path("/work/alpha").id == p.id
    assert global_store.get_project("alpha").frameworks == ["react"]

    global_store.update_project_details("alpha", is_active=False, description="archived")
    assert global_store.list_projects() == []
    [inactive] = global_store.list_projects(active_only=False)
    assert inactive.description == "archived"
    assert inactive.is_active is False


def test_pattern_upsert_keys_on_source_and_local_id(global_store):
    project(global_store)
    pattern = GlobalPattern(
        id=new_id(), category="naming", language="python",
        pattern_data={"convention": "snake_case"},
        source_projects=["alpha"], source_project_id="alpha", local_pattern_id="p1",
    )

    assert global_store.upsert_global_pattern(pattern) is True
    original_id = pattern.id

    refreshed = GlobalPattern(
        id=new_id(), category="naming", language="python", confidence=0.9,
        pattern_data={"convention": "snake_case"},
        source_projects=["alpha"], source_project_id="alpha", local_pattern_id="p1",
    )
    assert global_store.upsert_global_pattern(refreshed) is False
    assert refreshed.id == original_id

    [stored] = global_store.get_global_patterns(language="python")
    assert stored.confidence == 0.9
    assert global_store.get_global_patterns(category="structural") == []
    assert global_store.count_patterns("alpha") == 1


def test_concepts_prune_and_stats(global_store):
    project(global_store)
    for local_id, name in [("c1", "UserService"), ("c2", "OrderService")]:
        global_store.upsert_global_concept(GlobalConcept(
            id=new_id(), name=name, concept_type="class", file_path=f"{name}.ts",
            project_id="alpha", language="typescript", local_concept_id=local_id,
        ))

    assert global_store.prune_global_concepts("alpha", ["c1"]) == 1
    assert [c.name for c in global_store.get_global_concepts(project_ids=["alpha"])] == ["UserService"]

    stats = global_store.get_stats()
    assert stats["total_projects"] == 1
    assert stats["total_concepts"] == 1
    assert stats["top_languages"] == [{"language": "typescript", "count": 1}]
