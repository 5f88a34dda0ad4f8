from unittest.mock import MagicMock, patch

import pytest

from py_neo_omop_codesets.config import Settings
from py_neo_omop_codesets.engine import CodeSetEngine
from py_neo_omop_codesets.errors import InvalidArgumentError, NotFoundError
from py_neo_omop_codesets.persistence import InMemoryCodeSetRepository, Neo4jCodeSetRepository
from py_neo_omop_codesets.store import FallbackVocabularyStore, Neo4jVocabularyStore


def test_search_then_build_then_save_then_reload(engine: CodeSetEngine):
    """The typical flow: find an anchor, inspect its hierarchy, build and save the code set."""
    anchor = engine.resolve("Type 2 diabetes", "Condition")[0]
    hierarchy = engine.expand_hierarchy(anchor.std_concept_id)
    assert any(row.steps_away == 0 for row in hierarchy)

    rows = engine.build_code_set([anchor.std_concept_id], "hierarchical")
    code_set_id = engine.save_code_set(
        "alice", "T2DM", rows=rows, anchor_concept_ids=[anchor.std_concept_id], build_type="hierarchical",
    )

    saved = engine.load_code_set("alice", code_set_id)
    assert saved.total_concepts == len(rows)
    assert [r["child_concept_id"] for r in saved.concepts] == [r.child_concept_id for r in rows]
    assert [s.id for s in engine.list_code_sets("alice")] == [code_set_id]


def test_engine_never_rebuilds_on_read(store, rollups):
    settings = Settings(_env_file=None, materialization_threshold=2)
    engine = CodeSetEngine(store, InMemoryCodeSetRepository(), rollups=rollups, settings=settings)
    code_set_id = engine.save_code_set("alice", "Large", anchor_concept_ids=[100], build_type="hierarchical")

    saved = engine.load_code_set("alice", code_set_id)

    assert not saved.is_materialized
    assert saved.concepts == []
    assert saved.total_concepts == 5
    request = engine.rebuild_request("alice", code_set_id)
    assert len(engine.build_code_set(request.anchor_concept_ids, request.build_type, request.build_parameters)) == 5


def test_lab_operations(engine: CodeSetEngine):
    assert [r.std_concept_id for r in engine.search_lab_tests("2345-7")] == [300]
    assert {r.lab_test_type for r in engine.find_lab_panels([300])} == {"Lab Test", "Panel"}


def test_errors_surface_unchanged(engine: CodeSetEngine):
    with pytest.raises(NotFoundError):
        engine.expand_hierarchy(424242)
    with pytest.raises(InvalidArgumentError):
        engine.build_code_set([], "direct")
    assert engine.delete_code_set("alice", "missing") is False


def test_context_manager_closes_stores():
    store, repository = MagicMock(), MagicMock()

    with CodeSetEngine(store, repository) as engine:
        assert engine.store is store

    store.close.assert_called_once()
    repository.close.assert_called_once()


@patch("py_neo_omop_codesets.engine.GraphDatabase")
def test_from_settings_without_fallback(mock_graph_database):
    settings = Settings(_env_file=None, neo4j_uri="neo4j://primary:7687")

    engine = CodeSetEngine.from_settings(settings)

    mock_graph_database.driver.assert_called_once_with("neo4j://primary:7687", auth=("neo4j", "password"))
    assert isinstance(engine.store, Neo4jVocabularyStore)
    assert isinstance(engine.repository, Neo4jCodeSetRepository)
    assert engine.rollups.scale


@patch("py_neo_omop_codesets.engine.GraphDatabase")
def test_from_settings_with_fallback(mock_graph_database):
    settings = Settings(_env_file=None, neo4j_fallback_uri="neo4j://fallback:7687")

    engine = CodeSetEngine.from_settings(settings)

    assert mock_graph_database.driver.call_count == 2
    assert isinstance(engine.store, FallbackVocabularyStore)
    engine.close()
    # The primary driver is closed once, by the repository; the fallback driver by its store
    assert mock_graph_database.driver.return_value.close.call_count == 2
