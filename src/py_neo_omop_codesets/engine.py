# Copyright (c) 2025-2026 Gowtham Adamane Rao. All Rights Reserved.
#
# Licensed under the Prosperity Public License 3.0.0 (the "License").
# You may not use this file except in compliance with the License.
# You may obtain a copy of the License in the LICENSE file at the root
# of this repository, or at: https://prosperitylicense.com/versions/3.0.0
#
# Commercial use beyond a 30-day trial requires a separate license.
"""
The CodeSetEngine facade.

The engine owns no global state: the vocabulary store, the saved code set
repository and the rollup tables are created once (see `from_settings`) and
handed to every component. Call `close()`, or use the engine as a context
manager, to release the Neo4j drivers.
"""
from typing import Any, Dict, Iterable, List, Optional, Union

from neo4j import GraphDatabase
from pydantic import BaseModel
from rich.console import Console

from .builder import CodeSetBuilder
from .config import Settings, settings as default_settings
from .hierarchy import HierarchyExpander
from .labtests import LabTestSearch
from .models import (
    BuildParameters,
    BuildType,
    CodeSetRow,
    HierarchyRow,
    LabPanelResult,
    LabTestSearchResult,
    RebuildRequest,
    SavedCodeSet,
    SavedCodeSetSummary,
    SearchResult,
    SourceType,
)
from .persistence import CodeSetRepository, CodeSetStorage, Neo4jCodeSetRepository
from .resolver import ConceptResolver
from .rollups import RollupTables
from .store import FallbackVocabularyStore, Neo4jVocabularyStore, VocabularyStore
from .vocabulary_policy import DomainVocabularyPolicy

console = Console()


class CodeSetEngine:
    """
    Resolves, expands, builds and persists OMOP code sets.
    """

    def __init__(
        self,
        store: VocabularyStore,
        repository: CodeSetRepository,
        rollups: Optional[RollupTables] = None,
        policy: Optional[DomainVocabularyPolicy] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or default_settings
        self.store = store
        self.repository = repository
        self.policy = policy or DomainVocabularyPolicy()
        self.rollups = rollups or RollupTables.empty()

        self.resolver = ConceptResolver(store, self.policy, self.settings)
        self.expander = HierarchyExpander(store, self.policy)
        self.builder = CodeSetBuilder(store, self.policy, self.rollups, self.settings)
        self.lab_tests = LabTestSearch(store, self.rollups, self.settings)
        self.storage = CodeSetStorage(repository, self.builder, self.settings)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "CodeSetEngine":
        """
        Connects to Neo4j as configured. When a fallback URI is set, vocabulary
        reads that fail on the primary instance are repeated on the fallback.
        """
        settings = settings or default_settings
        auth = (settings.neo4j_user, settings.neo4j_password)

        console.log(f"Connecting to Neo4j at [bold cyan]{settings.neo4j_uri}[/bold cyan]...")
        driver = GraphDatabase.driver(settings.neo4j_uri, auth=auth)
        store: VocabularyStore = Neo4jVocabularyStore(driver, settings.neo4j_database)
        if settings.neo4j_fallback_uri:
            console.log(f"Using fallback Neo4j at [bold cyan]{settings.neo4j_fallback_uri}[/bold cyan].")
            fallback_driver = GraphDatabase.driver(settings.neo4j_fallback_uri, auth=auth)
            store = FallbackVocabularyStore(
                store, Neo4jVocabularyStore(fallback_driver, settings.neo4j_database, owns_driver=True)
            )

        # The primary driver is shared, so the repository closes it
        repository = Neo4jCodeSetRepository(driver, settings.neo4j_database, owns_driver=True)
        rollups = RollupTables.from_directory(settings.rollup_dir)
        return cls(store, repository, rollups=rollups, settings=settings)

    def close(self):
        self.store.close()
        self.repository.close()

    def __enter__(self) -> "CodeSetEngine":
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    # --- Search and traversal ---

    def resolve(self, term: str, domain_id: str) -> List[SearchResult]:
        return self.resolver.resolve(term, domain_id)

    def expand_hierarchy(self, anchor_concept_id: int) -> List[HierarchyRow]:
        return self.expander.expand(anchor_concept_id)

    def build_code_set(
        self,
        anchor_concept_ids: Iterable[int],
        build_type: Union[BuildType, str],
        params: Union[BuildParameters, Dict[str, Any], None] = None,
    ) -> List[CodeSetRow]:
        return self.builder.build(anchor_concept_ids, build_type, params)

    def search_lab_tests(self, term: Optional[str]) -> List[LabTestSearchResult]:
        return self.lab_tests.search(term)

    def find_lab_panels(self, lab_test_ids: Iterable[int]) -> List[LabPanelResult]:
        return self.lab_tests.find_panels(lab_test_ids)

    # --- Saved code sets ---

    def save_code_set(
        self,
        owner_id: str,
        code_set_name: str,
        rows: Optional[Iterable[Union[BaseModel, Dict[str, Any]]]] = None,
        anchor_concept_ids: Optional[Iterable[int]] = None,
        build_type: Union[BuildType, str, None] = None,
        build_parameters: Union[BuildParameters, Dict[str, Any], None] = None,
        description: Optional[str] = None,
        source_type: Union[SourceType, str] = SourceType.OMOP,
        source_metadata: Optional[str] = None,
    ) -> str:
        return self.storage.save(
            owner_id,
            code_set_name,
            rows=rows,
            anchor_concept_ids=anchor_concept_ids,
            build_type=build_type,
            build_parameters=build_parameters,
            description=description,
            source_type=source_type,
            source_metadata=source_metadata,
        )

    def load_code_set(self, owner_id: str, code_set_id: str) -> SavedCodeSet:
        return self.storage.load(owner_id, code_set_id)

    def list_code_sets(self, owner_id: str) -> List[SavedCodeSetSummary]:
        return self.storage.list(owner_id)

    def delete_code_set(self, owner_id: str, code_set_id: str) -> bool:
        return self.storage.delete(owner_id, code_set_id)

    def rebuild_request(self, owner_id: str, code_set_id: str) -> RebuildRequest:
        return self.storage.rebuild_request(owner_id, code_set_id)
