# Copyright (c) 2025-2026 Gowtham Adamane Rao. All Rights Reserved.
#
# Licensed under the Prosperity Public License 3.0.0 (the "License").
# You may not use this file except in compliance with the License.
# You may obtain a copy of the License in the LICENSE file at the root
# of this repository, or at: https://prosperitylicense.com/versions/3.0.0
#
# Commercial use beyond a 30-day trial requires a separate license.
"""
Lab test attributes, lab test search and panel lookup.

LOINC describes each lab test by its property, scale, system and time aspect.
Several values for one attribute are joined into a single string so that a
lab test is always exactly one row.
"""
from collections import defaultdict
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field
from rich.console import Console

from .config import Settings, settings as default_settings
from .errors import InvalidArgumentError
from .models import LabPanelResult, LabRelationship, LabTestSearchResult
from .rollups import RollupTables
from .store import VocabularyStore
from .vocabulary_policy import (
    CONTAINED_IN_PANEL,
    LAB_ATTRIBUTE_FIELDS,
    LAB_DETAIL_RELATIONSHIPS,
    LAB_TEST_VOCABULARY_CLASSES,
    MEASUREMENT_DOMAIN,
    is_lab_test,
)

console = Console()


class LabDetails(BaseModel):
    property: Optional[str] = None
    scale: Optional[str] = None
    system: Optional[str] = None
    time: Optional[str] = None
    panels: Optional[str] = None
    panel_count: int = 0
    relationships: List[LabRelationship] = Field(default_factory=list)


def collect_lab_details(store: VocabularyStore, concept_ids: Iterable[int], separator: str = ", ") -> Dict[int, LabDetails]:
    """Gathers the aggregated attribute values and panel memberships of each concept."""
    ids = list(dict.fromkeys(concept_ids))
    if not ids:
        return {}

    values: Dict[int, Dict[str, set]] = defaultdict(lambda: defaultdict(set))
    relationships: Dict[int, set] = defaultdict(set)
    for concept_id, relationship_id, target in store.related_concepts(ids, list(LAB_DETAIL_RELATIONSHIPS)):
        relationships[concept_id].add((relationship_id, target.concept_name))
        field = LAB_ATTRIBUTE_FIELDS.get(relationship_id)
        if field:
            values[concept_id][field].add(target.concept_name)

    panels: Dict[int, Dict[int, str]] = defaultdict(dict)
    for concept_id, _, panel in store.related_concepts(ids, [CONTAINED_IN_PANEL]):
        panels[concept_id][panel.concept_id] = panel.concept_name

    details = {}
    for concept_id in ids:
        fields = {
            field: separator.join(sorted(names))
            for field, names in values.get(concept_id, {}).items()
        }
        panel_names = sorted(set(panels.get(concept_id, {}).values()))
        details[concept_id] = LabDetails(
            **fields,
            panels=separator.join(panel_names) if panel_names else None,
            panel_count=len(panels.get(concept_id, {})),
            relationships=[
                LabRelationship(relationship_id=rel_id, value_name=name)
                for rel_id, name in sorted(relationships.get(concept_id, set()))
            ],
        )
    return details


class LabTestSearch:
    """
    Searches Measurement lab tests and the panels that contain them.
    """

    def __init__(self, store: VocabularyStore, rollups: RollupTables, settings: Optional[Settings] = None):
        self.store = store
        self.rollups = rollups
        self.settings = settings or default_settings

    def search(self, term: Optional[str]) -> List[LabTestSearchResult]:
        """Finds lab tests by id, code or name. An empty term lists lab tests up to the scan limit."""
        term = (term or "").strip()
        candidates = self.store.find_concepts(
            term, MEASUREMENT_DOMAIN, sorted(LAB_TEST_VOCABULARY_CLASSES), self.settings.search_scan_limit
        )
        tests = sorted((c for c in candidates if is_lab_test(c)), key=lambda c: (c.vocabulary_id, c.concept_id))
        details = collect_lab_details(self.store, [c.concept_id for c in tests], self.settings.attribute_join_separator)

        results = []
        for test in tests:
            detail = details[test.concept_id]
            results.append(LabTestSearchResult(
                std_concept_id=test.concept_id,
                search_result=test.concept_name,
                searched_code=test.concept_code,
                searched_concept_class_id=test.concept_class_id,
                vocabulary_id=test.vocabulary_id,
                property=detail.property,
                scale=detail.scale,
                system=detail.system,
                time=detail.time,
                panel_count=detail.panel_count,
            ))
        console.log(f"Lab test search '{term}': {len(results)} results.")
        return self.rollups.apply(results)

    def find_panels(self, lab_test_ids: Iterable[int]) -> List[LabPanelResult]:
        """
        Returns the panels containing the given lab tests, together with the
        lab tests themselves. Nothing is returned when no panel is found.
        """
        ids = list(dict.fromkeys(lab_test_ids or []))
        if not ids:
            raise InvalidArgumentError("At least one lab test concept ID is required")

        tests = self.store.get_concepts(ids)
        memberships = self.store.related_concepts(list(tests), [CONTAINED_IN_PANEL])
        if not memberships:
            return []

        rows = [
            LabPanelResult(
                lab_test_type="Lab Test",
                std_concept_id=test.concept_id,
                panel_concept_id=test.concept_id,
                search_result=test.concept_name,
                searched_code=test.concept_code,
                searched_concept_class_id=test.concept_class_id,
                vocabulary_id=test.vocabulary_id,
            )
            for test in tests.values()
        ]
        for test_id, _, panel in memberships:
            rows.append(LabPanelResult(
                lab_test_type="Panel",
                std_concept_id=test_id,
                panel_concept_id=panel.concept_id,
                search_result=panel.concept_name,
                searched_code=panel.concept_code,
                searched_concept_class_id=panel.concept_class_id,
                vocabulary_id=panel.vocabulary_id,
            ))
        rows.sort(key=lambda r: (r.std_concept_id, r.lab_test_type, r.searched_code))
        return rows
