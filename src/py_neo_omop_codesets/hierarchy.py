# Copyright (c) 2025-2026 Gowtham Adamane Rao. All Rights Reserved.
#
# Licensed under the Prosperity Public License 3.0.0 (the "License").
# You may not use this file except in compliance with the License.
# You may obtain a copy of the License in the LICENSE file at the root
# of this repository, or at: https://prosperitylicense.com/versions/3.0.0
#
# Commercial use beyond a 30-day trial requires a separate license.
from typing import Dict, List, Tuple

from rich.console import Console

from .errors import NotFoundError
from .models import AncestorEdge, Concept, HierarchyDirection, HierarchyRow
from .store import VocabularyStore
from .vocabulary_policy import DomainVocabularyPolicy

console = Console()


class HierarchyExpander:
    """
    Expands one anchor concept into its ancestors and descendants using the
    precomputed ancestor table, scoped by the anchor's domain.
    """

    def __init__(self, store: VocabularyStore, policy: DomainVocabularyPolicy):
        self.store = store
        self.policy = policy

    def expand(self, anchor_concept_id: int) -> List[HierarchyRow]:
        """
        Returns ancestors, the anchor itself and descendants ordered from the
        farthest ancestor to the farthest descendant.
        Raises NotFoundError if the anchor is not in the vocabulary.
        """
        anchor = self.store.get_concepts([anchor_concept_id]).get(anchor_concept_id)
        if anchor is None:
            raise NotFoundError(f"Concept {anchor_concept_id} not found")

        if not self.policy.vocabularies_for(anchor.domain_id):
            console.log(f"[yellow]Domain '{anchor.domain_id}' has no allowed vocabularies; hierarchy is empty.[/yellow]")
            return []

        rows: Dict[Tuple[HierarchyDirection, int], HierarchyRow] = {}
        passes = (
            (self.store.ancestor_edges([anchor.concept_id]), HierarchyDirection.ANCESTOR),
            (self.store.descendant_edges([anchor.concept_id]), HierarchyDirection.DESCENDANT),
        )
        for edges, direction in passes:
            for edge, concept in edges:
                if not self.policy.admits(anchor.domain_id, concept):
                    continue
                row = self._to_row(anchor, edge, concept, direction)
                rows.setdefault((row.direction, concept.concept_id), row)

        ordered = sorted(
            rows.values(),
            key=lambda r: (-r.steps_away, r.vocabulary_id, r.concept_name, r.hierarchy_concept_id),
        )
        console.log(f"Hierarchy for {anchor.concept_id} ({anchor.concept_name}): {len(ordered)} concepts.")
        return ordered

    @staticmethod
    def _to_row(anchor: Concept, edge: AncestorEdge, concept: Concept, direction: HierarchyDirection) -> HierarchyRow:
        distance = edge.min_levels_of_separation
        if distance == 0:
            direction = HierarchyDirection.SELF
        return HierarchyRow(
            direction=direction,
            distance=distance,
            concept_name=concept.concept_name,
            hierarchy_concept_id=concept.concept_id,
            concept_code=concept.concept_code,
            vocabulary_id=concept.vocabulary_id,
            concept_class_id=concept.concept_class_id,
            root_term=anchor.concept_name,
        )
