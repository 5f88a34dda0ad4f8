# Copyright (c) 2025-2026 Gowtham Adamane Rao. All Rights Reserved.
#
# Licensed under the Prosperity Public License 3.0.0 (the "License").
# You may not use this file except in compliance with the License.
# You may obtain a copy of the License in the LICENSE file at the root
# of this repository, or at: https://prosperitylicense.com/versions/3.0.0
#
# Commercial use beyond a 30-day trial requires a separate license.
"""
This module builds code sets from anchor concepts.

Three strategies turn anchors into rows:
- Hierarchical: every descendant of the anchor in its domain, plus the source
  codes that map to those descendants.
- Direct: the anchors themselves.
- LabTest: the anchors with their aggregated lab attributes and panels.

Whatever the strategy, the rows go through one deduplication pass where the
first occurrence of a code wins.
"""
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from pydantic import ValidationError
from rich.console import Console

from .config import Settings, settings as default_settings
from .drug_attributes import NO_DRUG_ATTRIBUTES, DrugAttributeResolver, DrugAttributes, matches_combo_filter
from .errors import InvalidArgumentError
from .labtests import collect_lab_details
from .models import BuildParameters, BuildType, CodeSetRow, Concept
from .rollups import RollupTables
from .store import VocabularyStore
from .vocabulary_policy import DRUG_DOMAIN, MAPS_TO, DomainVocabularyPolicy

console = Console()


def _row(anchor: Concept, child: Concept, drug: DrugAttributes = NO_DRUG_ATTRIBUTES) -> CodeSetRow:
    return CodeSetRow(
        root_concept_name=anchor.concept_name,
        child_vocabulary_id=child.vocabulary_id,
        child_code=child.concept_code,
        child_name=child.concept_name,
        child_concept_id=child.concept_id,
        concept_class_id=child.concept_class_id,
        combinationyesno=drug.combinationyesno,
        dose_form=drug.dose_form,
        dfg_name=drug.dfg_name,
    )


def dedup_key(row: CodeSetRow) -> Tuple[str, str, str, int, str]:
    return (row.child_vocabulary_id, row.child_code, row.child_name, row.child_concept_id, row.concept_class_id)


def deduplicate_rows(rows: Iterable[CodeSetRow]) -> List[CodeSetRow]:
    """Drops rows whose (vocabulary, code, name, concept id, class) was already seen. Order is preserved."""
    seen = set()
    unique = []
    for row in rows:
        key = dedup_key(row)
        if key in seen:
            continue
        seen.add(key)
        unique.append(row)
    return unique


class BuildStrategy(ABC):
    """Turns resolved anchor concepts into code set rows."""

    def __init__(self, store: VocabularyStore, policy: DomainVocabularyPolicy, settings: Settings):
        self.store = store
        self.policy = policy
        self.settings = settings
        self.drug_attributes = DrugAttributeResolver(store, settings.attribute_join_separator)

    def _drug_attributes_for(self, concepts: List[Concept]) -> Dict[int, DrugAttributes]:
        drug_ids = [c.concept_id for c in concepts if c.domain_id == DRUG_DOMAIN]
        return self.drug_attributes.resolve(drug_ids)

    @abstractmethod
    def build_rows(self, anchors: List[Concept], params: BuildParameters) -> List[CodeSetRow]:
        ...


class HierarchicalStrategy(BuildStrategy):
    """
    Full descendant closure of each anchor, restricted to the anchor's domain
    and the vocabularies the policy allows for it. Source codes from the same
    domain that 'Maps to' a descendant are added next to it.
    """

    def _rows_for_anchor(self, anchor: Concept, params: BuildParameters) -> List[CodeSetRow]:
        domain_id = anchor.domain_id
        if not self.policy.is_known_domain(domain_id):
            console.log(f"[yellow]Anchor {anchor.concept_id} is in domain '{domain_id}' with no allowed vocabularies.[/yellow]")
            return []

        descendants: Dict[int, Concept] = {}
        separation: Dict[int, int] = {}
        for edge, concept in self.store.descendant_edges([anchor.concept_id]):
            if concept.domain_id != domain_id or not self.policy.admits(domain_id, concept):
                continue
            descendants.setdefault(concept.concept_id, concept)
            distance = edge.min_levels_of_separation
            separation[concept.concept_id] = min(distance, separation.get(concept.concept_id, distance))
        if not descendants:
            return []

        sources: Dict[int, List[Concept]] = defaultdict(list)
        for standard_id, _, source in self.store.reverse_related_concepts(list(descendants), [MAPS_TO]):
            if source.concept_id == standard_id or source.domain_id != domain_id:
                continue
            if self.policy.admits(domain_id, source):
                sources[standard_id].append(source)

        drug = {}
        if domain_id == DRUG_DOMAIN:
            drug = self.drug_attributes.resolve(list(descendants))

        ranked = []
        for concept_id, descendant in descendants.items():
            attributes = drug.get(concept_id, NO_DRUG_ATTRIBUTES)
            if domain_id == DRUG_DOMAIN and not matches_combo_filter(params.combo_filter, attributes.combinationyesno):
                continue
            distance = separation[concept_id]
            ranked.append((distance, _row(anchor, descendant, attributes)))
            for source in sources.get(concept_id, []):
                ranked.append((distance, _row(anchor, source, attributes)))

        # Vocabulary descending, then separation ascending
        ranked.sort(key=lambda item: (item[0], item[1].child_name, item[1].child_concept_id))
        ranked.sort(key=lambda item: item[1].child_vocabulary_id, reverse=True)
        return [row for _, row in ranked]

    def build_rows(self, anchors: List[Concept], params: BuildParameters) -> List[CodeSetRow]:
        rows = []
        for anchor in anchors:
            anchor_rows = self._rows_for_anchor(anchor, params)
            console.log(f"Anchor {anchor.concept_id} ({anchor.concept_name}): {len(anchor_rows)} rows.")
            rows.extend(anchor_rows)
        return rows


class DirectStrategy(BuildStrategy):
    """The anchor concepts themselves, without traversal."""

    def build_rows(self, anchors: List[Concept], params: BuildParameters) -> List[CodeSetRow]:
        drug = self._drug_attributes_for(anchors)
        return [_row(anchor, anchor, drug.get(anchor.concept_id, NO_DRUG_ATTRIBUTES)) for anchor in anchors]


class LabTestStrategy(BuildStrategy):
    """
    The anchor concepts with their lab attributes, lab relationships and
    panel memberships, one row per anchor. Attribute values are rolled up to
    their canonical labels.
    """

    def __init__(self, store: VocabularyStore, policy: DomainVocabularyPolicy, settings: Settings, rollups: RollupTables):
        super().__init__(store, policy, settings)
        self.rollups = rollups

    def build_rows(self, anchors: List[Concept], params: BuildParameters) -> List[CodeSetRow]:
        drug = self._drug_attributes_for(anchors)
        details = collect_lab_details(
            self.store, [a.concept_id for a in anchors], self.settings.attribute_join_separator
        )
        rows = []
        for anchor in anchors:
            row = _row(anchor, anchor, drug.get(anchor.concept_id, NO_DRUG_ATTRIBUTES))
            detail = details[anchor.concept_id]
            update = detail.model_dump(exclude={"relationships"})
            update["relationships"] = list(detail.relationships)
            rows.append(row.model_copy(update=update))
        return self.rollups.apply(rows)


class CodeSetBuilder:
    """
    Entry point for code set builds. Picks the strategy for the build type,
    validates the inputs and deduplicates the result.
    """

    def __init__(
        self,
        store: VocabularyStore,
        policy: DomainVocabularyPolicy,
        rollups: RollupTables,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.settings = settings or default_settings
        self.strategies: Dict[BuildType, BuildStrategy] = {
            BuildType.HIERARCHICAL: HierarchicalStrategy(store, policy, self.settings),
            BuildType.DIRECT: DirectStrategy(store, policy, self.settings),
            BuildType.LABTEST: LabTestStrategy(store, policy, self.settings, rollups),
        }

    @staticmethod
    def parse_parameters(params: Union[BuildParameters, Dict[str, Any], None]) -> BuildParameters:
        if params is None:
            return BuildParameters()
        if isinstance(params, BuildParameters):
            return params
        try:
            return BuildParameters.model_validate(params)
        except ValidationError as e:
            raise InvalidArgumentError(f"Invalid build parameters: {e}") from e

    @staticmethod
    def parse_build_type(build_type: Union[BuildType, str, None]) -> BuildType:
        try:
            return BuildType(build_type.lower() if isinstance(build_type, str) else build_type)
        except ValueError as e:
            raise InvalidArgumentError(f"Unknown build type: {build_type}") from e

    @staticmethod
    def parse_anchor_ids(anchor_ids: Optional[Iterable[Any]]) -> List[int]:
        try:
            ids = [int(anchor_id) for anchor_id in (anchor_ids or [])]
        except (TypeError, ValueError) as e:
            raise InvalidArgumentError(f"Anchor concept IDs must be integers: {e}") from e
        if not ids:
            raise InvalidArgumentError("At least one anchor concept ID is required")
        return list(dict.fromkeys(ids))

    def build(
        self,
        anchor_ids: Iterable[int],
        build_type: Union[BuildType, str],
        params: Union[BuildParameters, Dict[str, Any], None] = None,
    ) -> List[CodeSetRow]:
        """
        Builds the deduplicated rows for `anchor_ids`.

        Anchors missing from the vocabulary contribute no rows; the rest of the
        build still succeeds.
        """
        ids = self.parse_anchor_ids(anchor_ids)
        build_type = self.parse_build_type(build_type)
        params = self.parse_parameters(params)

        found = self.store.get_concepts(ids)
        missing = [anchor_id for anchor_id in ids if anchor_id not in found]
        if missing:
            console.log(f"[yellow]Anchors not found in the vocabulary and skipped: {missing}[/yellow]")
        anchors = [found[anchor_id] for anchor_id in ids if anchor_id in found]

        console.log(f"Building {build_type.value} code set from {len(anchors)} anchors (combo filter {params.combo_filter.value}).")
        rows = self.strategies[build_type].build_rows(anchors, params) if anchors else []
        unique = deduplicate_rows(rows)
        console.log(f"[green]Built {len(unique)} rows ({len(rows) - len(unique)} duplicates removed).[/green]")
        return unique
