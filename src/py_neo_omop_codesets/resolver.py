# Copyright (c) 2025-2026 Gowtham Adamane Rao. All Rights Reserved.
#
# Licensed under the Prosperity Public License 3.0.0 (the "License").
# You may not use this file except in compliance with the License.
# You may obtain a copy of the License in the LICENSE file at the root
# of this repository, or at: https://prosperitylicense.com/versions/3.0.0
#
# Commercial use beyond a 30-day trial requires a separate license.
from collections import defaultdict
from typing import Dict, List, Optional

from rich.console import Console

from .config import Settings, settings as default_settings
from .errors import InvalidArgumentError
from .models import Concept, MappingKind, SearchResult
from .store import VocabularyStore
from .vocabulary_policy import MAPS_TO, DomainVocabularyPolicy

console = Console()

_MAPPING_TIER = {MappingKind.MAPPED: 0, MappingKind.STANDARD: 1, MappingKind.UNMAPPED: 2}


class ConceptResolver:
    """
    Ranked concept search with best-effort resolution to standard concepts.

    A hit is resolved through single-hop 'Maps to' edges to standard targets,
    or stands for itself when it is already standard or has no standard target
    (classification vocabularies such as ATC).
    """

    def __init__(self, store: VocabularyStore, policy: DomainVocabularyPolicy, settings: Optional[Settings] = None):
        self.store = store
        self.policy = policy
        self.settings = settings or default_settings

    def _validate(self, term: Optional[str], domain_id: Optional[str]) -> str:
        term = (term or "").strip()
        if len(term) < self.settings.search_min_term_length:
            raise InvalidArgumentError(
                f"Search term must be at least {self.settings.search_min_term_length} characters"
            )
        if not domain_id:
            raise InvalidArgumentError("Domain ID is required")
        if not self.policy.is_known_domain(domain_id):
            raise InvalidArgumentError(f"Unknown domain: {domain_id}")
        return term

    def _standard_targets(self, hits: List[Concept]) -> Dict[int, List[Concept]]:
        targets = defaultdict(list)
        for concept_id, _, target in self.store.related_concepts([c.concept_id for c in hits], [MAPS_TO]):
            if target.is_standard:
                targets[concept_id].append(target)
        return targets

    def resolve(self, term: str, domain_id: str) -> List[SearchResult]:
        """Searches `domain_id` for `term` and returns ranked results, capped at the configured limit."""
        term = self._validate(term, domain_id)
        vocabularies = sorted(self.policy.vocabularies_for(domain_id))

        candidates = self.store.find_concepts(term, domain_id, vocabularies, self.settings.search_scan_limit)
        hits = [c for c in candidates if self.policy.admits(domain_id, c)]
        targets = self._standard_targets(hits)

        ranked = []
        for hit in hits:
            resolved = [(MappingKind.MAPPED, t) for t in targets.get(hit.concept_id, [])]
            if not resolved:
                kind = MappingKind.STANDARD if hit.is_standard else MappingKind.UNMAPPED
                resolved = [(kind, hit)]
            for kind, standard in resolved:
                ranked.append((self._rank_key(term, hit, kind), _to_result(hit, standard, kind)))

        ranked.sort(key=lambda item: item[0])
        results = [result for _, result in ranked[: self.settings.search_result_limit]]
        console.log(f"Search '{term}' in {domain_id}: {len(hits)} hits, returning {len(results)} results.")
        return results

    @staticmethod
    def _rank_key(term: str, hit: Concept, kind: MappingKind):
        return (
            0 if term.isdigit() and int(term) == hit.concept_id else 1,
            0 if hit.concept_code.upper() == term.upper() else 1,
            _MAPPING_TIER[kind],
            abs(len(term) - len(hit.concept_name)),
            hit.concept_name.lower(),
            hit.concept_id,
        )


def _to_result(hit: Concept, standard: Concept, kind: MappingKind) -> SearchResult:
    return SearchResult(
        standard_name=standard.concept_name,
        std_concept_id=standard.concept_id,
        standard_code=standard.concept_code,
        standard_vocabulary=standard.vocabulary_id,
        concept_class_id=standard.concept_class_id,
        search_result=hit.concept_name,
        searched_concept_id=hit.concept_id,
        searched_code=hit.concept_code,
        searched_vocabulary=hit.vocabulary_id,
        searched_concept_class_id=hit.concept_class_id,
        searched_term=f"{hit.concept_id} {hit.concept_code} {hit.concept_name}",
        mapping=kind,
    )
