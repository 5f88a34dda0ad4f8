# Copyright (c) 2025-2026 Gowtham Adamane Rao. All Rights Reserved.
#
# Licensed under the Prosperity Public License 3.0.0 (the "License").
# You may not use this file except in compliance with the License.
# You may obtain a copy of the License in the LICENSE file at the root
# of this repository, or at: https://prosperitylicense.com/versions/3.0.0
#
# Commercial use beyond a 30-day trial requires a separate license.
from collections import defaultdict
from typing import Dict, Iterable, List, NamedTuple, Optional, Set

from .models import ComboFilter
from .store import VocabularyStore
from .vocabulary_policy import (
    DOSE_FORM_GROUP_CLASS,
    INGREDIENT_CLASS,
    RXNORM_HAS_DOSE_FORM,
    RXNORM_IS_A,
    RXNORM_VOCABULARY,
)


class DrugAttributes(NamedTuple):
    combinationyesno: Optional[str]
    dose_form: Optional[str]
    dfg_name: Optional[str]


NO_DRUG_ATTRIBUTES = DrugAttributes(None, None, None)


def _join(names: Iterable[str], separator: str) -> Optional[str]:
    unique = sorted(set(names))
    return separator.join(unique) if unique else None


class DrugAttributeResolver:
    """
    Computes dose form, dose form group and single/combination classification
    for standard drug concepts.

    A drug is a COMBINATION when more than one RxNorm Ingredient is among its
    ancestors (an ingredient is its own ancestor), SINGLE when exactly one is,
    and unclassified otherwise (e.g. ATC classes).
    """

    def __init__(self, store: VocabularyStore, separator: str = ", "):
        self.store = store
        self.separator = separator

    def _ingredient_counts(self, concept_ids: List[int]) -> Dict[int, int]:
        ingredients: Dict[int, Set[int]] = defaultdict(set)
        for edge, ancestor in self.store.ancestor_edges(concept_ids):
            if ancestor.vocabulary_id == RXNORM_VOCABULARY and ancestor.concept_class_id == INGREDIENT_CLASS:
                ingredients[edge.descendant_concept_id].add(ancestor.concept_id)
        return {concept_id: len(found) for concept_id, found in ingredients.items()}

    def resolve(self, concept_ids: Iterable[int]) -> Dict[int, DrugAttributes]:
        ids = list(dict.fromkeys(concept_ids))
        if not ids:
            return {}

        counts = self._ingredient_counts(ids)

        dose_forms: Dict[int, List[str]] = defaultdict(list)
        dose_form_owners: Dict[int, Set[int]] = defaultdict(set)
        for concept_id, _, dose_form in self.store.related_concepts(ids, [RXNORM_HAS_DOSE_FORM]):
            dose_forms[concept_id].append(dose_form.concept_name)
            dose_form_owners[dose_form.concept_id].add(concept_id)

        groups: Dict[int, List[str]] = defaultdict(list)
        if dose_form_owners:
            for dose_form_id, _, group in self.store.related_concepts(list(dose_form_owners), [RXNORM_IS_A]):
                if group.concept_class_id != DOSE_FORM_GROUP_CLASS:
                    continue
                for concept_id in dose_form_owners[dose_form_id]:
                    groups[concept_id].append(group.concept_name)

        attributes = {}
        for concept_id in ids:
            count = counts.get(concept_id, 0)
            if count > 1:
                combination = ComboFilter.COMBINATION.value
            elif count == 1:
                combination = ComboFilter.SINGLE.value
            else:
                combination = None
            attributes[concept_id] = DrugAttributes(
                combinationyesno=combination,
                dose_form=_join(dose_forms.get(concept_id, []), self.separator),
                dfg_name=_join(groups.get(concept_id, []), self.separator),
            )
        return attributes


def matches_combo_filter(combo_filter: ComboFilter, combinationyesno: Optional[str]) -> bool:
    """ALL keeps every row; SINGLE and COMBINATION keep only rows carrying that exact classification."""
    if combo_filter == ComboFilter.ALL:
        return True
    return combinationyesno == combo_filter.value
