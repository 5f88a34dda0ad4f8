# Copyright (c) 2025-2026 Gowtham Adamane Rao. All Rights Reserved.
#
# Licensed under the Prosperity Public License 3.0.0 (the "License").
# You may not use this file except in compliance with the License.
# You may obtain a copy of the License in the LICENSE file at the root
# of this repository, or at: https://prosperitylicense.com/versions/3.0.0
#
# Commercial use beyond a 30-day trial requires a separate license.
"""
This module scopes each OMOP domain to the vocabularies whose codes belong in
a code set for that domain.

Resolution, hierarchy expansion and code set building all consult the same
DomainVocabularyPolicy, so a concept admitted by one is admitted by the others.
See the OHDSI vocabulary documentation for the meaning of each vocabulary:
https://ohdsi.github.io/CommonDataModel/
"""
from typing import Dict, FrozenSet, Mapping, Optional

from .models import Concept

DRUG_DOMAIN = "Drug"
MEASUREMENT_DOMAIN = "Measurement"

# Domain to allowed vocabulary_id mapping. Unknown domains are not listed
# and therefore admit nothing.
DOMAIN_VOCABULARIES: Dict[str, FrozenSet[str]] = {
    "Condition": frozenset({"ICD10CM", "SNOMED", "ICD9CM"}),
    "Observation": frozenset({"ICD10CM", "SNOMED", "LOINC", "CPT4", "HCPCS"}),
    "Drug": frozenset({"RxNorm", "NDC", "CPT4", "CVX", "HCPCS", "ATC"}),
    "Measurement": frozenset({"LOINC", "CPT4", "SNOMED", "HCPCS"}),
    "Procedure": frozenset({"CPT4", "HCPCS", "SNOMED", "ICD9PCS", "LOINC", "ICD10PCS"}),
}

ATC_VOCABULARY = "ATC"
ATC_CLASSES = frozenset({"ATC 1st", "ATC 2nd", "ATC 3rd", "ATC 4th", "ATC 5th"})

# Drug concept classes admitted in the Drug domain (in addition to anything from ATC)
DRUG_CONCEPT_CLASSES = frozenset({
    "Clinical Drug",
    "Branded Drug",
    "Ingredient",
    "Clinical Pack",
    "Branded Pack",
    "Quant Clinical Drug",
    "Quant Branded Drug",
    "11-digit NDC",
}) | ATC_CLASSES

# Lab tests: Measurement concepts in these vocabularies, optionally restricted by class
LAB_TEST_VOCABULARY_CLASSES: Dict[str, Optional[FrozenSet[str]]] = {
    "LOINC": frozenset({"Lab Test"}),
    "CPT4": None,
    "SNOMED": None,
    "HCPCS": frozenset({"HCPCS"}),
}

# Relationship ids used across the engine
MAPS_TO = "Maps to"
HAS_PROPERTY = "Has property"
HAS_SCALE_TYPE = "Has scale type"
HAS_SYSTEM = "Has system"
HAS_TIME_ASPECT = "Has time aspect"
CONTAINED_IN_PANEL = "Contained in panel"
RXNORM_HAS_DOSE_FORM = "RxNorm has dose form"
RXNORM_IS_A = "RxNorm is a"

# Lab attribute relationship -> CodeSetRow field
LAB_ATTRIBUTE_FIELDS: Dict[str, str] = {
    HAS_PROPERTY: "property",
    HAS_SCALE_TYPE: "scale",
    HAS_SYSTEM: "system",
    HAS_TIME_ASPECT: "time",
}

# Every relationship reported in the relationships list of a lab test row
LAB_DETAIL_RELATIONSHIPS = (
    RXNORM_HAS_DOSE_FORM,
    HAS_PROPERTY,
    HAS_SCALE_TYPE,
    HAS_SYSTEM,
    HAS_TIME_ASPECT,
    "Has asso morph",
    "Has finding site",
    "Has component",
)

INGREDIENT_CLASS = "Ingredient"
DOSE_FORM_GROUP_CLASS = "Dose Form Group"
RXNORM_VOCABULARY = "RxNorm"


class DomainVocabularyPolicy:
    """
    Decides which concepts are in scope for a domain.

    The policy is a pure function of the concept and the domain; it holds no
    state beyond the mapping it was constructed with.
    """

    def __init__(
        self,
        domain_vocabularies: Optional[Mapping[str, FrozenSet[str]]] = None,
        drug_classes: FrozenSet[str] = DRUG_CONCEPT_CLASSES,
    ):
        self._domain_vocabularies = dict(domain_vocabularies or DOMAIN_VOCABULARIES)
        self._drug_classes = drug_classes

    def vocabularies_for(self, domain_id: Optional[str]) -> FrozenSet[str]:
        """Returns the allowed vocabularies for a domain, or an empty set if the domain is unknown."""
        if not domain_id:
            return frozenset()
        return self._domain_vocabularies.get(domain_id, frozenset())

    def is_known_domain(self, domain_id: Optional[str]) -> bool:
        return bool(self.vocabularies_for(domain_id))

    def passes_drug_refinement(self, concept: Concept) -> bool:
        """The Drug-domain class predicate: admitted drug classes, or anything from ATC."""
        return concept.concept_class_id in self._drug_classes or concept.vocabulary_id == ATC_VOCABULARY

    def admits(self, domain_id: str, concept: Concept) -> bool:
        """
        True when `concept` belongs in results scoped to `domain_id`.
        The vocabulary filter applies to every domain; the class refinement to Drug only.
        """
        if concept.vocabulary_id not in self.vocabularies_for(domain_id):
            return False
        if domain_id == DRUG_DOMAIN:
            return self.passes_drug_refinement(concept)
        return True


def is_lab_test(concept: Concept) -> bool:
    """Maps a Measurement concept to whether it is searchable as a lab test."""
    if concept.domain_id != MEASUREMENT_DOMAIN:
        return False
    if concept.vocabulary_id not in LAB_TEST_VOCABULARY_CLASSES:
        return False
    allowed_classes = LAB_TEST_VOCABULARY_CLASSES[concept.vocabulary_id]
    return allowed_classes is None or concept.concept_class_id in allowed_classes
