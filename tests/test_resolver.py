import pytest

from py_neo_omop_codesets.config import Settings
from py_neo_omop_codesets.errors import InvalidArgumentError
from py_neo_omop_codesets.models import MappingKind
from py_neo_omop_codesets.resolver import ConceptResolver


@pytest.fixture
def resolver(store, policy, test_settings) -> ConceptResolver:
    return ConceptResolver(store, policy, test_settings)


def test_exact_id_match_ranks_first(resolver: ConceptResolver):
    """An exact concept id beats a concept whose name is exactly the term."""
    results = resolver.resolve("1234", "Condition")

    assert results[0].std_concept_id == 1234
    assert results[0].searched_concept_id == 1234
    assert {r.searched_concept_id for r in results} == {1234, 51234}


def test_exact_code_match_ranks_before_mapping_tier(resolver: ConceptResolver):
    results = resolver.resolve("E11", "Condition")

    # E11 is an exact code; E11.9 only contains it
    assert results[0].searched_code == "E11"
    assert results[0].std_concept_id == 101
    assert results[0].mapping == MappingKind.MAPPED


def test_non_standard_hits_resolve_through_maps_to(resolver: ConceptResolver):
    results = resolver.resolve("without complications", "Condition")

    assert len(results) == 1
    result = results[0]
    assert result.searched_concept_id == 103
    assert result.searched_vocabulary == "ICD10CM"
    assert result.std_concept_id == 101
    assert result.standard_name == "Type 2 diabetes mellitus"
    assert result.standard_vocabulary == "SNOMED"
    assert result.searched_term == "103 E11.9 Type 2 diabetes mellitus without complications"


def test_mapped_ranks_above_standard(resolver: ConceptResolver):
    results = resolver.resolve("Type 2 diabetes mellitus", "Condition")

    tiers = [r.mapping for r in results]
    assert tiers.index(MappingKind.MAPPED) < tiers.index(MappingKind.STANDARD)
    # Same-length names: the mapped ICD10CM code precedes the standard SNOMED concept
    assert (results[0].searched_concept_id, results[0].mapping) == (104, MappingKind.MAPPED)


def test_unmapped_concepts_stand_for_themselves(resolver: ConceptResolver):
    results = resolver.resolve("A10B", "Drug")

    assert len(results) == 1
    assert results[0].mapping == MappingKind.UNMAPPED
    assert results[0].std_concept_id == 200


def test_excluded_vocabularies_and_invalid_concepts_are_not_returned(resolver: ConceptResolver):
    results = resolver.resolve("diabetes", "Condition")

    ids = {r.searched_concept_id for r in results}
    assert 105 not in ids  # MedDRA is not a Condition vocabulary
    assert 106 not in ids  # Invalid
    assert 108 not in ids  # Procedure domain


def test_drug_refinement_applies_to_search(resolver: ConceptResolver):
    results = resolver.resolve("metformin", "Drug")

    ids = {r.searched_concept_id for r in results}
    assert {201, 203, 205}.issubset(ids)
    assert 208 not in ids  # Clinical Dose Group


def test_result_limit(store, policy):
    resolver = ConceptResolver(store, policy, Settings(_env_file=None, search_result_limit=2))
    assert len(resolver.resolve("diabetes", "Condition")) == 2


@pytest.mark.parametrize("term", ["", " ", "a", " a "])
def test_short_terms_are_rejected(resolver: ConceptResolver, term):
    with pytest.raises(InvalidArgumentError):
        resolver.resolve(term, "Condition")


@pytest.mark.parametrize("domain_id", [None, "", "Device"])
def test_missing_or_unknown_domain_is_rejected(resolver: ConceptResolver, domain_id):
    with pytest.raises(InvalidArgumentError):
        resolver.resolve("diabetes", domain_id)


def test_term_is_trimmed(resolver: ConceptResolver):
    assert resolver.resolve("  E11  ", "Condition")[0].searched_code == "E11"
