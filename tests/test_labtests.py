import pytest

from py_neo_omop_codesets.errors import InvalidArgumentError
from py_neo_omop_codesets.labtests import LabTestSearch, collect_lab_details
from py_neo_omop_codesets.rollups import RollupTables


@pytest.fixture
def lab_search(store, test_settings) -> LabTestSearch:
    return LabTestSearch(store, RollupTables.empty(), test_settings)


def test_collect_lab_details_joins_values_in_name_order(store):
    details = collect_lab_details(store, [300, 320], separator=" | ")

    assert details[300].scale == "Ord | Qn"
    assert details[300].panel_count == 2
    assert details[320].time == "Pt"
    assert details[320].scale is None
    assert details[320].panels is None


def test_collect_lab_details_of_nothing(store):
    assert collect_lab_details(store, []) == {}


def test_search_finds_lab_tests_only(lab_search: LabTestSearch):
    results = lab_search.search("glucose")

    assert [r.std_concept_id for r in results] == [321, 300]  # CPT4 before LOINC
    loinc = results[1]
    assert loinc.lab_test_type == "Lab Test"
    assert loinc.scale == "Ord, Qn"
    assert loinc.panel_count == 2


def test_search_excludes_panels(lab_search: LabTestSearch):
    assert lab_search.search("metabolic panel") == []


def test_empty_term_lists_all_lab_tests(lab_search: LabTestSearch):
    ids = [r.std_concept_id for r in lab_search.search(None)]

    assert ids == [321, 300, 320]


def test_search_applies_rollups(store, test_settings, rollups):
    result = LabTestSearch(store, rollups, test_settings).search("2345-7")[0]

    assert result.system == "Serum/Plasma"


def test_find_panels_returns_tests_and_panels(lab_search: LabTestSearch):
    rows = lab_search.find_panels([300])

    assert [(r.lab_test_type, r.panel_concept_id) for r in rows] == [
        ("Lab Test", 300),
        ("Panel", 311),
        ("Panel", 310),
    ]
    assert all(r.std_concept_id == 300 for r in rows)


def test_find_panels_without_panels_is_empty(lab_search: LabTestSearch):
    assert lab_search.find_panels([320]) == []


def test_find_panels_requires_ids(lab_search: LabTestSearch):
    with pytest.raises(InvalidArgumentError):
        lab_search.find_panels([])
