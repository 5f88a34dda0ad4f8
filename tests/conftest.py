import pytest
from pathlib import Path
from neo4j import exceptions
from rich.console import Console

from py_neo_omop_codesets.config import Settings
from py_neo_omop_codesets.engine import CodeSetEngine
from py_neo_omop_codesets.models import AncestorEdge, Concept, ParsedVocabulary, Relationship
from py_neo_omop_codesets.persistence import InMemoryCodeSetRepository
from py_neo_omop_codesets.rollups import RollupTables
from py_neo_omop_codesets.store import InMemoryVocabularyStore
from py_neo_omop_codesets.vocabulary_policy import DomainVocabularyPolicy

console = Console()


def _concept(concept_id, code, name, vocabulary, domain, concept_class, standard="S", invalid=None) -> Concept:
    return Concept(
        concept_id=concept_id,
        concept_code=code,
        concept_name=name,
        vocabulary_id=vocabulary,
        domain_id=domain,
        concept_class_id=concept_class,
        standard_concept=standard,
        invalid_reason=invalid,
    )


def _rel(source, target, relationship_id, invalid=None) -> Relationship:
    return Relationship(concept_id_1=source, concept_id_2=target, relationship_id=relationship_id, invalid_reason=invalid)


def _edge(ancestor, descendant, separation) -> AncestorEdge:
    return AncestorEdge(
        ancestor_concept_id=ancestor,
        descendant_concept_id=descendant,
        min_levels_of_separation=separation,
        max_levels_of_separation=separation,
    )


# --- Mock vocabulary ---
# Conditions: an endocrine disorder hierarchy with ICD10CM codes mapped to SNOMED.
# Drugs: an ATC class over two RxNorm ingredients, a single and a combination drug.
# Measurements: a LOINC glucose test with attributes and two panels.
CONCEPTS = [
    _concept(99, "362969004", "Disorder of endocrine system", "SNOMED", "Condition", "Clinical Finding"),
    _concept(100, "73211009", "Diabetes mellitus", "SNOMED", "Condition", "Clinical Finding"),
    _concept(101, "44054006", "Type 2 diabetes mellitus", "SNOMED", "Condition", "Clinical Finding"),
    _concept(102, "127013003", "Diabetic renal disease", "SNOMED", "Condition", "Clinical Finding"),
    _concept(103, "E11.9", "Type 2 diabetes mellitus without complications", "ICD10CM", "Condition", "5-char billing code", standard=None),
    _concept(104, "E11", "Type 2 diabetes mellitus", "ICD10CM", "Condition", "3-char nonbill code", standard=None),
    _concept(105, "10012601", "Diabetes mellitus", "MedDRA", "Condition", "PT", standard=None),
    _concept(106, "190368000", "Type II diabetes mellitus", "SNOMED", "Condition", "Clinical Finding", standard=None, invalid="U"),
    _concept(107, "E10", "Type 1 diabetes mellitus", "ICD10CM", "Condition", "3-char nonbill code", standard=None),
    _concept(108, "410453006", "Diabetic eye examination", "SNOMED", "Procedure", "Procedure"),
    _concept(1234, "195967001", "Asthma", "SNOMED", "Condition", "Clinical Finding"),
    _concept(51234, "266364000", "1234", "SNOMED", "Condition", "Clinical Finding"),
    _concept(200, "A10B", "BLOOD GLUCOSE LOWERING DRUGS, EXCL. INSULINS", "ATC", "Drug", "ATC 3rd", standard="C"),
    _concept(201, "6809", "metformin", "RxNorm", "Drug", "Ingredient"),
    _concept(202, "593411", "sitagliptin", "RxNorm", "Drug", "Ingredient"),
    _concept(203, "861007", "metformin hydrochloride 500 MG Oral Tablet", "RxNorm", "Drug", "Clinical Drug"),
    _concept(204, "861769", "metformin / sitagliptin Oral Tablet", "RxNorm", "Drug", "Clinical Drug"),
    _concept(205, "00093104801", "Metformin HCl 500 MG Oral Tablet", "NDC", "Drug", "11-digit NDC", standard=None),
    _concept(206, "317541", "Oral Tablet", "RxNorm", "Drug", "Dose Form", standard=None),
    _concept(207, "1151131", "Oral Product", "RxNorm", "Drug", "Dose Form Group", standard="C"),
    _concept(208, "1151133", "metformin Oral Product", "RxNorm", "Drug", "Clinical Dose Group"),
    _concept(300, "2345-7", "Glucose [Mass/volume] in Serum or Plasma", "LOINC", "Measurement", "Lab Test"),
    _concept(301, "LP7753-9", "Qn", "LOINC", "Meas Value", "LOINC Scale", standard=None),
    _concept(302, "LP7750-5", "Ord", "LOINC", "Meas Value", "LOINC Scale", standard=None),
    _concept(303, "LP7576-4", "Ser/Plas", "LOINC", "Meas Value", "LOINC System", standard=None),
    _concept(304, "LP6960-1", "Pt", "LOINC", "Meas Value", "LOINC Time", standard=None),
    _concept(305, "LP6827-2", "MCnc", "LOINC", "Meas Value", "LOINC Property", standard=None),
    _concept(306, "LP14635-4", "Glucose", "LOINC", "Meas Value", "LOINC Component", standard=None),
    _concept(310, "51990-0", "Basic metabolic panel - Blood", "LOINC", "Measurement", "Panel"),
    _concept(311, "24323-8", "Comprehensive metabolic panel - Serum or Plasma", "LOINC", "Measurement", "Panel"),
    _concept(320, "4548-4", "Hemoglobin A1c/Hemoglobin.total in Blood", "LOINC", "Measurement", "Lab Test"),
    _concept(321, "82947", "Glucose; quantitative, blood", "CPT4", "Measurement", "CPT4"),
]

RELATIONSHIPS = [
    _rel(103, 101, "Maps to"),
    _rel(104, 101, "Maps to"),
    _rel(105, 100, "Maps to"),
    _rel(107, 100, "Maps to", invalid="D"),
    _rel(205, 203, "Maps to"),
    _rel(203, 206, "RxNorm has dose form"),
    _rel(204, 206, "RxNorm has dose form"),
    _rel(206, 207, "RxNorm is a"),
    _rel(300, 301, "Has scale type"),
    _rel(300, 302, "Has scale type"),
    _rel(300, 303, "Has system"),
    _rel(300, 304, "Has time aspect"),
    _rel(300, 305, "Has property"),
    _rel(300, 306, "Has component"),
    _rel(300, 310, "Contained in panel"),
    _rel(300, 311, "Contained in panel"),
    _rel(320, 304, "Has time aspect"),
]

ANCESTORS = [
    _edge(99, 99, 0), _edge(99, 100, 1), _edge(99, 101, 2), _edge(99, 102, 3),
    _edge(100, 100, 0), _edge(100, 101, 1), _edge(100, 102, 2), _edge(100, 108, 1),
    _edge(101, 101, 0), _edge(101, 102, 1),
    _edge(102, 102, 0),
    _edge(1234, 1234, 0), _edge(51234, 51234, 0),
    _edge(200, 200, 0), _edge(200, 201, 1), _edge(200, 202, 1), _edge(200, 203, 2), _edge(200, 204, 2),
    _edge(201, 201, 0), _edge(201, 203, 1), _edge(201, 204, 1), _edge(201, 208, 1),
    _edge(202, 202, 0), _edge(202, 204, 1),
    _edge(203, 203, 0), _edge(204, 204, 0), _edge(208, 208, 0),
    _edge(300, 300, 0), _edge(320, 320, 0),
]


@pytest.fixture
def parsed_vocabulary() -> ParsedVocabulary:
    return ParsedVocabulary(
        concepts={c.concept_id: c for c in CONCEPTS},
        relationships=list(RELATIONSHIPS),
        ancestors=list(ANCESTORS),
    )


@pytest.fixture
def store(parsed_vocabulary: ParsedVocabulary) -> InMemoryVocabularyStore:
    return InMemoryVocabularyStore.from_parsed(parsed_vocabulary)


@pytest.fixture
def policy() -> DomainVocabularyPolicy:
    return DomainVocabularyPolicy()


@pytest.fixture
def test_settings() -> Settings:
    """Settings isolated from any .env file or environment of the developer machine."""
    return Settings(_env_file=None, rollup_dir=None)


@pytest.fixture
def rollups() -> RollupTables:
    """The rollup tables shipped with the package."""
    return RollupTables.from_directory()


@pytest.fixture
def engine(store, rollups, test_settings) -> CodeSetEngine:
    return CodeSetEngine(store, InMemoryCodeSetRepository(), rollups=rollups, settings=test_settings)


@pytest.fixture(scope="session")
def neo4j_container():
    """
    Starts a Neo4j container for the test session.
    Tests using it are skipped when Docker is not available.
    """
    from testcontainers.neo4j import Neo4jContainer

    container = Neo4jContainer(image="neo4j:5.18")
    try:
        container.start()
    except Exception as e:
        pytest.skip(f"Neo4j container could not be started: {e}")
    try:
        yield container
    finally:
        container.stop()


@pytest.fixture
def neo4j_driver(neo4j_container):
    """
    Provides a driver to the test Neo4j container and cleans the database
    after each test function.
    """
    driver = neo4j_container.get_driver()

    def _clean():
        with driver.session() as session:
            session.run("MATCH (n) DETACH DELETE n")
            constraints = session.run("SHOW CONSTRAINTS YIELD name").data()
            for constraint in constraints:
                try:
                    session.run(f"DROP CONSTRAINT {constraint['name']}")
                except exceptions.ClientError:
                    console.log(f"[yellow]Constraint {constraint['name']} already dropped.[/yellow]")

    _clean()
    yield driver
    _clean()
    driver.close()


# --- Mock Athena export (tab-delimited, with header rows) ---

CONCEPT_CSV = """concept_id\tconcept_name\tdomain_id\tvocabulary_id\tconcept_class_id\tstandard_concept\tconcept_code\tvalid_start_date\tvalid_end_date\tinvalid_reason
100\tDiabetes mellitus\tCondition\tSNOMED\tClinical Finding\tS\t73211009\t20020131\t20991231\t
101\tType 2 diabetes mellitus\tCondition\tSNOMED\tClinical Finding\tS\t44054006\t20020131\t20991231\t
103\tType 2 diabetes mellitus without complications\tCondition\tICD10CM\t5-char billing code\t\tE11.9\t20071001\t20991231\t
105\tDiabetes mellitus\tCondition\tMedDRA\tPT\t\t10012601\t19700101\t20991231\t
106\tType II "diabetes" mellitus\tCondition\tSNOMED\tClinical Finding\t\t190368000\t20020131\t20180131\tU
not-a-number\tBroken row\tCondition\tSNOMED\tClinical Finding\tS\t1\t20020131\t20991231\t
"""

CONCEPT_RELATIONSHIP_CSV = """concept_id_1\tconcept_id_2\trelationship_id\tvalid_start_date\tvalid_end_date\tinvalid_reason
103\t101\tMaps to\t19700101\t20991231\t
105\t100\tMaps to\t19700101\t20991231\t
101\t100\tIs a\t19700101\t20991231\t
"""

CONCEPT_ANCESTOR_CSV = """ancestor_concept_id\tdescendant_concept_id\tmin_levels_of_separation\tmax_levels_of_separation
100\t100\t0\t0
100\t101\t1\t1
101\t101\t0\t0
105\t105\t0\t0
"""


@pytest.fixture
def athena_dir(tmp_path: Path) -> Path:
    vocab_dir = tmp_path / "athena"
    vocab_dir.mkdir()
    (vocab_dir / "CONCEPT.csv").write_text(CONCEPT_CSV)
    (vocab_dir / "CONCEPT_RELATIONSHIP.csv").write_text(CONCEPT_RELATIONSHIP_CSV)
    (vocab_dir / "CONCEPT_ANCESTOR.csv").write_text(CONCEPT_ANCESTOR_CSV)
    return vocab_dir


