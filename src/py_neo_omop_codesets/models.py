from datetime import datetime, timezone
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator
from typing import Any, Dict, List, Optional

class Concept(BaseModel):
    """
    Represents a single OMOP vocabulary concept.
    This is a node in the graph with the :Concept label.
    """
    model_config = ConfigDict(frozen=True)

    concept_id: int
    concept_code: str
    concept_name: str
    vocabulary_id: str
    domain_id: str
    concept_class_id: str
    standard_concept: Optional[str] = None  # 'S', 'C' or None
    invalid_reason: Optional[str] = None  # Tombstone: 'D', 'U' or None

    @property
    def is_standard(self) -> bool:
        return self.standard_concept == "S"

    @property
    def is_valid(self) -> bool:
        return not self.invalid_reason

class Relationship(BaseModel):
    """
    A directed edge between two concepts, e.g. 'Maps to' or 'Has scale type'.
    """
    concept_id_1: int
    concept_id_2: int
    relationship_id: str
    invalid_reason: Optional[str] = None

class AncestorEdge(BaseModel):
    """
    A precomputed transitive-closure edge. Every standard concept has a
    self-edge with a separation of 0.
    """
    ancestor_concept_id: int
    descendant_concept_id: int
    min_levels_of_separation: int = Field(ge=0)
    max_levels_of_separation: Optional[int] = Field(default=None, ge=0)

class ParsedVocabulary(BaseModel):
    """
    A container for all parsed data from the Athena files,
    ready for loading into a vocabulary store.
    """
    concepts: Dict[int, Concept]
    relationships: List[Relationship]
    ancestors: List[AncestorEdge]

# --- Search ---

class MappingKind(str, Enum):
    MAPPED = "MAPPED"  # Resolved to a different standard concept via 'Maps to'
    STANDARD = "STANDARD"  # The searched concept is itself standard
    UNMAPPED = "UNMAPPED"  # No standard target, e.g. ATC classification concepts

class SearchResult(BaseModel):
    """One ranked search hit with its resolved standard concept."""
    standard_name: str
    std_concept_id: int
    standard_code: str
    standard_vocabulary: str
    concept_class_id: str
    search_result: str
    searched_concept_id: int
    searched_code: str
    searched_vocabulary: str
    searched_concept_class_id: str
    searched_term: str
    mapping: MappingKind

# --- Hierarchy ---

class HierarchyDirection(str, Enum):
    ANCESTOR = "ANCESTOR"
    SELF = "SELF"
    DESCENDANT = "DESCENDANT"

class HierarchyRow(BaseModel):
    """
    A concept reached from an anchor through the ancestor table.

    The direction and unsigned distance are the working representation;
    steps_away (positive for ancestors, 0 for the anchor itself, negative for
    descendants) is only produced when the row is serialized.
    """
    direction: HierarchyDirection = Field(exclude=True)
    distance: int = Field(ge=0, exclude=True)
    concept_name: str
    hierarchy_concept_id: int
    concept_code: str
    vocabulary_id: str
    concept_class_id: str
    root_term: str

    @computed_field
    @property
    def steps_away(self) -> int:
        if self.direction == HierarchyDirection.DESCENDANT:
            return -self.distance
        if self.direction == HierarchyDirection.ANCESTOR:
            return self.distance
        return 0

# --- Code set building ---

class BuildType(str, Enum):
    HIERARCHICAL = "hierarchical"
    DIRECT = "direct"
    LABTEST = "labtest"

class ComboFilter(str, Enum):
    ALL = "ALL"
    SINGLE = "SINGLE"
    COMBINATION = "COMBINATION"

class BuildParameters(BaseModel):
    """Strategy parameters accepted by the code set builder."""
    model_config = ConfigDict(extra="forbid")

    combo_filter: ComboFilter = ComboFilter.ALL

    @field_validator("combo_filter", mode="before")
    @classmethod
    def _upper_combo_filter(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

class LabRelationship(BaseModel):
    relationship_id: str
    value_name: str

class CodeSetRow(BaseModel):
    """
    A single code in a built code set. Drug and lab attributes are only
    populated by the strategies that compute them.
    """
    root_concept_name: str
    child_vocabulary_id: str
    child_code: str
    child_name: str
    child_concept_id: int
    concept_class_id: str
    # Drug domain only
    combinationyesno: Optional[str] = None
    dose_form: Optional[str] = None
    dfg_name: Optional[str] = None
    # Lab test builds only
    property: Optional[str] = None
    scale: Optional[str] = None
    system: Optional[str] = None
    time: Optional[str] = None
    panels: Optional[str] = None
    panel_count: Optional[int] = None
    relationships: List[LabRelationship] = Field(default_factory=list)

# --- Lab test search ---

class LabTestSearchResult(BaseModel):
    lab_test_type: str = "Lab Test"
    std_concept_id: int
    search_result: str
    searched_code: str
    searched_concept_class_id: str
    vocabulary_id: str
    property: Optional[str] = None
    scale: Optional[str] = None
    system: Optional[str] = None
    time: Optional[str] = None
    panel_count: int = 0

class LabPanelResult(BaseModel):
    lab_test_type: str  # 'Lab Test' or 'Panel'
    std_concept_id: int  # The lab test the row belongs to
    panel_concept_id: int
    search_result: str
    searched_code: str
    searched_concept_class_id: str
    vocabulary_id: str

# --- Persistence ---

class SourceType(str, Enum):
    OMOP = "OMOP"
    UMLS = "UMLS"

class SavedCodeSet(BaseModel):
    """
    A persisted code set. Materialized sets carry their rows in `concepts`;
    anchor-only sets carry the inputs needed to rebuild them instead.
    """
    id: str
    owner_id: str
    code_set_name: str
    description: Optional[str] = None
    source_type: SourceType = SourceType.OMOP
    source_metadata: Optional[str] = None
    total_concepts: int = Field(ge=0)
    is_materialized: bool
    concepts: List[Dict[str, Any]] = Field(default_factory=list)
    anchor_concept_ids: Optional[List[int]] = None
    build_type: Optional[BuildType] = None
    build_parameters: Optional[BuildParameters] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

class SavedCodeSetSummary(BaseModel):
    id: str
    code_set_name: str
    description: Optional[str] = None
    source_type: SourceType
    total_concepts: int
    is_materialized: bool
    created_at: datetime

    @classmethod
    def from_saved(cls, saved: SavedCodeSet) -> "SavedCodeSetSummary":
        return cls(
            id=saved.id,
            code_set_name=saved.code_set_name,
            description=saved.description,
            source_type=saved.source_type,
            total_concepts=saved.total_concepts,
            is_materialized=saved.is_materialized,
            created_at=saved.created_at,
        )

class RebuildRequest(BaseModel):
    """The builder inputs recovered from a saved code set for editing."""
    code_set_id: str
    anchor_concept_ids: List[int]
    build_type: BuildType
    build_parameters: BuildParameters
