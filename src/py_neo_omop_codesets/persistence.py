# Copyright (c) 2025-2026 Gowtham Adamane Rao. All Rights Reserved.
#
# Licensed under the Prosperity Public License 3.0.0 (the "License").
# You may not use this file except in compliance with the License.
# You may obtain a copy of the License in the LICENSE file at the root
# of this repository, or at: https://prosperitylicense.com/versions/3.0.0
#
# Commercial use beyond a 30-day trial requires a separate license.
"""
Saved code sets.

Small code sets are saved with all of their rows ("materialized"). Large code
sets only keep the anchors, build type and build parameters together with the
row count; the caller rebuilds them with the builder when needed. Nothing here
ever rebuilds a code set on read.
"""
import json
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Union

from neo4j import Driver
from pydantic import BaseModel
from rich.console import Console

from .builder import CodeSetBuilder
from .config import Settings, settings as default_settings
from .errors import InvalidArgumentError, NotFoundError
from .models import (
    BuildParameters,
    BuildType,
    RebuildRequest,
    SavedCodeSet,
    SavedCodeSetSummary,
    SourceType,
)
from .store import run_query

console = Console()


class MaterializationPolicy:
    """Decides whether a code set of a given size is saved with its rows."""

    def __init__(self, threshold: int = 500):
        self.threshold = threshold

    def should_materialize(self, total_concepts: int) -> bool:
        return total_concepts < self.threshold


class CodeSetRepository(ABC):
    """Storage for SavedCodeSet records."""

    @abstractmethod
    def create(self, code_set: SavedCodeSet) -> str:
        """Stores a code set and returns its id."""

    @abstractmethod
    def get(self, code_set_id: str) -> Optional[SavedCodeSet]:
        ...

    @abstractmethod
    def list_by_owner(self, owner_id: str) -> List[SavedCodeSet]:
        ...

    @abstractmethod
    def delete(self, code_set_id: str) -> bool:
        """Returns True when a record was removed."""

    def close(self):
        pass


class InMemoryCodeSetRepository(CodeSetRepository):
    def __init__(self):
        self._records: Dict[str, SavedCodeSet] = {}

    def create(self, code_set: SavedCodeSet) -> str:
        self._records[code_set.id] = code_set.model_copy(deep=True)
        return code_set.id

    def get(self, code_set_id: str) -> Optional[SavedCodeSet]:
        record = self._records.get(code_set_id)
        return record.model_copy(deep=True) if record else None

    def list_by_owner(self, owner_id: str) -> List[SavedCodeSet]:
        return [r.model_copy(deep=True) for r in self._records.values() if r.owner_id == owner_id]

    def delete(self, code_set_id: str) -> bool:
        return self._records.pop(code_set_id, None) is not None


class Neo4jCodeSetRepository(CodeSetRepository):
    """
    Keeps code sets as (:SavedCodeSet) nodes. Rows and build parameters are
    stored as JSON strings since Neo4j properties cannot hold nested maps.
    """

    def __init__(self, driver: Driver, database: str = "neo4j", owns_driver: bool = False):
        self.driver = driver
        self.database = database
        self._owns_driver = owns_driver

    def _run(self, query: str, params: Optional[dict] = None) -> List[Any]:
        return run_query(self.driver, self.database, query, params)

    def ensure_constraints(self):
        console.log("Ensuring SavedCodeSet constraint exists...")
        self._run("CREATE CONSTRAINT IF NOT EXISTS FOR (s:SavedCodeSet) REQUIRE s.id IS UNIQUE")

    @staticmethod
    def _to_properties(code_set: SavedCodeSet) -> Dict[str, Any]:
        return {
            "id": code_set.id,
            "owner_id": code_set.owner_id,
            "code_set_name": code_set.code_set_name,
            "description": code_set.description,
            "source_type": code_set.source_type.value,
            "source_metadata": code_set.source_metadata,
            "total_concepts": code_set.total_concepts,
            "is_materialized": code_set.is_materialized,
            "concepts_json": json.dumps(code_set.concepts),
            "anchor_concept_ids": code_set.anchor_concept_ids,
            "build_type": code_set.build_type.value if code_set.build_type else None,
            "build_parameters_json": (
                code_set.build_parameters.model_dump_json() if code_set.build_parameters else None
            ),
            "created_at": code_set.created_at.isoformat(),
        }

    @staticmethod
    def _from_properties(props: Dict[str, Any]) -> SavedCodeSet:
        props = dict(props)
        concepts = json.loads(props.pop("concepts_json", None) or "[]")
        parameters = props.pop("build_parameters_json", None)
        return SavedCodeSet(
            **props,
            concepts=concepts,
            build_parameters=BuildParameters.model_validate_json(parameters) if parameters else None,
        )

    def create(self, code_set: SavedCodeSet) -> str:
        self._run(
            "MERGE (s:SavedCodeSet {id: $props.id}) SET s += $props",
            {"props": self._to_properties(code_set)},
        )
        return code_set.id

    def get(self, code_set_id: str) -> Optional[SavedCodeSet]:
        records = self._run("MATCH (s:SavedCodeSet {id: $id}) RETURN s", {"id": code_set_id})
        if not records:
            return None
        return self._from_properties(dict(records[0]["s"]))

    def list_by_owner(self, owner_id: str) -> List[SavedCodeSet]:
        records = self._run("MATCH (s:SavedCodeSet {owner_id: $owner_id}) RETURN s", {"owner_id": owner_id})
        return [self._from_properties(dict(record["s"])) for record in records]

    def delete(self, code_set_id: str) -> bool:
        records = self._run(
            "MATCH (s:SavedCodeSet {id: $id}) DETACH DELETE s RETURN count(*) AS deleted",
            {"id": code_set_id},
        )
        return bool(records) and records[0]["deleted"] > 0

    def close(self):
        if self._owns_driver:
            self.driver.close()


def _row_to_dict(row: Union[BaseModel, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(row, BaseModel):
        return row.model_dump(mode="json")
    return dict(row)


class CodeSetStorage:
    """
    Owner-scoped save, load, list, delete and rebuild of code sets.
    A set owned by someone else is reported as not found.
    """

    def __init__(
        self,
        repository: CodeSetRepository,
        builder: CodeSetBuilder,
        settings: Optional[Settings] = None,
    ):
        self.repository = repository
        self.builder = builder
        self.settings = settings or default_settings
        self.materialization = MaterializationPolicy(self.settings.materialization_threshold)

    def save(
        self,
        owner_id: str,
        code_set_name: str,
        rows: Optional[Iterable[Union[BaseModel, Dict[str, Any]]]] = None,
        anchor_concept_ids: Optional[Iterable[int]] = None,
        build_type: Union[BuildType, str, None] = None,
        build_parameters: Union[BuildParameters, Dict[str, Any], None] = None,
        description: Optional[str] = None,
        source_type: Union[SourceType, str] = SourceType.OMOP,
        source_metadata: Optional[str] = None,
    ) -> str:
        """
        Saves a code set and returns its id. When `rows` is omitted the code set
        is built from the anchors first so that its size is known.
        """
        if not owner_id:
            raise InvalidArgumentError("Owner ID is required")
        if not code_set_name or not code_set_name.strip():
            raise InvalidArgumentError("Code set name is required")
        try:
            source_type = SourceType(source_type)
        except ValueError as e:
            raise InvalidArgumentError(f"Unknown source type: {source_type}") from e

        anchors = self.builder.parse_anchor_ids(anchor_concept_ids) if anchor_concept_ids else None
        build_type = self.builder.parse_build_type(build_type) if build_type is not None else None
        parameters = self.builder.parse_parameters(build_parameters)

        if rows is None:
            if not anchors or build_type is None:
                raise InvalidArgumentError("Either rows or anchor concept IDs with a build type are required")
            rows = self.builder.build(anchors, build_type, parameters)
        concepts = [_row_to_dict(row) for row in rows]

        total = len(concepts)
        materialize = self.materialization.should_materialize(total)
        if not materialize and (not anchors or build_type is None):
            raise InvalidArgumentError(
                f"Code sets with {self.materialization.threshold} or more concepts "
                "require anchor concept IDs and a build type"
            )

        code_set = SavedCodeSet(
            id=uuid.uuid4().hex,
            owner_id=owner_id,
            code_set_name=code_set_name.strip(),
            description=description,
            source_type=source_type,
            source_metadata=source_metadata,
            total_concepts=total,
            is_materialized=materialize,
            concepts=concepts if materialize else [],
            anchor_concept_ids=anchors,
            build_type=build_type,
            build_parameters=parameters if build_type is not None else None,
        )
        code_set_id = self.repository.create(code_set)
        mode = "materialized" if materialize else "anchor-only"
        console.log(f"[green]Saved code set '{code_set.code_set_name}' ({total} concepts, {mode}) as {code_set_id}.[/green]")
        return code_set_id

    def load(self, owner_id: str, code_set_id: str) -> SavedCodeSet:
        code_set = self.repository.get(code_set_id)
        if code_set is None or code_set.owner_id != owner_id:
            raise NotFoundError(f"Code set {code_set_id} not found")
        return code_set

    def list(self, owner_id: str) -> List[SavedCodeSetSummary]:
        code_sets = sorted(
            self.repository.list_by_owner(owner_id),
            key=lambda s: s.created_at or datetime.min,
            reverse=True,
        )
        return [SavedCodeSetSummary.from_saved(s) for s in code_sets]

    def delete(self, owner_id: str, code_set_id: str) -> bool:
        code_set = self.repository.get(code_set_id)
        if code_set is None or code_set.owner_id != owner_id:
            return False
        deleted = self.repository.delete(code_set_id)
        if deleted:
            console.log(f"Deleted code set {code_set_id}.")
        return deleted

    def rebuild_request(self, owner_id: str, code_set_id: str) -> RebuildRequest:
        """Returns the builder inputs of a saved OMOP code set so it can be edited and built again."""
        code_set = self.load(owner_id, code_set_id)
        if code_set.source_type != SourceType.OMOP:
            raise InvalidArgumentError(f"Code sets from {code_set.source_type.value} cannot be edited")
        if not code_set.anchor_concept_ids or code_set.build_type is None:
            raise InvalidArgumentError(f"Code set {code_set_id} was saved without anchors and cannot be rebuilt")
        return RebuildRequest(
            code_set_id=code_set.id,
            anchor_concept_ids=code_set.anchor_concept_ids,
            build_type=code_set.build_type,
            build_parameters=code_set.build_parameters or BuildParameters(),
        )
