# Copyright (c) 2025-2026 Gowtham Adamane Rao. All Rights Reserved.
#
# Licensed under the Prosperity Public License 3.0.0 (the "License").
# You may not use this file except in compliance with the License.
# You may obtain a copy of the License in the LICENSE file at the root
# of this repository, or at: https://prosperitylicense.com/versions/3.0.0
#
# Commercial use beyond a 30-day trial requires a separate license.
import csv
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Set, TypeVar

from pydantic import ValidationError
from rich.console import Console
from rich.progress import BarColumn, Progress, TextColumn, TimeElapsedColumn

from .config import settings
from .models import AncestorEdge, Concept, ParsedVocabulary, Relationship

console = Console()

T = TypeVar("T")

# Athena vocabulary exports: https://athena.ohdsi.org/
CONCEPT_FILE = "CONCEPT.csv"
CONCEPT_RELATIONSHIP_FILE = "CONCEPT_RELATIONSHIP.csv"
CONCEPT_ANCESTOR_FILE = "CONCEPT_ANCESTOR.csv"


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _concept_from_row(row: Dict[str, str]) -> Concept:
    return Concept(
        concept_id=int(row["concept_id"]),
        concept_code=row["concept_code"],
        concept_name=row["concept_name"],
        vocabulary_id=row["vocabulary_id"],
        domain_id=row["domain_id"],
        concept_class_id=row["concept_class_id"],
        standard_concept=_blank_to_none(row.get("standard_concept")),
        invalid_reason=_blank_to_none(row.get("invalid_reason")),
    )


def _relationship_from_row(row: Dict[str, str]) -> Relationship:
    return Relationship(
        concept_id_1=int(row["concept_id_1"]),
        concept_id_2=int(row["concept_id_2"]),
        relationship_id=row["relationship_id"],
        invalid_reason=_blank_to_none(row.get("invalid_reason")),
    )


def _ancestor_from_row(row: Dict[str, str]) -> AncestorEdge:
    max_sep = _blank_to_none(row.get("max_levels_of_separation"))
    return AncestorEdge(
        ancestor_concept_id=int(row["ancestor_concept_id"]),
        descendant_concept_id=int(row["descendant_concept_id"]),
        min_levels_of_separation=int(row["min_levels_of_separation"]),
        max_levels_of_separation=int(max_sep) if max_sep is not None else None,
    )


class AthenaParser:
    """Parses tab-delimited Athena vocabulary files into Pydantic models."""

    def __init__(self, vocab_dir: Path, vocabulary_filter: Optional[List[str]] = None):
        self.vocab_dir = Path(vocab_dir)
        self.vocabulary_filter: Set[str] = set(vocabulary_filter or settings.vocabulary_filter)
        self.concept_path = self.vocab_dir / CONCEPT_FILE
        self.relationship_path = self.vocab_dir / CONCEPT_RELATIONSHIP_FILE
        self.ancestor_path = self.vocab_dir / CONCEPT_ANCESTOR_FILE

    def _read_rows(self, path: Path, convert: Callable[[Dict[str, str]], T]) -> Iterator[T]:
        """Yields converted rows of one Athena file, skipping rows that cannot be converted."""
        skipped = 0
        with open(path, "r", encoding="utf-8", newline="") as f:
            # Athena files are unquoted; concept names may contain quote characters
            reader = csv.DictReader(f, delimiter="\t", quotechar="\x00")
            for row in reader:
                try:
                    yield convert(row)
                except (KeyError, TypeError, ValueError, ValidationError):
                    skipped += 1
        if skipped:
            console.log(f"[yellow]Skipped {skipped} malformed rows in {path.name}.[/yellow]")

    def parse_concepts(self) -> Dict[int, Concept]:
        console.log(f"Parsing {CONCEPT_FILE}...")
        concepts = {
            concept.concept_id: concept
            for concept in self._read_rows(self.concept_path, _concept_from_row)
            if concept.vocabulary_id in self.vocabulary_filter
        }
        console.log(f"Parsed {len(concepts)} concepts.")
        return concepts

    def parse_relationships(self, known_ids: Set[int]) -> List[Relationship]:
        console.log(f"Parsing {CONCEPT_RELATIONSHIP_FILE}...")
        if not self.relationship_path.exists():
            console.log(f"[yellow]{CONCEPT_RELATIONSHIP_FILE} not found. No relationships will be loaded.[/yellow]")
            return []
        return [
            rel for rel in self._read_rows(self.relationship_path, _relationship_from_row)
            if rel.concept_id_1 in known_ids and rel.concept_id_2 in known_ids
        ]

    def parse_ancestors(self, known_ids: Set[int]) -> List[AncestorEdge]:
        console.log(f"Parsing {CONCEPT_ANCESTOR_FILE}...")
        if not self.ancestor_path.exists():
            console.log(f"[yellow]{CONCEPT_ANCESTOR_FILE} not found. No hierarchy will be loaded.[/yellow]")
            return []
        return [
            edge for edge in self._read_rows(self.ancestor_path, _ancestor_from_row)
            if edge.ancestor_concept_id in known_ids and edge.descendant_concept_id in known_ids
        ]

    def parse_files(self) -> ParsedVocabulary:
        """
        Parses all Athena files. Relationships and ancestor edges are only kept
        when both of their endpoints are concepts in the vocabulary filter.
        """
        if not self.concept_path.exists():
            raise FileNotFoundError(f"{CONCEPT_FILE} not found in {self.vocab_dir}")

        with Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            "[progress.percentage]{task.percentage:>3.0f}%",
            TimeElapsedColumn(),
        ) as progress:
            task = progress.add_task("Parsing Athena vocabulary...", total=3)
            concepts = self.parse_concepts()
            progress.update(task, advance=1)
            known_ids = set(concepts)
            relationships = self.parse_relationships(known_ids)
            progress.update(task, advance=1)
            ancestors = self.parse_ancestors(known_ids)
            progress.update(task, advance=1)

        console.log(
            f"Filtered to {len(relationships)} relationships and {len(ancestors)} ancestor edges between known concepts."
        )
        return ParsedVocabulary(concepts=concepts, relationships=relationships, ancestors=ancestors)
