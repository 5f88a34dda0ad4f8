# Copyright (c) 2025-2026 Gowtham Adamane Rao. All Rights Reserved.
#
# Licensed under the Prosperity Public License 3.0.0 (the "License").
# You may not use this file except in compliance with the License.
# You may obtain a copy of the License in the LICENSE file at the root
# of this repository, or at: https://prosperitylicense.com/versions/3.0.0
#
# Commercial use beyond a 30-day trial requires a separate license.
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

from neo4j import Driver
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, TextColumn, TimeElapsedColumn

from .config import settings
from .models import ParsedVocabulary
from .parser import AthenaParser
from .store import run_query

console = Console()

CONCEPT_QUERY = """
UNWIND $rows AS row
MERGE (c:Concept {concept_id: row.concept_id})
SET c.concept_code = row.concept_code,
    c.concept_name = row.concept_name,
    c.vocabulary_id = row.vocabulary_id,
    c.domain_id = row.domain_id,
    c.concept_class_id = row.concept_class_id,
    c.standard_concept = row.standard_concept,
    c.invalid_reason = row.invalid_reason
"""

RELATIONSHIP_QUERY = """
UNWIND $rows AS row
MATCH (s:Concept {concept_id: row.concept_id_1})
MATCH (t:Concept {concept_id: row.concept_id_2})
MERGE (s)-[r:RELATES_TO {relationship_id: row.relationship_id}]->(t)
SET r.invalid_reason = row.invalid_reason
"""

ANCESTOR_QUERY = """
UNWIND $rows AS row
MATCH (a:Concept {concept_id: row.ancestor_concept_id})
MATCH (d:Concept {concept_id: row.descendant_concept_id})
MERGE (a)-[e:ANCESTOR_OF]->(d)
SET e.min_levels_of_separation = row.min_levels_of_separation,
    e.max_levels_of_separation = row.max_levels_of_separation
"""


def _batches(rows: Sequence[Dict[str, Any]], size: int) -> Iterator[List[Dict[str, Any]]]:
    for start in range(0, len(rows), size):
        yield list(rows[start:start + size])


class Neo4jLoader:
    """
    Loads a parsed Athena vocabulary into Neo4j as (:Concept) nodes with
    RELATES_TO and ANCESTOR_OF edges. Loading is idempotent: reloading the same
    files updates nodes and edges in place.
    """

    def __init__(self, driver: Driver, database: Optional[str] = None, batch_size: Optional[int] = None):
        self.driver = driver
        self.database = database or settings.neo4j_database
        self.batch_size = batch_size or settings.load_batch_size

    def _run_query(self, query: str, params: Optional[dict] = None):
        return run_query(self.driver, self.database, query, params)

    def ensure_constraints(self):
        """Creates unique constraints for Concept and SavedCodeSet nodes."""
        console.log("Ensuring database constraints exist...")
        self._run_query("CREATE CONSTRAINT IF NOT EXISTS FOR (c:Concept) REQUIRE c.concept_id IS UNIQUE")
        self._run_query("CREATE CONSTRAINT IF NOT EXISTS FOR (s:SavedCodeSet) REQUIRE s.id IS UNIQUE")
        self._run_query("CREATE INDEX IF NOT EXISTS FOR (c:Concept) ON (c.domain_id, c.vocabulary_id)")
        console.log("[green]Constraints are in place.[/green]")

    def _load_batches(self, progress: Progress, description: str, query: str, rows: List[Dict[str, Any]]):
        task = progress.add_task(description, total=max(len(rows), 1))
        for batch in _batches(rows, self.batch_size):
            self._run_query(query, {"rows": batch})
            progress.update(task, advance=len(batch))
        if not rows:
            progress.update(task, advance=1)

    def load(self, vocabulary: ParsedVocabulary) -> Dict[str, int]:
        """Writes concepts, then relationships and ancestor edges. Returns the number of rows written per kind."""
        self.ensure_constraints()

        concept_rows = [c.model_dump() for c in vocabulary.concepts.values()]
        relationship_rows = [r.model_dump() for r in vocabulary.relationships]
        ancestor_rows = [a.model_dump() for a in vocabulary.ancestors]

        with Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            "[progress.percentage]{task.percentage:>3.0f}%",
            TimeElapsedColumn(),
        ) as progress:
            self._load_batches(progress, "Loading concepts...", CONCEPT_QUERY, concept_rows)
            self._load_batches(progress, "Loading relationships...", RELATIONSHIP_QUERY, relationship_rows)
            self._load_batches(progress, "Loading ancestor edges...", ANCESTOR_QUERY, ancestor_rows)

        counts = {
            "concepts": len(concept_rows),
            "relationships": len(relationship_rows),
            "ancestors": len(ancestor_rows),
        }
        console.log(f"[green]Loaded {counts['concepts']} concepts, {counts['relationships']} relationships "
                    f"and {counts['ancestors']} ancestor edges.[/green]")
        return counts

    def load_athena_directory(self, athena_dir: Path) -> Dict[str, int]:
        """Parses an Athena download directory and loads it."""
        console.print(Panel(f"[bold cyan]Loading Athena vocabulary from {athena_dir}[/bold cyan]", border_style="cyan"))
        vocabulary = AthenaParser(athena_dir).parse_files()
        return self.load(vocabulary)
