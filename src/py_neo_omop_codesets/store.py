# Copyright (c) 2025-2026 Gowtham Adamane Rao. All Rights Reserved.
#
# Licensed under the Prosperity Public License 3.0.0 (the "License").
# You may not use this file except in compliance with the License.
# You may obtain a copy of the License in the LICENSE file at the root
# of this repository, or at: https://prosperitylicense.com/versions/3.0.0
#
# Commercial use beyond a 30-day trial requires a separate license.
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from neo4j import Driver
from neo4j.exceptions import DriverError, Neo4jError
from rich.console import Console

from .errors import UpstreamError
from .models import AncestorEdge, Concept, ParsedVocabulary, Relationship

console = Console()

# (anchor-side concept id, relationship_id, concept on the other side of the edge)
RelatedConcept = Tuple[int, str, Concept]


class VocabularyStore(ABC):
    """
    Read-only access to the vocabulary graph.

    Every method ignores invalid concepts and invalid relationships, so callers
    never see tombstoned data.
    """

    @abstractmethod
    def get_concepts(self, concept_ids: Iterable[int]) -> Dict[int, Concept]:
        """Looks up concepts by id. Unknown ids are absent from the result."""

    @abstractmethod
    def find_concepts(
        self, term: str, domain_id: Optional[str], vocabulary_ids: Sequence[str], limit: int
    ) -> List[Concept]:
        """
        Finds concepts whose id, code or name contains `term` (case-insensitive),
        restricted to a domain (None for any) and a vocabulary list. Candidates
        are ordered by exact id match, exact code match, name length proximity
        and name before `limit` is applied.
        """

    @abstractmethod
    def related_concepts(self, concept_ids: Iterable[int], relationship_ids: Sequence[str]) -> List[RelatedConcept]:
        """Follows outgoing edges: returns (concept_id_1, relationship_id, target concept)."""

    @abstractmethod
    def reverse_related_concepts(
        self, concept_ids: Iterable[int], relationship_ids: Sequence[str]
    ) -> List[RelatedConcept]:
        """Follows incoming edges: returns (concept_id_2, relationship_id, source concept)."""

    @abstractmethod
    def ancestor_edges(self, concept_ids: Iterable[int]) -> List[Tuple[AncestorEdge, Concept]]:
        """Returns every ancestor edge of the given descendants, paired with the ancestor concept."""

    @abstractmethod
    def descendant_edges(self, concept_ids: Iterable[int]) -> List[Tuple[AncestorEdge, Concept]]:
        """Returns every descendant edge of the given ancestors, paired with the descendant concept."""

    def close(self):
        """Releases any resources held by the store."""


def _rank_candidates(candidates: List[Concept], term: str) -> List[Concept]:
    term_upper = term.upper()
    return sorted(candidates, key=lambda c: (
        str(c.concept_id) != term,
        c.concept_code.upper() != term_upper,
        abs(len(c.concept_name) - len(term)),
        c.concept_name,
    ))


class InMemoryVocabularyStore(VocabularyStore):
    """
    Serves a vocabulary held in memory, typically parsed from Athena files.
    Indexes are built once at construction and never modified.
    """

    def __init__(
        self,
        concepts: Iterable[Concept],
        relationships: Iterable[Relationship] = (),
        ancestors: Iterable[AncestorEdge] = (),
    ):
        self._concepts: Dict[int, Concept] = {c.concept_id: c for c in concepts}
        self._outgoing: Dict[int, List[Relationship]] = defaultdict(list)
        self._incoming: Dict[int, List[Relationship]] = defaultdict(list)
        for rel in relationships:
            if rel.invalid_reason:
                continue
            self._outgoing[rel.concept_id_1].append(rel)
            self._incoming[rel.concept_id_2].append(rel)
        self._by_descendant: Dict[int, List[AncestorEdge]] = defaultdict(list)
        self._by_ancestor: Dict[int, List[AncestorEdge]] = defaultdict(list)
        for edge in ancestors:
            self._by_descendant[edge.descendant_concept_id].append(edge)
            self._by_ancestor[edge.ancestor_concept_id].append(edge)

    @classmethod
    def from_parsed(cls, parsed: ParsedVocabulary) -> "InMemoryVocabularyStore":
        return cls(parsed.concepts.values(), parsed.relationships, parsed.ancestors)

    def _valid(self, concept_id: int) -> Optional[Concept]:
        concept = self._concepts.get(concept_id)
        if concept is None or not concept.is_valid:
            return None
        return concept

    def get_concepts(self, concept_ids: Iterable[int]) -> Dict[int, Concept]:
        found = {}
        for concept_id in concept_ids:
            concept = self._valid(concept_id)
            if concept is not None:
                found[concept_id] = concept
        return found

    def find_concepts(
        self, term: str, domain_id: Optional[str], vocabulary_ids: Sequence[str], limit: int
    ) -> List[Concept]:
        term_upper = term.upper()
        vocabularies = set(vocabulary_ids)
        candidates = [
            c for c in self._concepts.values()
            if c.is_valid
            and (domain_id is None or c.domain_id == domain_id)
            and c.vocabulary_id in vocabularies
            and (
                term in str(c.concept_id)
                or term_upper in c.concept_code.upper()
                or term_upper in c.concept_name.upper()
            )
        ]
        return _rank_candidates(candidates, term)[:limit]

    def _follow(self, index: Dict[int, List[Relationship]], concept_ids: Iterable[int],
                relationship_ids: Sequence[str], outgoing: bool) -> List[RelatedConcept]:
        wanted = set(relationship_ids)
        results = []
        for concept_id in dict.fromkeys(concept_ids):
            for rel in index.get(concept_id, []):
                if rel.relationship_id not in wanted:
                    continue
                other = self._valid(rel.concept_id_2 if outgoing else rel.concept_id_1)
                if other is not None:
                    results.append((concept_id, rel.relationship_id, other))
        return results

    def related_concepts(self, concept_ids: Iterable[int], relationship_ids: Sequence[str]) -> List[RelatedConcept]:
        return self._follow(self._outgoing, concept_ids, relationship_ids, outgoing=True)

    def reverse_related_concepts(
        self, concept_ids: Iterable[int], relationship_ids: Sequence[str]
    ) -> List[RelatedConcept]:
        return self._follow(self._incoming, concept_ids, relationship_ids, outgoing=False)

    def ancestor_edges(self, concept_ids: Iterable[int]) -> List[Tuple[AncestorEdge, Concept]]:
        results = []
        for concept_id in dict.fromkeys(concept_ids):
            for edge in self._by_descendant.get(concept_id, []):
                ancestor = self._valid(edge.ancestor_concept_id)
                if ancestor is not None:
                    results.append((edge, ancestor))
        return results

    def descendant_edges(self, concept_ids: Iterable[int]) -> List[Tuple[AncestorEdge, Concept]]:
        results = []
        for concept_id in dict.fromkeys(concept_ids):
            for edge in self._by_ancestor.get(concept_id, []):
                descendant = self._valid(edge.descendant_concept_id)
                if descendant is not None:
                    results.append((edge, descendant))
        return results


def run_query(driver: Driver, database: str, query: str, params: Optional[dict] = None) -> List[Any]:
    """Runs a query and returns its records, converting driver failures into UpstreamError."""
    try:
        records, _, _ = driver.execute_query(query, parameters_=params or {}, database_=database)
    except (Neo4jError, DriverError) as e:
        raise UpstreamError(f"Neo4j query failed: {e}") from e
    return records


def _concept_from_node(node) -> Concept:
    return Concept.model_validate(dict(node))


class Neo4jVocabularyStore(VocabularyStore):
    """
    Serves the vocabulary from Neo4j as written by Neo4jLoader:
    (:Concept) nodes, [:RELATES_TO {relationship_id}] edges and
    [:ANCESTOR_OF {min_levels_of_separation}] edges.
    """

    def __init__(self, driver: Driver, database: str = "neo4j", owns_driver: bool = False):
        self.driver = driver
        self.database = database
        self._owns_driver = owns_driver

    def _run(self, query: str, params: Optional[dict] = None) -> List[Any]:
        return run_query(self.driver, self.database, query, params)

    def get_concepts(self, concept_ids: Iterable[int]) -> Dict[int, Concept]:
        ids = [int(i) for i in dict.fromkeys(concept_ids)]
        if not ids:
            return {}
        records = self._run(
            """
            MATCH (c:Concept)
            WHERE c.concept_id IN $ids AND coalesce(c.invalid_reason, '') = ''
            RETURN c
            """,
            {"ids": ids},
        )
        concepts = [_concept_from_node(record["c"]) for record in records]
        return {c.concept_id: c for c in concepts}

    def find_concepts(
        self, term: str, domain_id: Optional[str], vocabulary_ids: Sequence[str], limit: int
    ) -> List[Concept]:
        records = self._run(
            """
            MATCH (c:Concept)
            WHERE ($domain_id IS NULL OR c.domain_id = $domain_id)
              AND c.vocabulary_id IN $vocabulary_ids
              AND coalesce(c.invalid_reason, '') = ''
              AND (
                toString(c.concept_id) CONTAINS $term
                OR toUpper(c.concept_code) CONTAINS $term_upper
                OR toUpper(c.concept_name) CONTAINS $term_upper
              )
            RETURN c
            ORDER BY
              CASE WHEN toString(c.concept_id) = $term THEN 0 ELSE 1 END,
              CASE WHEN toUpper(c.concept_code) = $term_upper THEN 0 ELSE 1 END,
              abs(size(c.concept_name) - size($term)),
              c.concept_name
            LIMIT $limit
            """,
            {
                "term": term,
                "term_upper": term.upper(),
                "domain_id": domain_id,
                "vocabulary_ids": list(vocabulary_ids),
                "limit": int(limit),
            },
        )
        return [_concept_from_node(record["c"]) for record in records]

    def related_concepts(self, concept_ids: Iterable[int], relationship_ids: Sequence[str]) -> List[RelatedConcept]:
        ids = [int(i) for i in dict.fromkeys(concept_ids)]
        if not ids:
            return []
        records = self._run(
            """
            MATCH (s:Concept)-[r:RELATES_TO]->(t:Concept)
            WHERE s.concept_id IN $ids
              AND r.relationship_id IN $relationship_ids
              AND coalesce(r.invalid_reason, '') = ''
              AND coalesce(t.invalid_reason, '') = ''
            RETURN s.concept_id AS concept_id, r.relationship_id AS relationship_id, t AS other
            """,
            {"ids": ids, "relationship_ids": list(relationship_ids)},
        )
        return [(r["concept_id"], r["relationship_id"], _concept_from_node(r["other"])) for r in records]

    def reverse_related_concepts(
        self, concept_ids: Iterable[int], relationship_ids: Sequence[str]
    ) -> List[RelatedConcept]:
        ids = [int(i) for i in dict.fromkeys(concept_ids)]
        if not ids:
            return []
        records = self._run(
            """
            MATCH (s:Concept)-[r:RELATES_TO]->(t:Concept)
            WHERE t.concept_id IN $ids
              AND r.relationship_id IN $relationship_ids
              AND coalesce(r.invalid_reason, '') = ''
              AND coalesce(s.invalid_reason, '') = ''
            RETURN t.concept_id AS concept_id, r.relationship_id AS relationship_id, s AS other
            """,
            {"ids": ids, "relationship_ids": list(relationship_ids)},
        )
        return [(r["concept_id"], r["relationship_id"], _concept_from_node(r["other"])) for r in records]

    def _edges(self, query: str, concept_ids: Iterable[int]) -> List[Tuple[AncestorEdge, Concept]]:
        ids = [int(i) for i in dict.fromkeys(concept_ids)]
        if not ids:
            return []
        records = self._run(query, {"ids": ids})
        results = []
        for record in records:
            edge = AncestorEdge(
                ancestor_concept_id=record["ancestor_id"],
                descendant_concept_id=record["descendant_id"],
                min_levels_of_separation=record["min_sep"],
                max_levels_of_separation=record["max_sep"],
            )
            results.append((edge, _concept_from_node(record["other"])))
        return results

    def ancestor_edges(self, concept_ids: Iterable[int]) -> List[Tuple[AncestorEdge, Concept]]:
        return self._edges(
            """
            MATCH (a:Concept)-[e:ANCESTOR_OF]->(d:Concept)
            WHERE d.concept_id IN $ids AND coalesce(a.invalid_reason, '') = ''
            RETURN a.concept_id AS ancestor_id, d.concept_id AS descendant_id,
                   e.min_levels_of_separation AS min_sep, e.max_levels_of_separation AS max_sep,
                   a AS other
            """,
            concept_ids,
        )

    def descendant_edges(self, concept_ids: Iterable[int]) -> List[Tuple[AncestorEdge, Concept]]:
        return self._edges(
            """
            MATCH (a:Concept)-[e:ANCESTOR_OF]->(d:Concept)
            WHERE a.concept_id IN $ids AND coalesce(d.invalid_reason, '') = ''
            RETURN a.concept_id AS ancestor_id, d.concept_id AS descendant_id,
                   e.min_levels_of_separation AS min_sep, e.max_levels_of_separation AS max_sep,
                   d AS other
            """,
            concept_ids,
        )

    def close(self):
        if self._owns_driver:
            self.driver.close()


class FallbackVocabularyStore(VocabularyStore):
    """
    Wraps a primary store with an equivalent fallback store.

    A call that fails on the primary with an UpstreamError is logged and
    repeated once on the fallback; if that fails too the error surfaces.
    Any other exception propagates untouched.
    """

    def __init__(self, primary: VocabularyStore, fallback: VocabularyStore):
        self.primary = primary
        self.fallback = fallback

    def _call(self, method_name: str, *args):
        try:
            return getattr(self.primary, method_name)(*args)
        except UpstreamError as e:
            console.log(f"[yellow]Primary vocabulary store failed on {method_name} ({e}). Retrying on fallback store.[/yellow]")
        try:
            return getattr(self.fallback, method_name)(*args)
        except UpstreamError as e:
            console.log(f"[bold red]Fallback vocabulary store failed on {method_name}.[/bold red]")
            raise UpstreamError(f"Primary and fallback vocabulary stores both failed on {method_name}: {e}") from e

    def get_concepts(self, concept_ids: Iterable[int]) -> Dict[int, Concept]:
        return self._call("get_concepts", list(concept_ids))

    def find_concepts(
        self, term: str, domain_id: Optional[str], vocabulary_ids: Sequence[str], limit: int
    ) -> List[Concept]:
        return self._call("find_concepts", term, domain_id, vocabulary_ids, limit)

    def related_concepts(self, concept_ids: Iterable[int], relationship_ids: Sequence[str]) -> List[RelatedConcept]:
        return self._call("related_concepts", list(concept_ids), relationship_ids)

    def reverse_related_concepts(
        self, concept_ids: Iterable[int], relationship_ids: Sequence[str]
    ) -> List[RelatedConcept]:
        return self._call("reverse_related_concepts", list(concept_ids), relationship_ids)

    def ancestor_edges(self, concept_ids: Iterable[int]) -> List[Tuple[AncestorEdge, Concept]]:
        return self._call("ancestor_edges", list(concept_ids))

    def descendant_edges(self, concept_ids: Iterable[int]) -> List[Tuple[AncestorEdge, Concept]]:
        return self._call("descendant_edges", list(concept_ids))

    def close(self):
        self.primary.close()
        self.fallback.close()
