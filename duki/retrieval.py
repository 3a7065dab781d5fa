"""Hybrid retrieval: cosine similarity plus an exact-identifier bonus.

Short numeric product codes compress poorly in embedding space, so a literal
sticky-entity match in the top-K ("entity lock") outranks a marginal similarity
score when deciding whether the context can ground an answer.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, FrozenSet, Iterable, List, Optional, Sequence

import numpy as np

from .corpus import CorpusSnapshot, EmbeddingMatrix, KnowledgeEntry
from .entities import ModelTokenIndex, count_entity_matches, entity_in_text, matchable_text
from .errors import CorpusUnavailableError
from .utils import normalize_text

logger = logging.getLogger("duki.retrieval")

MAX_ENTITY_MATCHES = 3
WHOLE_WORD_CREDIT = 1.0
PARTIAL_CREDIT = 0.25


@dataclass
class Candidate:
    """Ranked view of a knowledge entry for one retrieval call."""
    entry: KnowledgeEntry
    similarity: float
    keyword_bonus: float = 0.0
    composite_score: float = 0.0

    @property
    def text(self) -> str:
        return self.entry.display_text


@dataclass
class RetrievalResult:
    """Top candidates and the passability decision."""
    candidates: List[Candidate] = field(default_factory=list)
    passable: bool = False
    reason: str = "no_match"
    entity_lock: bool = False
    used_fallback: bool = False

    @property
    def top_score(self) -> float:
        return self.candidates[0].composite_score if self.candidates else 0.0


def cosine_scores(query_vector: Sequence[float], matrix: EmbeddingMatrix) -> np.ndarray:
    """Purpose: Cosine similarity of one query against every corpus row at once.
    Inputs/Outputs: Inputs are the query vector and the snapshot's EmbeddingMatrix;
        output is one float per row, in corpus order.
    Side Effects / State: None.
    Dependencies: numpy matrix-vector product over the precomputed matrix.
    Failure Modes: Each pair is compared over the shorter of the two lengths, so
        malformed corpus vectors do not raise; zero magnitude scores 0.0.
    If Removed: Vector ranking is impossible.
    Testing Notes: Identical vectors -> 1.0; [1,0] vs [0,1] -> 0.0; [0,0] vs x -> 0.0.
    """
    query = np.asarray(query_vector, dtype=np.float64)
    rows = matrix.vectors.shape[0]
    n = min(query.shape[0], matrix.width)
    if n == 0:
        return np.zeros(rows)
    query = query[:n]
    dots = matrix.vectors[:, :n] @ query
    # Padding is zero, so the first n columns hold each row's shorter-length prefix.
    row_norms = matrix.norms if n == matrix.width else np.linalg.norm(matrix.vectors[:, :n], axis=1)
    query_sq = np.concatenate(([0.0], np.cumsum(query * query)))
    query_norms = np.sqrt(query_sq[np.minimum(matrix.lengths, n)])
    denom = row_norms * query_norms
    scores = np.zeros(rows)
    np.divide(dots, denom, out=scores, where=denom > 0)
    return scores


def rank_candidates(
    query_vector: Sequence[float],
    snapshot: CorpusSnapshot,
    sticky: Iterable[str],
    index: ModelTokenIndex,
    hybrid_bonus: float,
) -> List[Candidate]:
    """Purpose: Score every entry by similarity plus the sticky-entity bonus.
    Inputs/Outputs: Inputs are query vector, corpus snapshot, sticky set, index, bonus weight;
        output is all candidates sorted by composite score, descending.
    Side Effects / State: None.
    Dependencies: Uses cosine_scores and count_entity_matches.
    Failure Modes: None; entries keep corpus order on ties (stable sort).
    If Removed: Hybrid retrieval collapses to nothing.
    Testing Notes: An entry naming the sticky model outranks a slightly closer vector.
    """
    sticky_list = sorted(set(sticky))
    similarities = cosine_scores(query_vector, snapshot.matrix)
    candidates: List[Candidate] = []
    for entry, similarity in zip(snapshot.entries, similarities.tolist()):
        bonus = 0.0
        if sticky_list:
            matches = count_entity_matches(sticky_list, index, f"{entry.raw_text}\n{entry.cleaned_text}")
            if matches:
                bonus = hybrid_bonus * min(matches, MAX_ENTITY_MATCHES)
        candidates.append(
            Candidate(
                entry=entry,
                similarity=similarity,
                keyword_bonus=bonus,
                composite_score=similarity + bonus,
            )
        )
    candidates.sort(key=lambda c: c.composite_score, reverse=True)
    return candidates


def has_entity_lock(candidates: Sequence[Candidate], sticky: Iterable[str], index: ModelTokenIndex) -> bool:
    # Any sticky alias literally present in any of the given candidates.
    sticky_list = list(sticky)
    if not sticky_list:
        return False
    for candidate in candidates:
        haystack = matchable_text(f"{candidate.entry.raw_text}\n{candidate.entry.cleaned_text}")
        for entity in sticky_list:
            if entity_in_text(index.aliases_for(entity), haystack):
                return True
    return False


def lexical_score(text: str, keywords: Sequence[str]) -> float:
    """Purpose: Keyword score used by the category fallback.
    Inputs/Outputs: Inputs are entry text and category keywords; output is a float.
    Side Effects / State: None.
    Dependencies: Uses normalize_text.
    Failure Modes: Empty keyword list scores 0.
    If Removed: Broad category questions with a diffuse embedding fail to retrieve.
    Testing Notes: "embroidery machine" vs ["embroidery"] -> 1.0; vs ["embroider"] -> 0.25.
    """
    # Whole-word hits count fully; substring-only hits get partial credit.
    normalized = normalize_text(text)
    score = 0.0
    for keyword in keywords:
        needle = normalize_text(keyword)
        if not needle:
            continue
        whole = re.findall(rf"(?<![a-z0-9]){re.escape(needle)}(?![a-z0-9])", normalized)
        if whole:
            score += WHOLE_WORD_CREDIT * len(whole)
        elif needle in normalized:
            score += PARTIAL_CREDIT
    return score


class HybridRetriever:
    """Select top-K entries and decide whether they can ground an answer."""

    def __init__(
        self,
        corpus: Callable[[], CorpusSnapshot],
        index: Callable[[], ModelTokenIndex],
        top_k: int = 6,
        min_ok_score: float = 0.18,
        margin: float = 0.03,
        hybrid_bonus: float = 0.12,
    ) -> None:
        self._corpus = corpus
        self._index = index
        self._top_k = top_k
        self._min_ok_score = min_ok_score
        self._margin = margin
        self._hybrid_bonus = hybrid_bonus

    @property
    def threshold(self) -> float:
        return self._min_ok_score - self._margin

    def retrieve(
        self,
        query_vector: Sequence[float],
        sticky: FrozenSet[str] = frozenset(),
        category_keywords: Optional[Sequence[str]] = None,
    ) -> RetrievalResult:
        """Purpose: Run hybrid ranking, the passability gate, and the category fallback.
        Inputs/Outputs: Inputs are the query vector, sticky entities, and the detected
            category's keywords; output is a RetrievalResult.
        Side Effects / State: Builds the token index on first use; logs the decision.
        Dependencies: Uses rank_candidates, has_entity_lock, and lexical_score.
        Failure Modes: Raises CorpusUnavailableError on an empty corpus and ValueError on
            an empty query vector (callers must not rank with a zero vector).
        If Removed: The pipeline cannot ground any answer.
        Testing Notes: Low similarity plus an exact model match still passes.
        """
        snapshot = self._corpus()
        if snapshot.is_empty:
            raise CorpusUnavailableError("Knowledge base has no entries")
        if not query_vector:
            raise ValueError("query vector is empty")

        index = self._index()
        ranked = rank_candidates(query_vector, snapshot, sticky, index, self._hybrid_bonus)
        top = ranked[: self._top_k]
        result = RetrievalResult(candidates=top)

        if top and top[0].composite_score >= self.threshold:
            result.passable = True
            result.reason = "score"
        if top and has_entity_lock(top, sticky, index):
            result.entity_lock = True
            if not result.passable:
                result.passable = True
                result.reason = "entity_lock"

        if not result.passable and category_keywords:
            fallback = self._lexical_fallback(snapshot.entries, category_keywords)
            if fallback:
                result = RetrievalResult(
                    candidates=fallback,
                    passable=True,
                    reason="category_fallback",
                    used_fallback=True,
                )

        logger.info(
            "retrieval passable=%s reason=%s top=%.3f lock=%s sticky=%s",
            result.passable,
            result.reason,
            result.top_score,
            result.entity_lock,
            sorted(sticky),
        )
        return result

    def _lexical_fallback(self, entries: Sequence[KnowledgeEntry], keywords: Sequence[str]) -> List[Candidate]:
        # Re-rank the entire corpus by keyword score; similarity is not available here.
        scored: List[Candidate] = []
        for entry in entries:
            score = lexical_score(f"{entry.raw_text}\n{entry.cleaned_text}", keywords)
            if score > 0:
                scored.append(Candidate(entry=entry, similarity=0.0, keyword_bonus=score, composite_score=score))
        scored.sort(key=lambda c: c.composite_score, reverse=True)
        return scored[: self._top_k]
