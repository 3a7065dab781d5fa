"""
Tests for hybrid ranking, the entity lock, and the lexical category fallback.
"""

import pytest

from duki.corpus import CorpusSnapshot, EmbeddingMatrix
from duki.entities import EntityIndexer, build_model_token_index
from duki.errors import CorpusUnavailableError
from duki.retrieval import HybridRetriever, cosine_scores, lexical_score, rank_candidates

from conftest import CORPUS_ENTRIES, make_entry


def make_retriever(entries=CORPUS_ENTRIES, top_k=3):
    snapshot = CorpusSnapshot.from_entries(entries)
    indexer = EntityIndexer(lambda: snapshot)
    retriever = HybridRetriever(lambda: snapshot, indexer.get_index, top_k=top_k, min_ok_score=0.18, margin=0.03)
    return retriever, indexer


def scores_against(query, *vectors):
    entries = [make_entry(f"v{n}", "text", vector, n) for n, vector in enumerate(vectors)]
    return cosine_scores(query, EmbeddingMatrix.from_entries(entries)).tolist()


class TestCosineScores:

    def test_identical_vectors(self):
        assert scores_against([1.0, 2.0], [1.0, 2.0]) == [pytest.approx(1.0)]

    def test_orthogonal_vectors(self):
        assert scores_against([1.0, 0.0], [0.0, 1.0]) == [0.0]

    def test_zero_vector_is_zero_not_error(self):
        assert scores_against([0.0, 0.0], [1.0, 1.0]) == [0.0]
        assert scores_against([1.0, 1.0], [0.0, 0.0]) == [0.0]

    def test_longer_query_uses_shorter_prefix(self):
        assert scores_against([1.0, 0.0, 5.0], [1.0, 0.0]) == [pytest.approx(1.0)]

    def test_longer_row_uses_shorter_prefix(self):
        assert scores_against([0.0, 1.0], [0.0, 1.0, 7.0]) == [pytest.approx(1.0)]

    def test_rows_of_mixed_length_score_independently(self):
        scores = scores_against([1.0, 1.0, 1.0], [1.0, 1.0], [1.0, 1.0, 1.0], [2.0, 0.0, 0.0])
        assert scores == [pytest.approx(1.0), pytest.approx(1.0), pytest.approx(3 ** -0.5)]

    def test_snapshot_matrix_follows_corpus_order(self):
        snapshot = CorpusSnapshot.from_entries(CORPUS_ENTRIES)
        assert snapshot.matrix.vectors.shape == (4, 3)
        assert cosine_scores([0.0, 0.0, 1.0], snapshot.matrix).argmax() == 2


class TestRanking:

    def test_entity_bonus_outranks_slightly_closer_vector(self):
        index = build_model_token_index(CORPUS_ENTRIES)
        snapshot = CorpusSnapshot.from_entries(CORPUS_ENTRIES)
        ranked = rank_candidates([0.9, 1.0, -1.0], snapshot, {"dy-1201"}, index, hybrid_bonus=0.12)
        assert ranked[0].entry.id == "e1"
        assert ranked[0].keyword_bonus == pytest.approx(0.12)

    def test_bonus_is_capped_at_three_entities(self):
        entry = make_entry("multi", "DY-1 DY-2 DY-3 DY-4 comparison", [1.0, 0.0, 0.0])
        index = build_model_token_index([entry])
        snapshot = CorpusSnapshot.from_entries([entry])
        ranked = rank_candidates([1.0, 0.0, 0.0], snapshot, {"dy-1", "dy-2", "dy-3", "dy-4"}, index, 0.12)
        assert ranked[0].keyword_bonus == pytest.approx(0.36)

    def test_ties_keep_corpus_order(self):
        index = build_model_token_index(CORPUS_ENTRIES)
        snapshot = CorpusSnapshot.from_entries(CORPUS_ENTRIES)
        ranked = rank_candidates([0.0, 0.0, 0.0], snapshot, set(), index, 0.12)
        assert [c.entry.id for c in ranked] == ["e1", "e2", "e3", "e4"]


class TestHybridRetriever:

    def test_passes_on_score(self):
        retriever, _ = make_retriever()
        result = retriever.retrieve([1.0, 0.0, 0.0])
        assert result.passable
        assert result.reason == "score"
        assert result.candidates[0].entry.id == "e1"
        assert len(result.candidates) == 3

    def test_entity_lock_passes_low_similarity(self):
        retriever, indexer = make_retriever()
        sticky = indexer.extract("cs3000 price")
        result = retriever.retrieve([-1.0, 0.01, -1.0], sticky)
        assert result.top_score < retriever.threshold
        assert result.passable
        assert result.entity_lock
        assert result.reason == "entity_lock"
        assert result.candidates[0].entry.id == "e2"

    def test_low_score_without_entities_is_not_passable(self):
        retriever, _ = make_retriever()
        result = retriever.retrieve([-1.0, 0.01, -1.0])
        assert not result.passable
        assert result.reason == "no_match"

    def test_category_fallback_uses_keywords(self):
        retriever, _ = make_retriever()
        result = retriever.retrieve([-1.0, -1.0, -1.0], frozenset(), ["quilting", "mattress"])
        assert result.passable
        assert result.used_fallback
        assert result.reason == "category_fallback"
        assert [c.entry.id for c in result.candidates] == ["e3"]

    def test_category_fallback_with_no_hits_stays_unpassable(self):
        retriever, _ = make_retriever()
        result = retriever.retrieve([-1.0, -1.0, -1.0], frozenset(), ["perforation"])
        assert not result.passable

    def test_empty_corpus_is_unavailable_not_no_match(self):
        retriever, _ = make_retriever(entries=[])
        with pytest.raises(CorpusUnavailableError):
            retriever.retrieve([1.0, 0.0, 0.0])

    def test_empty_query_vector_is_rejected(self):
        retriever, _ = make_retriever()
        with pytest.raises(ValueError):
            retriever.retrieve([])


class TestLexicalScore:

    def test_whole_word_counts_fully(self):
        assert lexical_score("Quilting machine for quilting studios", ["quilting"]) == pytest.approx(2.0)

    def test_partial_match_gets_partial_credit(self):
        assert lexical_score("embroidery machine", ["embroider"]) == pytest.approx(0.25)

    def test_no_keywords(self):
        assert lexical_score("anything", []) == 0.0
