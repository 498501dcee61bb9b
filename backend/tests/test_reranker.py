"""
Tests for the hybrid re-ranker.

Covers term extraction, lexical scoring, MMR diversity selection and the
settings-driven configuration.
"""
import math

import pytest

from apps.rag.reranker import (
    RerankConfig,
    extract_query_terms,
    get_rerank_keep_n,
    jaccard_similarity,
    lexical_score,
    rerank_candidates,
    word_set,
)

from fakes import make_candidate

REVENUE = "Revenue grew to 4.2 million dollars in the third quarter."
COSTS = "Operating costs fell by ten percent after the consolidation."


# ============================================================================
# Lexical scoring
# ============================================================================

class TestQueryTerms:

    def test_short_terms_and_punctuation_dropped(self):
        assert extract_query_terms("What was Q3 revenue?") == ["what", "was", "revenue"]

    def test_empty_question(self):
        assert extract_query_terms("") == []


class TestLexicalScore:

    def test_no_matches_scores_zero(self):
        assert lexical_score("headcount changes", REVENUE) == 0.0

    def test_occurrences_are_weighted_by_term_length(self):
        score = lexical_score("revenue growth", "Revenue and more revenue")
        expected = 2 * (1 + math.log(1 + 7 / 5)) / 2
        assert score == pytest.approx(expected)

    def test_more_hits_score_higher(self):
        once = lexical_score("revenue", "revenue")
        twice = lexical_score("revenue", "revenue revenue")
        assert twice > once > 0


class TestJaccard:

    def test_identical_sets(self):
        assert jaccard_similarity(word_set("a b c"), word_set("C B A")) == 1.0

    def test_both_empty(self):
        assert jaccard_similarity(set(), set()) == 0.0

    def test_partial_overlap(self):
        assert jaccard_similarity({"a", "b"}, {"b", "c"}) == pytest.approx(1 / 3)


# ============================================================================
# Selection
# ============================================================================

class TestRerankCandidates:

    def test_empty_inputs(self):
        assert rerank_candidates("q", [], top_k=5)[0] == []
        assert rerank_candidates("q", [make_candidate(0.9)], top_k=0)[0] == []

    def test_keeps_at_most_top_k_with_scores(self):
        candidates = [make_candidate(0.9 - i * 0.05, text=f"chunk {i} text") for i in range(6)]

        selected, latency_ms = rerank_candidates("anything", candidates, top_k=3, config=RerankConfig())

        assert len(selected) == 3
        assert all(c.rerank_score is not None for c in selected)
        assert latency_ms >= 0

    def test_duplicate_chunk_ids_selected_once(self):
        first = make_candidate(0.9, chunk_id="same")
        second = make_candidate(0.8, chunk_id="same")

        selected, _ = rerank_candidates("revenue", [first, second], top_k=5, config=RerankConfig())

        assert selected == [first]

    def test_lexical_match_breaks_similarity_tie(self):
        plain = make_candidate(0.5, text="Headcount remained flat.")
        matching = make_candidate(0.5, text="Subscription revenue grew in Europe.")

        selected, _ = rerank_candidates(
            "What drove subscription revenue?", [plain, matching], top_k=2, config=RerankConfig()
        )

        assert selected[0] is matching
        assert matching.lexical_score > 0

    def test_near_duplicates_are_penalized(self):
        """A distinct chunk beats a slightly more similar copy of a chosen one."""
        original = make_candidate(0.90, text=REVENUE)
        duplicate = make_candidate(0.89, text=REVENUE)
        distinct = make_candidate(0.85, text=COSTS)

        selected, _ = rerank_candidates(
            "Tell me something", [original, duplicate, distinct], top_k=2, config=RerankConfig()
        )

        assert selected == [original, distinct]

    def test_ties_keep_input_order(self):
        first = make_candidate(0.5, text="alpha beta")
        second = make_candidate(0.5, text="gamma delta")

        selected, _ = rerank_candidates("zzz", [first, second], top_k=1, config=RerankConfig())

        assert selected == [first]

    def test_without_diversity_order_is_relevance_order(self):
        """With diversity switched off, selection is a stable sort by combined score."""
        question = "How did revenue and operating costs change?"
        candidates = [
            make_candidate(0.62, text=COSTS, chunk_id="a"),
            make_candidate(0.91, text="Headcount stayed flat at 120 employees.", chunk_id="b"),
            make_candidate(0.55, text=REVENUE + " Revenue beat guidance.", chunk_id="c"),
            make_candidate(0.80, text=REVENUE, chunk_id="d"),
            make_candidate(0.80, text=REVENUE, chunk_id="e"),
            make_candidate(0.40, text="The office moved to a new building.", chunk_id="f"),
        ]

        selected, _ = rerank_candidates(
            question, candidates, top_k=6, config=RerankConfig(diversity_weight=0.0)
        )

        expected = sorted(candidates, key=lambda c: c.relevance_score, reverse=True)
        assert [c.chunk_id for c in selected] == [c.chunk_id for c in expected]
        assert selected.index(candidates[3]) < selected.index(candidates[4])

    def test_relevance_blend(self):
        candidate = make_candidate(0.8, text="nothing relevant")
        rerank_candidates("zzz", [candidate], top_k=1, config=RerankConfig(vector_weight=0.5))

        assert candidate.relevance_score == pytest.approx(0.4)


# ============================================================================
# Configuration
# ============================================================================

class TestRerankSettings:

    def test_defaults(self):
        config = RerankConfig()
        assert config.vector_weight == 0.7
        assert config.lexical_weight == 0.3
        assert config.diversity_weight == 0.2

    def test_from_settings(self, settings):
        settings.RERANK_VECTOR_WEIGHT = 0.6
        settings.RERANK_DIVERSITY_WEIGHT = 0.0

        config = RerankConfig.from_settings()

        assert config.vector_weight == 0.6
        assert config.diversity_weight == 0.0

    def test_keep_n(self, settings):
        settings.RERANK_KEEP_N = 5
        assert get_rerank_keep_n() == 5
