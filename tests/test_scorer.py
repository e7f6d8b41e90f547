"""Unit tests for weighted candidate scoring."""
from __future__ import annotations

import pytest

from matching_engine.match.scorer import (
    SENIORITY_BANDS,
    UNKNOWN_EXPERIENCE_FIT,
    Scorer,
    experience_fit,
    jaccard,
    seniority_from_budget,
    target_experience_band,
)
from matching_engine.shared.config import MatchingConfig
from matching_engine.shared.schemas import BudgetBand, Candidate, Seniority


class TestJaccard:
    def test_identical_sets(self):
        assert jaccard({"a", "b"}, {"b", "a"}) == 1.0

    def test_partial_overlap(self):
        assert jaccard({"a", "b"}, {"b", "c"}) == pytest.approx(1 / 3)

    def test_empty_side_scores_zero(self):
        assert jaccard(set(), {"a"}) == 0.0
        assert jaccard({"a"}, set()) == 0.0
        assert jaccard(set(), set()) == 0.0


class TestExperienceFit:
    def test_inside_band(self):
        assert experience_fit(7, (5, 10), 5) == 1.0

    def test_band_edges_are_inside(self):
        assert experience_fit(5, (5, 10), 5) == 1.0
        assert experience_fit(10, (5, 10), 5) == 1.0

    def test_linear_decay_below_band(self):
        assert experience_fit(3, (5, 10), 5) == pytest.approx(0.6)

    def test_linear_decay_above_band(self):
        assert experience_fit(12.5, (5, 10), 5) == pytest.approx(0.5)

    def test_far_outside_band_is_zero(self):
        assert experience_fit(30, (0, 3), 5) == 0.0

    def test_unknown_years(self):
        assert experience_fit(None, (5, 10), 5) == UNKNOWN_EXPERIENCE_FIT

    def test_no_target_band(self):
        assert experience_fit(None, None, 5) == 1.0


class TestSeniority:
    @pytest.mark.parametrize(
        "band, expected",
        [
            (BudgetBand(min_rate=20, max_rate=40), Seniority.JUNIOR),
            (BudgetBand(min_rate=60, max_rate=90), Seniority.MID),
            (BudgetBand(min_rate=100, max_rate=200), Seniority.SENIOR),
            (BudgetBand(min_rate=250), Seniority.LEAD),
            (None, None),
        ],
    )
    def test_seniority_from_budget(self, band, expected):
        assert seniority_from_budget(band) == expected

    def test_explicit_seniority_wins_over_budget(self, make_brief):
        brief = make_brief(budget="$20-40/hr", seniority="lead")
        assert target_experience_band(brief) == SENIORITY_BANDS[Seniority.LEAD]

    def test_no_budget_no_band(self, make_brief):
        assert target_experience_band(make_brief(budget=None)) is None


class TestScorer:
    def test_weighted_score(self, make_brief, make_designer):
        scored = Scorer().score_one(make_brief(), Candidate(make_designer(), 0.8))

        # 0.45 * 0.8 + 0.15 * 1 + 0.25 * 1 + 0.15 * 1
        assert scored.score == pytest.approx(91.0)
        assert scored.breakdown["similarity"] == pytest.approx(0.8)
        assert scored.breakdown["experience_fit"] == 1.0

    def test_score_stays_in_range(self, make_brief, make_designer):
        scorer = Scorer()
        low = scorer.score_one(make_brief(), Candidate(make_designer(styles=[], industries=[], years_experience=40), -0.4))
        high = scorer.score_one(make_brief(), Candidate(make_designer(), 1.0))

        assert low.score == 0.0
        assert high.score == pytest.approx(100.0)

    def test_ranking_prefers_style_fit_over_raw_similarity(self, make_brief, make_designer):
        candidates = [
            Candidate(make_designer("near", styles=["brutalist"], industries=["gaming"]), 0.95),
            Candidate(make_designer("fit"), 0.7),
        ]
        ranked = Scorer().score(make_brief(), candidates)
        assert [s.designer_id for s in ranked] == ["fit", "near"]

    def test_ties_break_on_designer_id(self, make_brief, make_designer):
        candidates = [Candidate(make_designer("d2"), 0.8), Candidate(make_designer("d1"), 0.8)]
        ranked = Scorer().score(make_brief(), candidates)
        assert [s.designer_id for s in ranked] == ["d1", "d2"]

    def test_ranking_does_not_depend_on_input_order(self, make_brief, make_designer):
        candidates = [
            Candidate(make_designer("d1", styles=["bold"]), 0.9),
            Candidate(make_designer("d2"), 0.6),
            Candidate(make_designer("d3", years_experience=1), 0.75),
            Candidate(make_designer("d4"), 0.6),
        ]
        scorer = Scorer()
        forward = [s.designer_id for s in scorer.score(make_brief(), candidates)]
        backward = [s.designer_id for s in scorer.score(make_brief(), list(reversed(candidates)))]
        assert forward == backward

    def test_best_of_empty_is_none(self, make_brief):
        assert Scorer().best(make_brief(), []) is None

    def test_reason_tags_strongest_first(self, make_brief, make_designer):
        scored = Scorer().score_one(make_brief(), Candidate(make_designer(), 0.8))
        codes = [tag.code for tag in scored.reason_tags]

        assert codes[0] == "semantic_fit"
        assert set(codes) == {
            "semantic_fit",
            "style_match",
            "industry_match",
            "experience_fit",
            "available_now",
            "budget_fit",
        }
        style = next(tag for tag in scored.reason_tags if tag.code == "style_match")
        assert style.detail == "minimal"

    def test_custom_weights(self, make_brief, make_designer):
        config = MatchingConfig(w_similarity=1.0, w_experience=0.0, w_style=0.0, w_industry=0.0)
        scored = Scorer(config).score_one(make_brief(), Candidate(make_designer(), 0.42))
        assert scored.score == pytest.approx(42.0)


class TestWeightValidation:
    def test_weights_must_sum_to_one(self):
        with pytest.raises(ValueError):
            MatchingConfig(w_similarity=0.5)

    def test_weights_must_be_non_negative(self):
        with pytest.raises(ValueError):
            MatchingConfig(w_similarity=0.6, w_experience=-0.1, w_style=0.35, w_industry=0.15)

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("W_SIMILARITY", "0.55")
        monkeypatch.setenv("W_STYLE", "0.15")
        monkeypatch.setenv("MATCH_TOP_K", "10")
        config = MatchingConfig.from_env()
        assert config.w_similarity == pytest.approx(0.55)
        assert config.top_k == 10
