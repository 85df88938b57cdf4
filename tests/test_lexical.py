"""
Tests for lexical keyword / free-text scoring.
"""

from datetime import datetime

import pytest


def _record(**overrides):
    defaults = {
        "id": "r1",
        "title": "CORS error on Next.js API route",
        "problem_description": "Browser blocks the preflight request.",
        "root_cause": "Missing Access-Control-Allow-Origin header.",
        "solution": "Return the header from the route handler.",
        "context": None,
        "keywords": ["nextjs", "cors", "api"],
        "created_at": datetime(2026, 1, 1),
    }
    defaults.update(overrides)
    return defaults


class TestTokenize:
    def test_drops_stop_words_and_single_chars(self):
        from experience_hub.search.lexical import tokenize

        assert tokenize("How to fix a CORS error in X") == ["fix", "cors", "error"]

    def test_empty(self):
        from experience_hub.search.lexical import tokenize

        assert tokenize(None) == []
        assert tokenize("   ") == []


class TestScore:
    def test_all_keywords_in_record_keywords(self):
        from experience_hub.search.lexical import score

        assert score(_record(), keywords=["nextjs", "cors"]) == pytest.approx(1.0)

    def test_keyword_matching_is_case_insensitive(self):
        from experience_hub.search.lexical import score

        assert score(_record(), keywords=["NextJS"]) == pytest.approx(1.0)

    def test_keyword_found_as_substring_of_content(self):
        from experience_hub.search.lexical import score

        record = _record(keywords=[])
        assert score(record, keywords=["preflight", "kubernetes"]) == pytest.approx(0.5)

    def test_free_text_title_hit_outweighs_body_hit(self):
        from experience_hub.search.lexical import score

        title_hit = score(_record(), free_text="cors")
        body_hit = score(_record(), free_text="preflight")

        assert title_hit == pytest.approx(1.0)
        assert body_hit == pytest.approx(0.6)

    def test_free_text_is_mean_over_tokens(self):
        from experience_hub.search.lexical import score

        value = score(_record(), free_text="cors preflight database")
        assert value == pytest.approx((1.0 + 0.6 + 0.0) / 3)

    def test_both_parts_are_averaged(self):
        from experience_hub.search.lexical import score

        value = score(_record(), keywords=["cors"], free_text="database")
        assert value == pytest.approx(0.5)

    def test_no_input_scores_zero(self):
        from experience_hub.search.lexical import score

        assert score(_record()) == 0.0
        assert score(_record(), keywords=["  "], free_text="the a") == 0.0

    def test_custom_weights(self):
        from experience_hub.search.lexical import score

        value = score(_record(), free_text="preflight", title_weight=1.0, body_weight=0.25)
        assert value == pytest.approx(0.25)


class TestRankLexical:
    def test_orders_by_score_then_newest_then_id(self):
        from experience_hub.search.lexical import rank_lexical

        records = [
            _record(id="b", keywords=["cors"], created_at=datetime(2026, 1, 1)),
            _record(id="a", keywords=["cors"], created_at=datetime(2026, 1, 1)),
            _record(id="c", keywords=["cors"], created_at=datetime(2026, 2, 1)),
            _record(id="d", keywords=["cors", "nextjs"], created_at=datetime(2025, 1, 1)),
            _record(
                id="e",
                title="Disk full",
                problem_description="No space left",
                root_cause=None,
                solution="Rotate logs",
                keywords=["disk"],
            ),
        ]
        ranked = rank_lexical(records, keywords=["cors", "nextjs"])

        assert [r[0] for r in ranked] == ["d", "c", "a", "b"]
        assert ranked[0][1] == pytest.approx(1.0)
