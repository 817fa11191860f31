"""Tests for the clarification policy: normalize_questions, evaluate_response, format_concept."""

import pytest

from nas.agents.clarifier import (
    OTHER_OPTION,
    evaluate_response,
    format_concept,
    normalize_questions,
)

OPTIONS = ["Air purifier", "HEPA vacuum", "Allergy spray", "Dust mite covers", "Other"]


def _q(qid, question="Which one?", options=None):
    return {"id": qid, "question": question, "options": list(options or OPTIONS)}


class TestNormalizeQuestions:
    def test_orders_by_axis_priority(self):
        questions = normalize_questions([_q("angle"), _q("product"), _q("persona")])
        assert [q["id"] for q in questions] == ["product", "persona", "angle"]

    def test_caps_at_three(self):
        questions = normalize_questions([_q("product"), _q("persona"), _q("angle"), _q("audience")])
        assert len(questions) == 3

    def test_aliases_map_to_axes(self):
        questions = normalize_questions([_q("target_audience"), _q("USP")])
        assert [q["id"] for q in questions] == ["persona", "angle"]

    def test_duplicate_axis_dropped(self):
        questions = normalize_questions([_q("persona"), _q("audience")])
        assert len(questions) == 1

    def test_unknown_id_skipped_with_warning(self, capsys):
        questions = normalize_questions([_q("budget"), _q("product")])
        assert [q["id"] for q in questions] == ["product"]
        assert "unknown id 'budget'" in capsys.readouterr().err

    def test_answered_axis_not_asked_again(self):
        questions = normalize_questions([_q("product"), _q("persona")], answered={"product": "air purifier"})
        assert [q["id"] for q in questions] == ["persona"]

    def test_answered_alias_counts_as_axis(self):
        questions = normalize_questions([_q("persona")], answered={"audience": "new parents"})
        assert questions == []

    def test_other_option_always_last_and_single(self):
        options = normalize_questions([_q("product", options=["A", "Other (type it)", "B", "C", "D", "E"])])[0]["options"]
        assert options[-1] == OTHER_OPTION
        assert options.count(OTHER_OPTION) == 1
        assert options[:-1] == ["A", "B", "C", "D"]

    def test_too_few_options_raises(self):
        with pytest.raises(ValueError, match="concrete options"):
            normalize_questions([_q("product", options=["Only one", "Other"])])

    def test_three_concrete_options_raises(self):
        with pytest.raises(ValueError, match="3 concrete options"):
            normalize_questions([_q("product", options=["A", "B", "C", "Other"])])

    def test_four_concrete_options_kept(self):
        options = normalize_questions([_q("product", options=["A", "B", "C", "D"])])[0]["options"]
        assert options == ["A", "B", "C", "D", OTHER_OPTION]

    def test_missing_fields_raises(self):
        with pytest.raises(ValueError, match="missing required fields"):
            normalize_questions([{"id": "product", "question": "What?"}])

    def test_non_list_raises(self):
        with pytest.raises(ValueError, match="must be a list"):
            normalize_questions("product?")


class TestEvaluateResponse:
    def test_clarify_returns_questions(self, valid_clarify_response):
        result = evaluate_response(valid_clarify_response, None, finalize=False)
        assert result["type"] == "clarify"
        assert result["questions"][0]["id"] == "product"

    def test_ideate_returns_none(self, valid_ideation_response):
        assert evaluate_response(valid_ideation_response, None, finalize=False) is None

    def test_finalized_never_clarifies(self, valid_clarify_response):
        assert evaluate_response(valid_clarify_response, {}, finalize=True) is None

    def test_only_answered_axes_returns_none(self, valid_clarify_response):
        """'dust' → product asked; once answered the product question never returns."""
        assert evaluate_response(valid_clarify_response, {"product": "air purifier"}, finalize=False) is None


class TestFormatConcept:
    def test_no_answers_unchanged(self):
        assert format_concept("dust") == "dust"

    def test_answers_appended(self):
        text = format_concept("dust", {"product": "air purifier", "persona": "allergy sufferers"})
        assert text.startswith("dust\n\nClarification answers:\n")
        assert "product: air purifier" in text
        assert "persona: allergy sufferers" in text
