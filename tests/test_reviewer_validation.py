"""Tests for Reviewer helpers: _validate_review, review_band."""

import pytest

from nas.agents.reviewer import CHECKLIST, MAX_SCORE, _validate_review, review_band
from nas.tools import ReviewImageCall

URL = "https://x.supabase.co/storage/v1/object/public/native-images/a.jpg"


def _call(score, passes=None, issues=(), refined=None):
    return ReviewImageCall(
        call_id="r1",
        image_url="whatever-the-model-echoed",
        passes=score >= 6 if passes is None else passes,
        score=score,
        issues=tuple(issues),
        refined_prompt=refined,
    )


class TestReviewBand:
    @pytest.mark.parametrize("score,band", [(7, "pass"), (6, "pass"), (5, "marginal"), (4, "marginal"), (3, "fail"), (0, "fail")])
    def test_thresholds(self, score, band):
        assert review_band(score) == band

    def test_checklist_has_seven_items(self):
        assert len(CHECKLIST) == MAX_SCORE == 7


class TestValidateReview:
    def test_passing_review_has_no_refined_prompt(self):
        verdict = _validate_review(_call(7, refined="ignored"), URL, "old prompt")
        assert verdict["passes"] is True
        assert "refined_prompt" not in verdict

    def test_failing_review_keeps_refined_prompt(self):
        verdict = _validate_review(_call(3, issues=["stock look"], refined="new prompt"), URL, "old prompt")
        assert verdict["passes"] is False
        assert verdict["refined_prompt"] == "new prompt"
        assert verdict["issues"] == ["stock look"]

    def test_image_url_comes_from_the_attempt(self):
        verdict = _validate_review(_call(7), URL, "old prompt")
        assert verdict["image_url"] == URL

    def test_score_overrides_passes_flag(self, capsys):
        """A 5/7 marked as passing is still a failure."""
        verdict = _validate_review(_call(5, passes=True, issues=["text overlay"], refined="r"), URL, "p")
        assert verdict["passes"] is False
        assert "Using the score" in capsys.readouterr().err

    def test_six_cannot_be_failed(self):
        verdict = _validate_review(_call(6, passes=False, issues=["minor"]), URL, "p")
        assert verdict["passes"] is True

    def test_missing_refined_prompt_falls_back(self, capsys):
        verdict = _validate_review(_call(2, issues=["AI artifacts"]), URL, "old prompt")
        assert verdict["refined_prompt"] == "old prompt"
        assert "[NAS] Warning" in capsys.readouterr().err

    def test_failing_review_without_issues_raises(self):
        with pytest.raises(ValueError, match="at least one issue"):
            _validate_review(_call(3, issues=["  "], refined="r"), URL, "p")

    def test_out_of_range_score_raises(self):
        with pytest.raises(ValueError, match="out of range"):
            _validate_review(_call(9), URL, "p")
