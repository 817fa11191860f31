"""Tests for nas.utils.prompt_check: check_prompt, check_prompts."""

from nas.utils.prompt_check import check_prompt, check_prompts

GOOD = (
    "Extreme close-up of red razor bumps on a shin, harsh bathroom light, "
    "[irritated] [raw], iphone style, low-fi image"
)


class TestCheckPrompt:
    def test_good_prompt_has_no_issues(self):
        assert check_prompt(GOOD) == []

    def test_empty_prompt(self):
        assert check_prompt("   ") == ["Prompt is empty."]

    def test_non_string(self):
        assert check_prompt(None) == ["Prompt is empty."]

    def test_too_short(self):
        issues = check_prompt("a shin")
        assert any("too short" in i for i in issues)

    def test_curly_placeholder(self):
        issues = check_prompt(GOOD + " holding {product}")
        assert any("{product}" in i for i in issues)

    def test_angle_placeholder(self):
        issues = check_prompt(GOOD + " next to <product name>")
        assert any("<product name>" in i for i in issues)

    def test_uppercase_bracket_placeholder(self):
        issues = check_prompt(GOOD + " with [PRODUCT] on the counter")
        assert any("[PRODUCT]" in i for i in issues)

    def test_lowercase_bracket_tags_allowed(self):
        assert check_prompt(GOOD) == []

    def test_todo_marker(self):
        issues = check_prompt(GOOD + " TODO pick a room")
        assert any("TODO" in i for i in issues)

    def test_text_overlay_instruction(self):
        issues = check_prompt(GOOD + ", with a bold text overlay")
        assert any("text overlay" in i for i in issues)

    def test_negated_terms_allowed(self):
        assert check_prompt(GOOD + ", no text overlays or captions, without a watermark") == []

    def test_quoted_text_instruction(self):
        issues = check_prompt(GOOD + ', a sticky note that says "buy now"')
        assert any("rendered text" in i for i in issues)


class TestCheckPrompts:
    def test_issues_are_indexed(self):
        issues = check_prompts([GOOD, "short"])
        assert issues
        assert all(i.startswith("Prompt 1:") for i in issues)

    def test_all_good(self):
        assert check_prompts([GOOD, GOOD]) == []
