"""Prompt check — deterministic validation of generation-ready prompts.

Returns a list of issues. If empty, the prompt can be sent to the image
model as-is: it is complete (no template placeholders) and purely visual
(no instruction to render text, timestamps or watermarks, which image
models tend to honour literally).
"""

import re

MIN_PROMPT_CHARS = 20

_PLACEHOLDER_PATTERNS = [
    re.compile(r"\{\{?\s*[\w .-]+\s*\}?\}"),  # {product}, {{persona}}
    re.compile(r"<\s*[\w .-]+\s*>"),  # <product name>
    re.compile(r"\[[A-Z][A-Z0-9 _/-]*\]"),  # [PRODUCT]; lowercase [tags] are fine
    re.compile(r"\b(?:TODO|TBD|XXX|lorem ipsum)\b", re.IGNORECASE),
]

_TEXT_RENDER_TERMS = [
    "text overlay",
    "caption",
    "timestamp",
    "date stamp",
    "watermark",
    "headline",
    "logo text",
]

_NEGATION_RE = re.compile(r"\b(?:no|without|never|not|avoid)\b[\w ,-]{0,24}$", re.IGNORECASE)

_QUOTED_TEXT_RE = re.compile(r"\b(?:says|saying|reads|reading|written)\s+[\"']", re.IGNORECASE)


def _mentions(lowered: str, term: str) -> bool:
    """True if ``term`` appears without a negation shortly before it ("no captions")."""
    for match in re.finditer(re.escape(term), lowered):
        if not _NEGATION_RE.search(lowered[max(0, match.start() - 30):match.start()]):
            return True
    return False


def check_prompt(prompt: str) -> list[str]:
    """Check whether a prompt is ready for image synthesis.

    Returns a list of issue strings. Empty list = ready.
    """
    if not isinstance(prompt, str) or not prompt.strip():
        return ["Prompt is empty."]

    issues = []
    text = prompt.strip()

    if len(text) < MIN_PROMPT_CHARS:
        issues.append(f"Prompt is too short to be a complete scene ({len(text)} chars).")

    for pattern in _PLACEHOLDER_PATTERNS:
        match = pattern.search(text)
        if match:
            issues.append(f"Prompt contains placeholder token '{match.group(0)}'.")

    lowered = text.lower()
    for term in _TEXT_RENDER_TERMS:
        if _mentions(lowered, term):
            issues.append(f"Prompt mentions '{term}'; prompts must be purely visual.")

    if _QUOTED_TEXT_RE.search(text):
        issues.append("Prompt asks for rendered text; prompts must be purely visual.")

    return issues


def check_prompts(prompts: list[str]) -> list[str]:
    """Check several prompts, prefixing each issue with the prompt's index."""
    issues = []
    for i, prompt in enumerate(prompts):
        for issue in check_prompt(prompt):
            issues.append(f"Prompt {i}: {issue}")
    return issues
