"""Concept Clarifier — decides whether a concept fixes product, persona and angle.

The clarifier's verdict comes from the ideation model's ``type`` field
("clarify" or "ideate"); this module owns the policy applied to that verdict:

- questions are capped at 3, ordered product → persona → angle,
  de-duplicated, and always end with the free-text escape option;
- axes the user already answered are never asked again;
- an explicit empty answer map (the user skipped) finalizes the concept,
  so no clarification is returned no matter what the model said.
"""

import sys
from typing import Optional

from nas.state import ClarificationQuestion, ClarificationResult

AXES = ("product", "persona", "angle")
OTHER_OPTION = "Other / something else"
MAX_QUESTIONS = 3
MIN_OPTIONS = 4
MAX_OPTIONS = 5

# Map common LLM id deviations to the three axes
_AXIS_ALIASES = {
    "product": "product",
    "product_type": "product",
    "offer": "product",
    "what": "product",
    "persona": "persona",
    "audience": "persona",
    "target": "persona",
    "target_audience": "persona",
    "market": "persona",
    "customer": "persona",
    "who": "persona",
    "angle": "angle",
    "usp": "angle",
    "benefit": "angle",
    "hook": "angle",
    "message": "angle",
}

_OTHER_MARKERS = ("other", "something else")

CLARIFY_POLICY = """\
Before generating any concepts you must lock in three things:

1. PRODUCT — what is being sold (specific enough to know what it does)
2. PERSONA / MARKET — who is being targeted (specific enough to know their pain, \
language and context)
3. ANGLE / USP — what specific problem, benefit or proof point this ad demonstrates

WHEN TO ASK (type: "clarify"): ask if ANY of the three is missing or generic.
- Product missing/unclear: "dust", "bathroom counter", "nightstand" could be dozens of products.
- Persona missing: the same product for different people means completely different concepts.
- Angle missing: you know the product but not which problem or benefit to show.
ALWAYS ask if the input is a scene description without a clear product. When in doubt, ask.

WHEN TO IDEATE (type: "ideate"): only when all three are clear from the input, e.g.
- "red irritated skin after shaving legs with a cheap razor" → product (razor), angle \
(irritation, cheapness), persona (women shaving their legs)
- "cracked dry heels" → product (foot cream), angle (dryness/cracking), persona (anyone \
with dry feet)

HOW TO ASK: 1-3 short conversational questions, in priority order product → persona → \
angle. Use the ids "product", "persona", "angle". Give 4-5 tappable options covering the \
most likely answers for that product category and always end with \
"Other / something else". Never ask about an axis listed under "Clarification answers".\
"""


def _normalize_id(raw_id) -> Optional[str]:
    if not isinstance(raw_id, str):
        return None
    key = raw_id.strip().lower().replace("-", "_").replace(" ", "_")
    return _AXIS_ALIASES.get(key)


def _is_other(option: str) -> bool:
    lowered = option.lower()
    return any(marker in lowered for marker in _OTHER_MARKERS)


def _normalize_options(options, qid: str) -> list[str]:
    if not isinstance(options, list):
        raise ValueError(f"Question '{qid}' options must be a list.")
    concrete = []
    for opt in options:
        if not isinstance(opt, str) or not opt.strip():
            continue
        opt = opt.strip()
        if _is_other(opt) or opt in concrete:
            continue
        concrete.append(opt)

    if len(concrete) < MIN_OPTIONS:
        raise ValueError(
            f"Question '{qid}' has {len(concrete)} concrete options (expected 4-5)."
        )
    # Room for the escape option at the end.
    return concrete[: MAX_OPTIONS - 1] + [OTHER_OPTION]


def normalize_questions(questions, answered: dict[str, str] | None = None) -> list[ClarificationQuestion]:
    """Validate and order the model's clarifying questions.

    Drops questions for axes already present in ``answered`` and duplicates.
    Raises ValueError if a question is missing required fields.
    """
    if not isinstance(questions, list):
        raise ValueError("Clarification response 'questions' must be a list.")

    answered_axes = {_normalize_id(k) or k for k in (answered or {})}
    by_axis: dict[str, ClarificationQuestion] = {}

    for i, q in enumerate(questions):
        if not isinstance(q, dict) or "id" not in q or "question" not in q or "options" not in q:
            raise ValueError(f"Question {i} missing required fields (id, question, options).")
        axis = _normalize_id(q["id"])
        if axis is None:
            print(
                f"[NAS] Warning: question {i} has unknown id '{q['id']}'. Skipping.",
                file=sys.stderr,
            )
            continue
        if axis in answered_axes or axis in by_axis:
            continue
        text = str(q["question"]).strip()
        if not text:
            raise ValueError(f"Question {i} has an empty question text.")
        by_axis[axis] = {
            "id": axis,
            "question": text,
            "options": _normalize_options(q["options"], axis),
        }

    ordered = [by_axis[axis] for axis in AXES if axis in by_axis]
    return ordered[:MAX_QUESTIONS]


def format_concept(concept: str, answers: dict[str, str] | None = None) -> str:
    """Return the model-facing concept text with any confirmed answers appended."""
    if not answers:
        return concept
    answer_lines = "\n".join(f"{k}: {v}" for k, v in answers.items())
    return f"{concept}\n\nClarification answers:\n{answer_lines}"


def evaluate_response(
    data: dict,
    answers: dict[str, str] | None,
    finalize: bool,
) -> Optional[ClarificationResult]:
    """Apply the clarification policy to a model verdict.

    Returns a ClarificationResult when the user must be asked, or None when
    the concept is sufficiently specified (or finalized) to proceed.
    """
    if data.get("type") != "clarify" or finalize:
        return None

    questions = normalize_questions(data.get("questions", []), answered=answers)
    if not questions:
        return None
    return {"type": "clarify", "questions": questions}
