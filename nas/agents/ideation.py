"""Ideation Engine — expands a clarified concept into generation-ready prompts.

One model call returns a discriminated JSON object: either
``{"type": "clarify", "questions": [...]}`` or
``{"type": "ideate", "primaryPrompt", "variations", "additionalConcepts"}``.
The clarification policy (see ``nas.agents.clarifier``) decides whether a
"clarify" verdict is surfaced; once the user skips, only "ideate" is accepted.
"""

import json
import sys

from langchain_google_genai import ChatGoogleGenerativeAI

from nas.agents import clarifier
from nas.config import get_config
from nas.control import request_timeout
from nas.state import ClarificationResult, IdeationResult
from nas.utils.parsing import invoke_with_retry, message_text, strip_fences
from nas.utils.prompt_check import check_prompt, check_prompts
from nas.utils.prompt_rules import load_prompt_rules
from nas.utils.validator import validate_answers, validate_concept

MIN_VARIATIONS = 2
MAX_VARIATIONS = 4
MAX_ADDITIONAL_CONCEPTS = 3

SYSTEM_PROMPT = f"""\
You are a native advertising creative director.

{clarifier.CLARIFY_POLICY}

HOW TO IDEATE: once product, persona and angle are locked in, generate concepts that \
exploit that exact combination.

VARIATION STRATEGY: 3-4 variations, each changing exactly ONE dimension while holding \
product, persona and angle fixed:
- Same problem, different environment (nightstand vs bathroom vs car)
- Same scene, different lighting
- Same environment, different emotional intensity (mild annoyance vs total desperation)
- Same problem, different moment (onset vs peak vs aftermath)
- Same product, different competitor comparison framing
Each variation is a complete standalone prompt, never a diff against the primary prompt.

ADDITIONAL CONCEPTS: 2-3 adjacent angles for the SAME product and persona (different \
USP, different problem moment, competitor comparison). Brief descriptions only. Never \
drift to a different product or a different persona.

You MUST respond with valid JSON matching exactly one of these shapes:
{{"type": "clarify", "questions": [{{"id": "product|persona|angle", "question": "string", \
"options": ["string", "...", "Other / something else"]}}]}}
{{"type": "ideate", "primaryPrompt": "string", "variations": ["string"], \
"additionalConcepts": ["string"]}}

Respond ONLY with the JSON object. No markdown fences, no commentary.
"""

FINALIZE_INSTRUCTION = (
    "The user has finalized this concept and will not answer more questions. "
    'You MUST respond with type "ideate"; fill any gaps with the most likely product, '
    "persona and angle."
)


class IdeationError(RuntimeError):
    """Raised when the clarify/ideate call cannot produce a usable result."""


def _validate_ideation(data: dict) -> IdeationResult:
    """Validate and normalize an ideate response.

    Raises ValueError if the prompts are missing or not generation-ready.
    """
    primary = data.get("primaryPrompt")
    if not isinstance(primary, str) or not primary.strip():
        raise ValueError("Ideation response missing 'primaryPrompt'.")
    primary_issues = check_prompt(primary)
    if primary_issues:
        raise ValueError(f"primaryPrompt is not generation-ready: {primary_issues[0]}")

    variations = data.get("variations", [])
    if not isinstance(variations, list):
        raise ValueError("Ideation response 'variations' must be a list.")
    variations = [v.strip() for v in variations if isinstance(v, str) and v.strip()]
    variations = [v for v in dict.fromkeys(variations) if v != primary.strip()]
    if len(variations) < MIN_VARIATIONS:
        raise ValueError(
            f"Ideation response has {len(variations)} variations (expected at least {MIN_VARIATIONS})."
        )
    variation_issues = check_prompts(variations)
    if variation_issues:
        raise ValueError(f"Variation is not generation-ready: {variation_issues[0]}")

    concepts = data.get("additionalConcepts", [])
    if not isinstance(concepts, list):
        raise ValueError("Ideation response 'additionalConcepts' must be a list.")
    concepts = [c.strip() for c in concepts if isinstance(c, str) and c.strip()]

    return {
        "type": "ideate",
        "primaryPrompt": primary.strip(),
        "variations": variations[:MAX_VARIATIONS],
        "additionalConcepts": concepts[:MAX_ADDITIONAL_CONCEPTS],
    }


def _build_messages(concept: str, answers: dict[str, str], finalize: bool) -> list[dict]:
    system_content = SYSTEM_PROMPT
    rules = load_prompt_rules()
    if rules:
        system_content += f"\n\n## Native Ad Prompt Rules\n{rules}"

    user_prompt = clarifier.format_concept(concept, answers)
    if finalize:
        user_prompt += f"\n\n{FINALIZE_INSTRUCTION}"

    return [
        {"role": "system", "content": system_content},
        {"role": "user", "content": user_prompt},
    ]


def _parse(response) -> dict:
    data = json.loads(strip_fences(message_text(response)))
    if not isinstance(data, dict):
        raise ValueError("Ideation response must be a JSON object.")
    if data.get("type") not in ("clarify", "ideate"):
        raise ValueError(f"Ideation response has invalid type '{data.get('type')}'.")
    return data


def _call(llm, messages: list[dict], answers: dict[str, str], finalize: bool):
    """One model round trip, re-prompting once on a malformed response."""
    response = invoke_with_retry(llm, messages)
    try:
        data = _parse(response)
        clarification = clarifier.evaluate_response(data, answers, finalize)
        if clarification:
            return clarification
        if data["type"] == "clarify":
            return None  # Nothing left to ask; caller forces ideation.
        return _validate_ideation(data)
    except (json.JSONDecodeError, ValueError) as exc:
        print(f"[NAS] Ideation response rejected ({exc}). Re-prompting once.", file=sys.stderr)
        messages = messages + [
            {"role": "assistant", "content": message_text(response)},
            {
                "role": "user",
                "content": (
                    f"Your response was rejected: {exc}. "
                    "Please try again with ONLY the raw JSON object — "
                    "no markdown fences, no commentary."
                ),
            },
        ]
        data = _parse(invoke_with_retry(llm, messages))
        clarification = clarifier.evaluate_response(data, answers, finalize)
        if clarification:
            return clarification
        if data["type"] == "clarify":
            return None
        return _validate_ideation(data)


def run_ideation(
    concept: str,
    answers: dict[str, str] | None = None,
    finalize: bool = False,
) -> ClarificationResult | IdeationResult:
    """Clarify or ideate a concept.

    Args:
        concept: The user's raw concept text.
        answers: Confirmed clarification answers. None means the concept has
            not been through clarification yet; an empty dict means the user
            skipped, which finalizes the concept (never clarifies again).
        finalize: Force ideation even when answers are present, e.g. when
            the user skips a second round of questions.

    Raises IdeationError if the model call fails or keeps returning invalid
    output; callers fall back to direct generation with the raw concept.
    """
    concept = validate_concept(concept)
    finalize = finalize or (answers is not None and not validate_answers(answers))
    answers = validate_answers(answers)

    config = get_config()
    llm = ChatGoogleGenerativeAI(
        model=config["ideation_model"],
        temperature=0.7,
        timeout=request_timeout(),
    )

    try:
        result = _call(llm, _build_messages(concept, answers, finalize), answers, finalize)
        if result is None:
            # Model wanted to ask, but only about axes that are already answered.
            result = _call(llm, _build_messages(concept, answers, True), answers, True)
    except Exception as exc:
        raise IdeationError(f"Ideation failed: {exc}") from exc

    if result is None:
        raise IdeationError("Ideation failed: model kept asking for clarification.")
    return result
