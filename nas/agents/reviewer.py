"""Quality Reviewer — scores a generated image against the native ad checklist.

The reasoning model sees the injected image and must call ``reviewImage``:
{
  "image_url": "string",
  "passes": "bool",
  "score": "integer 0..7 (one point per checklist item)",
  "issues": ["string"],
  "refined_prompt": "string, present if and only if passes=false"
}
"""

import json
import sys

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage

from nas.config import get_config
from nas.control import request_timeout
from nas.gate import after_failure
from nas.state import LoopState
from nas.tools import ALL_TOOLS, ReviewImageCall, first_tool_call, parse_tool_call
from nas.utils.parsing import invoke_with_retry
from nas.utils.prompt_rules import load_prompt_rules

CHECKLIST = (
    "Looks like authentic UGC, NOT polished, branded, or stock-photo aesthetic",
    "iPhone/lo-fi aesthetic is visible (natural light, imperfect framing, real environment)",
    "Clear emotional hook present: visceral, relatable, or genuinely scroll-stopping",
    "Subject directly and clearly matches the requested concept",
    "No text overlays, timestamps, or watermarks added to the image",
    "No obvious AI artifacts (mangled objects, impossible geometry, garbled text)",
    "A real person would plausibly post this exact photo on their social feed",
)
MAX_SCORE = len(CHECKLIST)
PASS_THRESHOLD = 6
MARGINAL_THRESHOLD = 4

_checklist_lines = "\n".join(f"{i}. {item}" for i, item in enumerate(CHECKLIST, 1))

SYSTEM_PROMPT = f"""\
You are a native advertising quality reviewer.

Examine the generated image carefully against the Native Ad Performance Checklist and \
call the reviewImage tool with your assessment.

NATIVE AD PERFORMANCE CHECKLIST:
{_checklist_lines}

SCORING: Rate each criterion 0 or 1. Total score out of {MAX_SCORE}.
- Score 6-7: PASSES — passes=true, no refined_prompt
- Score 4-5: MARGINAL — passes=false, list the issues, provide refined_prompt
- Score 0-3: FAILS — passes=false, list the issues, provide refined_prompt

The refined_prompt must be a complete standalone prompt that fixes every issue you list.
Always be honest in your review. Do NOT pass an image just to finish early.
"""


def review_band(score: int) -> str:
    """Classify a score as "pass", "marginal" or "fail"."""
    if score >= PASS_THRESHOLD:
        return "pass"
    if score >= MARGINAL_THRESHOLD:
        return "marginal"
    return "fail"


def _validate_review(call: ReviewImageCall, image_url: str, fallback_prompt: str) -> dict:
    """Validate a reviewImage call and normalize it into a verdict dict.

    The score is authoritative: ``passes`` is derived from the threshold so a
    6/7 can't be failed and a 5/7 can't be passed. Raises ValueError when the
    verdict is unusable.
    """
    if not 0 <= call.score <= MAX_SCORE:
        raise ValueError(f"Review score {call.score} out of range 0..{MAX_SCORE}.")

    passes = call.score >= PASS_THRESHOLD
    if passes != call.passes:
        print(
            f"[NAS] Warning: review said passes={call.passes} with score "
            f"{call.score}/{MAX_SCORE}. Using the score.",
            file=sys.stderr,
        )

    issues = [i for i in call.issues if i.strip()]
    if not passes and not issues:
        raise ValueError("A failing review must list at least one issue.")

    verdict = {
        "image_url": image_url,
        "passes": passes,
        "score": call.score,
        "issues": issues,
    }
    if not passes:
        refined = call.refined_prompt
        if not refined:
            print(
                "[NAS] Warning: failing review without refined_prompt. "
                "Retrying with the previous prompt.",
                file=sys.stderr,
            )
            refined = fallback_prompt
        verdict["refined_prompt"] = refined
    return verdict


def _request_review(llm, messages: list, image_url: str, fallback_prompt: str) -> tuple[str, dict]:
    response = invoke_with_retry(llm, messages)
    raw = first_tool_call(response)
    if raw is None:
        raise ValueError("Reviewer did not call reviewImage.")
    call = parse_tool_call(raw)
    if not isinstance(call, ReviewImageCall):
        raise ValueError(f"Reviewer called {raw.get('name')} instead of reviewImage.")
    return call.call_id, _validate_review(call, image_url, fallback_prompt)


def review_node(state: LoopState) -> dict:
    """Reviewer node for the loop graph.

    Reads the latest attempt (whose image is already injected into the
    message history), asks the agent model for a structured verdict, and
    records it. A reviewer that cannot produce a valid verdict after one
    re-prompt fails the attempt: an unreviewed image never passes.
    """
    config = get_config()
    attempts = [dict(a) for a in state["attempts"]]
    attempt = attempts[-1]

    llm = ChatAnthropic(
        model=config["agent_model"],
        temperature=0,
        default_request_timeout=request_timeout(state),
    ).bind_tools(
        ALL_TOOLS, tool_choice="reviewImage"
    )
    system_content = SYSTEM_PROMPT
    rules = load_prompt_rules()
    if rules:
        system_content += f"\n\n## Native Ad Prompt Rules (for refined_prompt)\n{rules}"
    messages = [SystemMessage(content=system_content)] + list(state["messages"])

    try:
        try:
            call_id, verdict = _request_review(llm, messages, attempt["imageUrl"], attempt["prompt"])
        except ValueError as exc:
            retry_messages = messages + [
                HumanMessage(
                    content=(
                        f"Your review was rejected: {exc}. Call the reviewImage tool again "
                        "with a valid assessment of the image above."
                    )
                )
            ]
            call_id, verdict = _request_review(llm, retry_messages, attempt["imageUrl"], attempt["prompt"])
    except ValueError as exc:
        reason = f"Review failed: {exc}"
        print(f"[NAS] {reason}", file=sys.stderr)
        attempt.update({"passed": False, "error": reason})
        attempts[-1] = attempt
        update = {"attempts": attempts, "steps": state["steps"] + 1}
        update.update(after_failure(state, attempts, reason, attempt["prompt"], kind="review"))
        return update

    call_id = call_id or f"review_{state['loop_id']}_{attempt['attemptNumber']}"
    tool_args = {k: verdict[k] for k in ("image_url", "passes", "score", "issues")}
    if "refined_prompt" in verdict:
        tool_args["refined_prompt"] = verdict["refined_prompt"]

    messages_out = list(state["messages"]) + [
        AIMessage(content="", tool_calls=[{"name": "reviewImage", "args": tool_args, "id": call_id}]),
        ToolMessage(content=json.dumps(verdict), tool_call_id=call_id),
    ]

    attempt.update({
        "reviewScore": verdict["score"],
        "passed": verdict["passes"],
        "issues": verdict["issues"],
    })
    attempts[-1] = attempt

    update = {
        "attempts": attempts,
        "messages": messages_out,
        "steps": state["steps"] + 1,
    }
    if verdict["passes"]:
        update["phase"] = "narrating"
    else:
        band = review_band(verdict["score"])
        label = "Marginal" if band == "marginal" else "Failed"
        reason = f"{label} review ({verdict['score']}/{MAX_SCORE}): " + "; ".join(verdict["issues"])
        update.update(after_failure(state, attempts, reason, verdict["refined_prompt"], kind="review"))
    return update
