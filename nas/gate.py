"""Retry Approval Gate — suspends the loop until a human approves a retry.

Per generation cycle the gate is ``not_needed`` (first attempt, or nothing
failed), ``pending`` (an ApprovalRequest is open and the loop is paused) or
``resolved``. In the message history a pending gate is an ``approveRetry``
tool call with no tool result; the decision becomes that result.

Everything here is a pure function of the loop state: the decision reducer
``apply_decision`` computes the next state instead of relying on a generic
"resume when all tool results are present" heuristic.
"""

import json
from typing import Literal

from langchain_core.messages import AIMessage, ToolMessage

from nas.config import get_config
from nas.state import ApprovalDecision, ApprovalRequest, GenerationAttempt, LoopState

class InvalidTransitionError(RuntimeError):
    """Raised when a decision or transition does not apply to the current state."""


def _max_attempts() -> int:
    return get_config().get("max_attempts", 3)


def after_failure(
    state: LoopState,
    attempts: list[GenerationAttempt],
    reason: str,
    refined_prompt: str,
    kind: Literal["synthesis", "review"],
) -> dict:
    """Route a failed attempt: open the gate, or terminate at the attempt cap.

    At the cap the gate is skipped entirely. The terminal outcome names what
    failed last: a synthesis error, or a review that never passed.
    """
    if len(attempts) >= _max_attempts():
        return {
            "phase": "done",
            "outcome": "synthesis-error" if kind == "synthesis" else "failed-max-retries",
            "failure_reason": reason,
            "error": reason,
            "next_prompt": None,
        }
    return {
        "phase": "gating",
        "failure_reason": reason,
        "next_prompt": refined_prompt,
    }


def gate_node(state: LoopState) -> dict:
    """Open the gate for the next attempt and pause the loop.

    Emits an ApprovalRequest and appends the matching ``approveRetry`` call
    (with no result) to the history. Raises InvalidTransitionError if a gate
    was already opened for that attempt number.
    """
    attempt_number = len(state["attempts"]) + 1
    if attempt_number in state["gated_attempts"]:
        raise InvalidTransitionError(f"Gate already opened for attempt {attempt_number}.")
    if attempt_number < 2:
        raise InvalidTransitionError("The first attempt never requires approval.")

    call_id = f"approve_{state['loop_id']}_{attempt_number}"
    request: ApprovalRequest = {
        "failureReason": state.get("failure_reason") or "The previous image failed review.",
        "refinedPrompt": state["next_prompt"] or state["prompt"],
        "attemptNumber": attempt_number,
        "toolCallId": call_id,
    }
    tool_call = {
        "name": "approveRetry",
        "args": {
            "failureReason": request["failureReason"],
            "refinedPrompt": request["refinedPrompt"],
            "attemptNumber": attempt_number,
        },
        "id": call_id,
    }
    return {
        "pending_approval": request,
        "gated_attempts": state["gated_attempts"] + [attempt_number],
        "messages": list(state["messages"]) + [AIMessage(content="", tool_calls=[tool_call])],
        "steps": state["steps"] + 1,
        "phase": "awaiting_approval",
    }


def apply_decision(state: LoopState, decision: ApprovalDecision) -> LoopState:
    """Resolve the pending ApprovalRequest with exactly one decision.

    Approved: the next synthesis call uses the request's refined prompt.
    Rejected: the loop terminates with ``rejected-by-user``.
    Raises InvalidTransitionError when nothing is pending or the decision
    names a different loop.
    """
    request = state.get("pending_approval")
    if state["phase"] != "awaiting_approval" or not request:
        raise InvalidTransitionError("No retry approval is pending.")
    loop_id = decision.get("loop_id")
    if loop_id is not None and loop_id != state["loop_id"]:
        raise InvalidTransitionError("Decision is for a different generation.")
    approved = decision.get("approved")
    if not isinstance(approved, bool):
        raise InvalidTransitionError("Decision must include approved=true|false.")

    messages = list(state["messages"]) + [
        ToolMessage(content=json.dumps({"approved": approved}), tool_call_id=request["toolCallId"])
    ]
    if approved:
        return {
            **state,
            "messages": messages,
            "pending_approval": None,
            "next_prompt": request["refinedPrompt"],
            "phase": "synthesizing",
        }
    return {
        **state,
        "messages": messages,
        "pending_approval": None,
        "next_prompt": None,
        "phase": "done",
        "outcome": "rejected-by-user",
    }


def discard_pending(messages: list) -> list:
    """Drop unanswered ``approveRetry`` calls so a torn-down gate never resumes."""
    answered = {m.tool_call_id for m in messages if isinstance(m, ToolMessage)}
    kept = []
    for message in messages:
        calls = getattr(message, "tool_calls", None) or []
        dangling = [c for c in calls if c.get("name") == "approveRetry" and c.get("id") not in answered]
        if dangling and len(dangling) == len(calls) and not message.content:
            continue
        kept.append(message)
    return kept


def compute_checkpoints(loop_id: str, attempts: list[GenerationAttempt]) -> list[str]:
    """Return one checkpoint id per passing attempt, de-duplicated."""
    seen = []
    for attempt in attempts:
        if attempt.get("passed") is True:
            checkpoint = f"{loop_id}:{attempt['attemptNumber']}"
            if checkpoint not in seen:
                seen.append(checkpoint)
    return seen
