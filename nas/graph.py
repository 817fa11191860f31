"""LangGraph StateGraph definition for the generate-review-approve loop."""

import sys
import time
import uuid
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Optional

from langchain_core.messages import HumanMessage
from langchain_core.runnables import RunnableConfig
from langgraph.graph import END, StateGraph

from nas.agents.generator import narrate_node, plan_node, synthesize_node
from nas.agents.reviewer import review_node
from nas.config import get_config
from nas.control import LoopControl, stop_requested, time_left
from nas.gate import apply_decision, discard_pending, gate_node
from nas.state import ApprovalDecision, LoopState

_PHASE_NODES = {
    "planning": "plan",
    "synthesizing": "synthesize",
    "reviewing": "review",
    "gating": "gate",
    "narrating": "narrate",
}


def _deadline_passed(state: LoopState) -> bool:
    return time_left(state) <= 0


def _route_next(state: LoopState, config: Optional[RunnableConfig] = None) -> str:
    """Conditional edge: pick the next node from the loop phase.

    Priority order:
    1. loop stopped by its control, terminal outcome or paused for approval → end
    2. wall-clock budget spent → timeout
    3. step ceiling reached → step_limit
    4. otherwise the node owning the current phase
    """
    if stop_requested(config):
        return "end"
    if state.get("outcome") or state["phase"] in ("done", "awaiting_approval"):
        return "end"
    if _deadline_passed(state):
        return "timeout"
    if state["steps"] >= get_config().get("max_steps", 12):
        return "step_limit"
    return _PHASE_NODES[state["phase"]]


def _set_timeout(state: LoopState) -> dict:
    """Terminate when the wall-clock budget is spent."""
    return {
        "phase": "done",
        "outcome": "synthesis-error",
        "error": "Generation timed out.",
        "pending_approval": None,
    }


def _set_step_limit(state: LoopState) -> dict:
    """Terminate when the step ceiling is hit."""
    return {
        "phase": "done",
        "outcome": "step-limit-exceeded",
        "error": f"Step limit of {state['steps']} reached.",
        "pending_approval": None,
    }


# --- Build the graph ---

_ROUTES = {
    "plan": "plan",
    "synthesize": "synthesize",
    "review": "review",
    "gate": "gate",
    "narrate": "narrate",
    "timeout": "timeout",
    "step_limit": "step_limit",
    "end": END,
}

workflow = StateGraph(LoopState)

workflow.add_node("plan", plan_node)
workflow.add_node("synthesize", synthesize_node)
workflow.add_node("review", review_node)
workflow.add_node("gate", gate_node)
workflow.add_node("narrate", narrate_node)
workflow.add_node("timeout", _set_timeout)
workflow.add_node("step_limit", _set_step_limit)

# The entry point is phase-routed so a resumed state re-enters where it paused.
workflow.set_conditional_entry_point(_route_next, _ROUTES)

for _node in ("plan", "synthesize", "review", "gate", "narrate"):
    workflow.add_conditional_edges(_node, _route_next, _ROUTES)

workflow.add_edge("timeout", END)
workflow.add_edge("step_limit", END)

graph = workflow.compile()


# --- Loop helpers used by the session controller ---

def new_loop_state(
    prompt: str,
    reference_images: list[str] | None = None,
    history: list | None = None,
    settings: dict | None = None,
) -> LoopState:
    """Build the initial state for one concept's loop."""
    images = list(reference_images or [])
    content = prompt
    if images:
        content = [{"type": "text", "text": prompt}] + [
            {"type": "image_url", "image_url": {"url": url}} for url in images
        ]
    return {
        "loop_id": uuid.uuid4().hex[:12],
        "prompt": prompt,
        "reference_images": images,
        "settings": dict(settings or {}),
        "messages": list(history or []) + [HumanMessage(content=content)],
        "attempts": [],
        "gated_attempts": [],
        "pending_approval": None,
        "next_prompt": None,
        "failure_reason": None,
        "next_images": [],
        "steps": 0,
        "elapsed": 0.0,
        "run_started_at": None,
        "phase": "planning",
        "outcome": None,
        "final_text": "",
        "error": None,
    }


def _cancelled(state: LoopState) -> dict:
    """Terminate a loop its control stopped; an open approval is dropped."""
    return {
        "messages": discard_pending(state["messages"]),
        "phase": "done",
        "outcome": "synthesis-error",
        "error": "Generation cancelled.",
        "pending_approval": None,
    }


def advance(state: LoopState, control: Optional[LoopControl] = None) -> LoopState:
    """Run the graph from the state's phase until it pauses or terminates.

    The graph runs on a worker tracked by ``control``. The caller gets the
    loop back no later than its remaining time budget: a node still running
    at the deadline is told to stop and the loop ends as timed out with what
    it had recorded so far. Node errors end the loop with ``synthesis-error``;
    a failure never escapes as an exception to the session.
    """
    config = get_config()
    control = control or LoopControl()
    started = time.monotonic()
    running = {**state, "run_started_at": started}
    run_config = {
        "recursion_limit": config.get("max_steps", 12) * 2 + 10,
        "configurable": {"loop_control": control},
    }
    latest = {"state": running}

    def _run():
        for snapshot in graph.stream(running, run_config, stream_mode="values"):
            latest["state"] = snapshot
        return latest["state"]

    worker = control.submit(_run)
    try:
        result = worker.result(timeout=max(time_left(running), 0.0))
    except FutureTimeout:
        control.stop()
        print(f"[NAS] Loop {state['loop_id']} ran out of time; stopping it.", file=sys.stderr)
        result = {**latest["state"], **_set_timeout(latest["state"])}
    except Exception as exc:
        print(f"[NAS] Loop {state['loop_id']} failed: {exc!r}", file=sys.stderr)
        result = {
            **latest["state"],
            "phase": "done",
            "outcome": "synthesis-error",
            "error": str(exc) or type(exc).__name__,
            "pending_approval": None,
        }

    if control.stopped and result["phase"] != "done":
        result = {**result, **_cancelled(result)}
    return {
        **result,
        "elapsed": state.get("elapsed", 0.0) + (time.monotonic() - started),
        "run_started_at": None,
    }


def start_loop(
    prompt: str,
    reference_images: list[str] | None = None,
    history: list | None = None,
    settings: dict | None = None,
    control: Optional[LoopControl] = None,
) -> LoopState:
    """Enter the loop with a generation-ready prompt and run to the first stop."""
    return advance(new_loop_state(prompt, reference_images, history, settings), control)


def resume_loop(
    state: LoopState,
    decision: ApprovalDecision,
    control: Optional[LoopControl] = None,
) -> LoopState:
    """Apply an approval decision to a paused loop and continue it."""
    resolved = apply_decision(state, decision)
    if resolved["phase"] == "done":
        return resolved
    return advance(resolved, control)



def abandon_loop(state: LoopState) -> LoopState:
    """Tear down a loop; a pending approval is discarded, never resumed."""
    return {
        **state,
        "messages": discard_pending(state["messages"]),
        "pending_approval": None,
        "phase": "done",
        "run_started_at": None,
    }


def is_paused(state: LoopState) -> bool:
    return state["phase"] == "awaiting_approval" and bool(state.get("pending_approval"))


def is_terminal(state: LoopState) -> bool:
    return state["phase"] == "done"
