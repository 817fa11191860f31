"""Generator agent: plans the generateImage call, runs synthesis, narrates the result.

The plan step asks the agent model for exactly one ``generateImage`` call.
Synthesis runs through the adapter and is recorded in the history as a
tool call plus result; a successful image is then injected as a user turn
so the reviewer looks at pixels, not at the prompt.
"""

import json
import sys
import time
from typing import Optional

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage
from langchain_core.runnables import RunnableConfig

from nas.config import get_config
from nas.control import control_from, request_timeout, time_left
from nas.gate import InvalidTransitionError, after_failure
from nas.state import OUTCOME_MESSAGES, GenerationAttempt, LoopState
from nas.storage import is_durable_url
from nas.synthesis import get_synthesizer, merge_reference_images
from nas.tools import ALL_TOOLS, GenerateImageCall, first_tool_call, parse_tool_call
from nas.utils.parsing import invoke_with_retry, message_text
from nas.utils.prompt_rules import load_prompt_rules

GENERATION_SYSTEM_PROMPT = """\
You are a native ad image generation agent. You turn a generation-ready prompt \
into a scroll-stopping, authentic-looking native ad image.

## Workflow
1. Call generateImage with the user's prompt. Keep the prompt intact; only \
tighten wording that would make the image look staged or branded.
2. After the image is shown to you, review it with reviewImage.
3. If it fails, the system asks the user to approve a retry with your refined prompt.
4. When an image passes, reply with one or two sentences describing what was produced.

## Reference images
Only pass image_input URLs that the user attached in this conversation. Never \
invent or guess image URLs.
"""

NARRATE_INSTRUCTION = (
    "The image passed review. In one or two sentences, tell the user what the "
    "final image shows and why it works as a native ad. Do not call any tools."
)


def _system_prompt() -> str:
    rules = load_prompt_rules()
    if not rules:
        return GENERATION_SYSTEM_PROMPT
    return GENERATION_SYSTEM_PROMPT + f"\n## Native Ad Prompt Rules\n{rules}\n"


def _agent_llm(state: LoopState, tool_choice=None):
    config = get_config()
    llm = ChatAnthropic(
        model=config["agent_model"],
        temperature=0.4,
        default_request_timeout=request_timeout(state),
    )
    if tool_choice:
        return llm.bind_tools(ALL_TOOLS, tool_choice=tool_choice)
    return llm.bind_tools(ALL_TOOLS)


def plan_node(state: LoopState) -> dict:
    """Ask the agent for the first generateImage call.

    A missing or malformed call falls back to the loop's entry prompt; the
    entry prompt is already generation-ready.
    """
    llm = _agent_llm(state, tool_choice="generateImage")
    messages = [SystemMessage(content=_system_prompt())] + list(state["messages"])

    prompt = state["prompt"]
    model_images: tuple = ()
    try:
        raw = first_tool_call(invoke_with_retry(llm, messages))
        call = parse_tool_call(raw) if raw else None
        if isinstance(call, GenerateImageCall) and call.prompt.strip():
            prompt = call.prompt.strip()
            model_images = call.image_input
        else:
            print("[NAS] Warning: planner returned no generateImage call. Using the entry prompt.", file=sys.stderr)
    except ValueError as exc:
        print(f"[NAS] Warning: invalid generateImage call ({exc}). Using the entry prompt.", file=sys.stderr)

    return {
        "next_prompt": prompt,
        "next_images": merge_reference_images(
            model_images, state["reference_images"], is_trusted=is_durable_url,
        ),
        "steps": state["steps"] + 1,
        "phase": "synthesizing",
    }


def synthesize_node(state: LoopState, config: Optional[RunnableConfig] = None) -> dict:
    """Run one synthesis call and record it as a generation attempt.

    Refuses to run past the attempt cap, and refuses any attempt after the
    first that no gate has approved.
    """
    attempt_number = len(state["attempts"]) + 1
    if attempt_number > get_config().get("max_attempts", 3):
        raise InvalidTransitionError(f"Attempt {attempt_number} exceeds the attempt limit.")
    if attempt_number > 1 and attempt_number not in state["gated_attempts"]:
        raise InvalidTransitionError(f"Attempt {attempt_number} was never approved.")

    prompt = state["next_prompt"] or state["prompt"]
    images = list(state["next_images"])
    control = control_from(config)
    result = get_synthesizer().generate(
        prompt,
        images,
        state["settings"],
        deadline=time.monotonic() + time_left(state),
        should_stop=(lambda: control.stopped) if control is not None else None,
    )

    call_id = f"generate_{state['loop_id']}_{attempt_number}"
    args = {"prompt": prompt}
    if images:
        args["image_input"] = images
    messages = list(state["messages"]) + [
        AIMessage(content="", tool_calls=[{"name": "generateImage", "args": args, "id": call_id}]),
        ToolMessage(content=json.dumps(result), tool_call_id=call_id),
    ]

    attempt: GenerationAttempt = {
        "attemptNumber": attempt_number,
        "prompt": prompt,
        "imageUrl": result.get("imageUrl") if result.get("success") else None,
        "reviewScore": None,
        "passed": None,
        "error": None if result.get("success") else (result.get("error") or "Image generation failed"),
        "issues": [],
    }
    attempts = list(state["attempts"]) + [attempt]
    update = {
        "attempts": attempts,
        "steps": state["steps"] + 1,
        "pending_approval": None,
    }

    if result.get("success"):
        messages.append(HumanMessage(content=[
            {"type": "image_url", "image_url": {"url": attempt["imageUrl"]}},
            {
                "type": "text",
                "text": (
                    "This is the generated image. Review it against the checklist "
                    "and call reviewImage."
                ),
            },
        ]))
        update["messages"] = messages
        update["phase"] = "reviewing"
        return update

    attempt["passed"] = False
    update["messages"] = messages
    reason = f"Image generation failed: {attempt['error']}"
    print(f"[NAS] {reason}", file=sys.stderr)
    update.update(after_failure(state, attempts, reason, prompt, kind="synthesis"))
    return update


def narrate_node(state: LoopState) -> dict:
    """Produce the closing assistant text after a passing review."""
    llm = _agent_llm(state)
    messages = (
        [SystemMessage(content=_system_prompt())]
        + list(state["messages"])
        + [HumanMessage(content=NARRATE_INSTRUCTION)]
    )
    try:
        response = invoke_with_retry(llm, messages)
        text = message_text(response).strip()
    except Exception as exc:
        print(f"[NAS] Warning: narration failed ({exc!r}). Using the default message.", file=sys.stderr)
        text = ""

    text = text or OUTCOME_MESSAGES["passed"]
    return {
        "messages": list(state["messages"]) + [AIMessage(content=text)],
        "final_text": text,
        "steps": state["steps"] + 1,
        "phase": "done",
        "outcome": "passed",
    }
