"""Tool schemas exchanged with the reasoning model, and their typed call variants.

The three tools form a closed set. ``parse_tool_call`` turns a raw LangChain
tool call (``{"name", "args", "id"}``) into one of the frozen dataclasses
below so the loop matches on type instead of comparing tool-name strings.
``approveRetry`` has no executor: a call to it without a tool result in the
history is the pause signal.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Union

MAX_REFERENCE_IMAGES = 14

GENERATE_IMAGE_TOOL = {
    "name": "generateImage",
    "description": "Generate a native-style ad image from a complete visual prompt.",
    "input_schema": {
        "type": "object",
        "properties": {
            "prompt": {
                "type": "string",
                "description": "The native ad image prompt to generate",
            },
            "image_input": {
                "type": "array",
                "items": {"type": "string"},
                "minItems": 1,
                "maxItems": MAX_REFERENCE_IMAGES,
                "description": "Optional reference image URLs (up to 14)",
            },
        },
        "required": ["prompt"],
    },
}

REVIEW_IMAGE_TOOL = {
    "name": "reviewImage",
    "description": (
        "Review the generated image against the Native Ad Performance Checklist "
        "and return a structured quality assessment."
    ),
    "input_schema": {
        "type": "object",
        "properties": {
            "image_url": {"type": "string", "description": "The URL of the generated image"},
            "passes": {"type": "boolean", "description": "Whether the image passes the checklist"},
            "score": {
                "type": "integer",
                "minimum": 0,
                "maximum": 7,
                "description": "Quality score out of 7 based on the checklist",
            },
            "issues": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Specific issues found, empty array if none",
            },
            "refined_prompt": {
                "type": "string",
                "description": "Improved prompt addressing the issues, only when passes=false",
            },
        },
        "required": ["image_url", "passes", "score", "issues"],
    },
}

APPROVE_RETRY_TOOL = {
    "name": "approveRetry",
    "description": (
        "Request user approval before retrying image generation. "
        "MUST be called before every 2nd or 3rd generateImage attempt."
    ),
    "input_schema": {
        "type": "object",
        "properties": {
            "failureReason": {
                "type": "string",
                "description": "1-2 sentence explanation of why the image failed review",
            },
            "refinedPrompt": {
                "type": "string",
                "description": "The improved prompt used if the retry is approved",
            },
            "attemptNumber": {
                "type": "integer",
                "enum": [2, 3, 4],
                "description": "Which generation attempt this will be",
            },
        },
        "required": ["failureReason", "refinedPrompt", "attemptNumber"],
    },
}


@dataclass(frozen=True)
class GenerateImageCall:
    call_id: str
    prompt: str
    image_input: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ReviewImageCall:
    call_id: str
    image_url: str
    passes: bool
    score: int
    issues: tuple[str, ...]
    refined_prompt: Optional[str] = None


@dataclass(frozen=True)
class ApproveRetryCall:
    call_id: str
    failure_reason: str
    refined_prompt: str
    attempt_number: int


ToolCall = Union[GenerateImageCall, ReviewImageCall, ApproveRetryCall]


def _require(args: dict, key: str, kind: type, tool: str):
    if key not in args:
        raise ValueError(f"{tool} call missing '{key}'.")
    value = args[key]
    # bool is an int subclass; don't let True pass as a score.
    if kind is int and isinstance(value, bool):
        raise ValueError(f"{tool} '{key}' must be an integer.")
    if kind is int and isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, kind):
        raise ValueError(f"{tool} '{key}' must be {kind.__name__}, got {type(value).__name__}.")
    return value


def parse_tool_call(raw: dict) -> ToolCall:
    """Convert a LangChain tool call dict into its typed variant.

    Raises ValueError on unknown tool names or malformed arguments.
    """
    name = raw.get("name")
    args = raw.get("args") or {}
    call_id = raw.get("id") or ""

    if name == "generateImage":
        prompt = _require(args, "prompt", str, name)
        image_input = args.get("image_input") or []
        if not isinstance(image_input, list) or not all(isinstance(u, str) for u in image_input):
            raise ValueError("generateImage 'image_input' must be a list of strings.")
        return GenerateImageCall(call_id, prompt, tuple(image_input[:MAX_REFERENCE_IMAGES]))

    if name == "reviewImage":
        issues = args.get("issues", [])
        if not isinstance(issues, list):
            raise ValueError("reviewImage 'issues' must be a list.")
        refined = args.get("refined_prompt")
        return ReviewImageCall(
            call_id=call_id,
            image_url=_require(args, "image_url", str, name),
            passes=_require(args, "passes", bool, name),
            score=_require(args, "score", int, name),
            issues=tuple(str(i) for i in issues),
            refined_prompt=refined if isinstance(refined, str) and refined.strip() else None,
        )

    if name == "approveRetry":
        return ApproveRetryCall(
            call_id=call_id,
            failure_reason=_require(args, "failureReason", str, name),
            refined_prompt=_require(args, "refinedPrompt", str, name),
            attempt_number=_require(args, "attemptNumber", int, name),
        )

    raise ValueError(f"Unknown tool '{name}'.")


# Every loop call binds all three tools: the history may contain calls to any of them.
ALL_TOOLS = [GENERATE_IMAGE_TOOL, REVIEW_IMAGE_TOOL, APPROVE_RETRY_TOOL]


def first_tool_call(message) -> Optional[dict]:
    """Return the first raw tool call on an AI message, or None."""
    calls = getattr(message, "tool_calls", None) or []
    return calls[0] if calls else None
