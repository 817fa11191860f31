"""Loop and session data shapes shared across the studio."""

from typing import Any, Literal, Optional, TypedDict

LoopPhase = Literal[
    "planning",
    "synthesizing",
    "reviewing",
    "gating",
    "awaiting_approval",
    "narrating",
    "done",
]

LoopOutcome = Literal[
    "passed",
    "failed-max-retries",
    "rejected-by-user",
    "step-limit-exceeded",
    "synthesis-error",
]

SessionPhase = Literal["idle", "ideating", "clarifying", "awaiting", "generating"]

OUTCOME_MESSAGES: dict[str, str] = {
    "passed": "Image passed review.",
    "failed-max-retries": "Image failed review after the maximum number of attempts.",
    "rejected-by-user": "Retry skipped; generation stopped at your request.",
    "step-limit-exceeded": "Stopped: the agent ran out of steps for this concept.",
    "synthesis-error": "Image generation failed.",
}


class ClarificationQuestion(TypedDict):
    id: str  # "product", "persona" or "angle"
    question: str
    options: list[str]  # Last option is always the free-text escape.


class ClarificationResult(TypedDict):
    type: Literal["clarify"]
    questions: list[ClarificationQuestion]


class IdeationResult(TypedDict):
    type: Literal["ideate"]
    primaryPrompt: str
    variations: list[str]
    additionalConcepts: list[str]


class GenerationAttempt(TypedDict):
    attemptNumber: int  # 1-indexed within one loop.
    prompt: str
    imageUrl: Optional[str]
    reviewScore: Optional[int]
    passed: Optional[bool]
    error: Optional[str]
    issues: list[str]


class ApprovalRequest(TypedDict):
    failureReason: str
    refinedPrompt: str
    attemptNumber: int  # The attempt this approval would unlock (2, 3, ...).
    toolCallId: str


class ApprovalDecision(TypedDict, total=False):
    approved: bool
    loop_id: str  # When present, must match the paused loop.


class LoopState(TypedDict):
    loop_id: str
    prompt: str  # Generation-ready prompt the loop was entered with. Immutable.
    reference_images: list[str]
    settings: dict
    messages: list[Any]  # LangChain messages; the reasoning model's history.
    attempts: list[GenerationAttempt]
    gated_attempts: list[int]  # attemptNumbers a gate has been opened for.
    pending_approval: Optional[ApprovalRequest]
    next_prompt: Optional[str]  # Prompt for the next synthesis call.
    failure_reason: Optional[str]  # Why the latest attempt failed; feeds the gate.
    next_images: list[str]
    steps: int
    elapsed: float  # Seconds of running (not paused) time.
    run_started_at: Optional[float]
    phase: LoopPhase
    outcome: Optional[LoopOutcome]
    final_text: str
    error: Optional[str]
