"""Session controller: the phase state machine and the queue processor.

One ``Session`` is one chat. It owns the phase, the concept queue, the chat
id and the generation settings, and it is the only thing that mutates them.
Blocking work (ideation, the agent loop) runs on executor threads; ``cancel``
stops the running loop through its ``LoopControl`` and the session stays
busy until abandoned work has actually returned.

Phases::

    idle --submit--> ideating --clarify--> clarifying --answer/skip--> ideating
    ideating --ideas--> awaiting --pick--> generating --loop ends--> idle
    generating --loop ends, queue non-empty--> generating (next concept)
    any --cancel--> idle (queue preserved)
"""

import asyncio
import functools
import sys
from dataclasses import dataclass, field
from typing import Callable, Optional

from langchain_core.messages import AIMessage, HumanMessage

from nas.agents.clarifier import format_concept
from nas.agents.ideation import IdeationError, run_ideation
from nas.control import LoopControl
from nas.gate import InvalidTransitionError, compute_checkpoints
from nas.graph import abandon_loop, is_paused, resume_loop, start_loop
from nas.queue import ConceptQueue, QueuedConcept
from nas.state import (
    OUTCOME_MESSAGES,
    ApprovalRequest,
    ClarificationResult,
    GenerationAttempt,
    IdeationResult,
    LoopState,
    SessionPhase,
)
from nas.utils.validator import validate_answers, validate_concept

FOLLOW_UP_PROMPT = "Refine or generate a new native ad"
ATTACHMENT_ONLY_PROMPT = "Generate a native ad with the attached images"
UNTITLED_CHAT = "Untitled chat"
MAX_TITLE_CHARS = 100


class SessionBusyError(RuntimeError):
    """Raised when input arrives while the session is not idle."""


@dataclass
class LoopResult:
    """What the user sees for one finished concept."""

    concept: str
    loop_id: str
    outcome: str
    message: str
    final_text: str = ""
    attempts: list[GenerationAttempt] = field(default_factory=list)
    checkpoints: list[str] = field(default_factory=list)

    @property
    def image_url(self) -> Optional[str]:
        """The passing image, else the last image produced."""
        for attempt in reversed(self.attempts):
            if attempt.get("passed") and attempt.get("imageUrl"):
                return attempt["imageUrl"]
        for attempt in reversed(self.attempts):
            if attempt.get("imageUrl"):
                return attempt["imageUrl"]
        return None


def describe_outcome(state: LoopState) -> str:
    """Render a terminal loop state as one user-visible line."""
    outcome = state.get("outcome") or "synthesis-error"
    message = OUTCOME_MESSAGES[outcome]
    if outcome in ("synthesis-error", "step-limit-exceeded") and state.get("error"):
        detail = state["error"].splitlines()[0]
        return f"{message} {detail}"
    return message


def extract_title(transcript: list[dict]) -> str:
    """First user text in the chat, trimmed to the title length."""
    for entry in transcript:
        if entry.get("role") != "user":
            continue
        for part in entry.get("parts", []):
            if part.get("type") == "text" and part.get("text", "").strip():
                return part["text"].strip()[:MAX_TITLE_CHARS]
    return UNTITLED_CHAT


def extract_thumbnail(transcript: list[dict]) -> Optional[str]:
    """First successfully generated image in the chat."""
    for entry in transcript:
        for part in entry.get("parts", []):
            if part.get("type") == "image" and part.get("url"):
                return part["url"]
    return None


def strip_file_parts(transcript: list[dict]) -> list[dict]:
    """Drop attachment parts; data: URLs are too large to store with the chat."""
    return [
        {**entry, "parts": [p for p in entry.get("parts", []) if p.get("type") != "file"]}
        for entry in transcript
    ]


class Session:
    """One chat's phase machine, queue and loop driver.

    Collaborators are injectable so tests can drive the machine without
    models: ``ideate_fn(concept, answers, finalize)``,
    ``start_fn(prompt, images, history, settings, control)``,
    ``resume_fn(state, decision, control)`` and a chat ``sink`` with ``upsert_chat``.
    """

    def __init__(
        self,
        settings: Optional[dict] = None,
        chat_id: Optional[str] = None,
        sink=None,
        ideate_fn: Optional[Callable] = None,
        start_fn: Optional[Callable] = None,
        resume_fn: Optional[Callable] = None,
    ):
        self.settings = dict(settings or {})
        self.chat_id = chat_id
        self.sink = sink
        self._ideate = ideate_fn or run_ideation
        self._start = start_fn or start_loop
        self._resume = resume_fn or resume_loop

        self.phase: SessionPhase = "idle"
        self.queue = ConceptQueue()
        self.concept: str = ""
        self.answers: dict[str, str] = {}
        self.clarification: Optional[ClarificationResult] = None
        self.ideation: Optional[IdeationResult] = None
        self.current: Optional[QueuedConcept] = None
        self.loop_state: Optional[LoopState] = None
        self.pending_files: list[str] = []
        self.transcript: list[dict] = []
        self.results: list[LoopResult] = []
        self.checkpoints: list[str] = []
        self.notices: list[str] = []

        self._task: Optional[asyncio.Future] = None
        self._inflight: set[asyncio.Future] = set()
        self._control: Optional[LoopControl] = None
        self._epoch = 0

    # --- Read-only views ---

    @property
    def pending_approval(self) -> Optional[ApprovalRequest]:
        if self.loop_state and is_paused(self.loop_state):
            return self.loop_state["pending_approval"]
        return None

    @property
    def busy(self) -> bool:
        """True while any worker, including one abandoned by cancel, is still running."""
        if any(not work.done() for work in self._inflight):
            return True
        return self._control is not None and self._control.running

    def _notify(self, line: str) -> None:
        self.notices.append(line)

    def _require_phase(self, *phases: str) -> None:
        if self.phase not in phases:
            raise InvalidTransitionError(f"Not allowed while {self.phase}.")
        if self.busy:
            raise SessionBusyError("A step is already running.")

    # --- Transitions ---

    async def submit(self, text: str, attachments: Optional[list[str]] = None) -> None:
        """Start a new concept, or a follow-up turn in an existing chat.

        Rejected with SessionBusyError unless the session is idle.
        """
        if self.phase != "idle" or self.busy:
            raise SessionBusyError(f"Cannot submit while {self.phase}.")
        text = (text or "").strip()
        files = [url for url in (attachments or []) if isinstance(url, str) and url.startswith("data:")]
        if attachments and len(files) < len(attachments):
            print("[NAS] Warning: ignored attachments that are not data: URLs.", file=sys.stderr)
        if not text and not files:
            raise ValueError("Concept must be a non-empty string.")

        if files:
            self.pending_files = files

        if self.transcript:
            await self._trigger_generation(text or FOLLOW_UP_PROMPT)
            return
        if not text:
            await self._trigger_generation(ATTACHMENT_ONLY_PROMPT)
            return

        self.concept = validate_concept(text)
        self.answers = {}
        await self._run_ideation(answers=None)

    async def answer_clarification(self, answers: dict) -> None:
        """Merge the user's answers and re-run ideation.

        An empty answer map is a skip: ideation is finalized and never asks again.
        """
        self._require_phase("clarifying")
        cleaned = validate_answers(answers)
        if not cleaned:
            await self.skip_clarification()
            return
        self.answers.update(cleaned)
        await self._run_ideation(answers=dict(self.answers))

    async def skip_clarification(self) -> None:
        self._require_phase("clarifying")
        await self._run_ideation(answers=dict(self.answers), finalize=True)

    async def pick_prompt(self, prompt: Optional[str] = None, index: Optional[int] = None) -> None:
        """Generate from an ideation prompt: 0 is the primary, 1.. the variations."""
        self._require_phase("awaiting")
        if prompt is None:
            prompt = self._ideation_prompt(index or 0)
        await self._trigger_generation(validate_concept(prompt))

    def enqueue(self, prompt: Optional[str] = None, index: Optional[int] = None) -> QueuedConcept:
        """Queue a variation for unattended generation after the current loop."""
        if self.phase not in ("awaiting", "generating"):
            raise InvalidTransitionError(f"Cannot queue while {self.phase}.")
        if prompt is None:
            prompt = self._ideation_prompt(index or 0)
        label = f"Variation {index}" if index else None
        item = self.queue.enqueue(prompt, label=label)
        self._notify("Added to queue")
        return item

    def remove_from_queue(self, index: int) -> QueuedConcept:
        return self.queue.remove(index)

    async def decide(self, approved: bool, loop_id: Optional[str] = None) -> None:
        """Resolve the paused loop's retry approval and continue it."""
        self._require_phase("generating")
        state = self.loop_state
        if state is None or not is_paused(state):
            raise InvalidTransitionError("No retry approval is pending.")
        if loop_id is not None and loop_id != state["loop_id"]:
            raise InvalidTransitionError("Decision is for a different generation.")

        epoch = self._epoch
        decision = {"approved": approved, "loop_id": state["loop_id"]}
        try:
            new_state = await self._run_blocking(self._resume, state, decision, self._control)
        except asyncio.CancelledError:
            if epoch != self._epoch:
                return
            raise
        if epoch != self._epoch:
            return
        await self._handle_loop_state(new_state)

    def cancel(self) -> None:
        """Abort in-flight work and return to idle, keeping the queue.

        Attempts and checkpoints already produced stay recorded; a pending
        approval is discarded.
        """
        self._epoch += 1
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        if self._control is not None:
            self._control.stop()

        if self.loop_state is not None:
            abandoned = abandon_loop(self.loop_state)
            for checkpoint in compute_checkpoints(abandoned["loop_id"], abandoned["attempts"]):
                if checkpoint not in self.checkpoints:
                    self.checkpoints.append(checkpoint)
        self.loop_state = None
        self.current = None
        self.clarification = None
        self.ideation = None
        self.concept = ""
        self.answers = {}
        self.pending_files = []
        self.phase = "idle"

    async def run_queue(self) -> None:
        """Resume an idle session's queue, e.g. after a cancel."""
        if self.phase != "idle" or self.busy:
            raise SessionBusyError(f"Cannot run the queue while {self.phase}.")
        if self.queue:
            await self._process_next_in_queue()

    async def reideate(self) -> None:
        """Ideate again on the chat's first concept for fresh variations."""
        if self.phase != "idle" or self.busy:
            raise SessionBusyError(f"Cannot re-ideate while {self.phase}.")
        concept = self.concept or extract_title(self.transcript)
        if not concept or concept == UNTITLED_CHAT:
            raise InvalidTransitionError("Nothing to re-ideate.")
        self.concept = concept
        self.answers = {}
        await self._run_ideation(answers=None)

    async def wait_idle(self) -> None:
        """Wait until work abandoned by a cancel or a timeout has returned."""
        pending = [work for work in self._inflight if not work.done()]
        if pending:
            await asyncio.wait(pending)
        if self._control is not None and self._control.running:
            await asyncio.to_thread(self._control.wait)

    # --- Internals ---

    def _ideation_prompt(self, index: int) -> str:
        if self.ideation is None:
            raise InvalidTransitionError("No ideation result to pick from.")
        prompts = [self.ideation["primaryPrompt"]] + list(self.ideation["variations"])
        if not 0 <= index < len(prompts):
            raise IndexError(f"No prompt at position {index}.")
        return prompts[index]

    async def _run_blocking(self, fn, *args):
        """Run ``fn`` on an executor thread and await it.

        ``cancel`` abandons the wait, not the thread: the worker stays in
        ``_inflight`` until it returns, which keeps the session busy.
        """
        work = asyncio.get_running_loop().run_in_executor(None, functools.partial(fn, *args))
        self._inflight.add(work)
        work.add_done_callback(self._inflight.discard)
        waiter = asyncio.shield(work)
        self._task = waiter
        try:
            return await waiter
        finally:
            if self._task is waiter:
                self._task = None

    async def _run_ideation(self, answers: Optional[dict], finalize: bool = False) -> None:
        self.phase = "ideating"
        self.clarification = None
        self.ideation = None
        epoch = self._epoch
        try:
            result = await self._run_blocking(self._ideate, self.concept, answers, finalize)
        except asyncio.CancelledError:
            if epoch != self._epoch:
                return
            raise
        except IdeationError as exc:
            if epoch != self._epoch:
                return
            print(f"[NAS] {exc}", file=sys.stderr)
            self._notify("Failed to ideate; generating directly.")
            await self._trigger_generation(format_concept(self.concept, self.answers))
            return
        if epoch != self._epoch:
            return

        if result["type"] == "clarify":
            self.clarification = result
            self.phase = "clarifying"
        else:
            self.ideation = result
            self.phase = "awaiting"

    def _history(self) -> list:
        messages = []
        for entry in self.transcript:
            text = "\n".join(
                p["text"] for p in entry.get("parts", []) if p.get("type") == "text" and p.get("text")
            )
            if not text:
                continue
            messages.append(HumanMessage(content=text) if entry["role"] == "user" else AIMessage(content=text))
        return messages

    async def _trigger_generation(self, prompt: str, images: Optional[list[str]] = None) -> None:
        self.phase = "generating"
        self.clarification = None
        self.ideation = None
        # Attachments belong to the next generation only.
        files = list(images) if images is not None else self.pending_files
        self.pending_files = []
        self.current = QueuedConcept(prompt, tuple(files))

        history = self._history()
        self.transcript.append({
            "role": "user",
            "parts": [{"type": "text", "text": prompt}] + [{"type": "file", "url": url} for url in files],
        })

        epoch = self._epoch
        try:
            previous = self._control
            if previous is not None and previous.running:
                # A stopped or timed-out loop is still winding down.
                await self._run_blocking(previous.wait)
            if epoch != self._epoch:
                return
            self._control = control = LoopControl()
            state = await self._run_blocking(self._start, prompt, files, history, self.settings, control)
        except asyncio.CancelledError:
            if epoch != self._epoch:
                return
            raise
        if epoch != self._epoch:
            return
        await self._handle_loop_state(state)

    async def _handle_loop_state(self, state: LoopState) -> None:
        self.loop_state = state
        if is_paused(state):
            request = state["pending_approval"]
            self._notify(
                f"Attempt {request['attemptNumber'] - 1} failed: {request['failureReason']} "
                f"Approve attempt {request['attemptNumber']}?"
            )
            return
        if state["phase"] != "done":
            raise InvalidTransitionError(f"Loop stopped in phase {state['phase']}.")

        checkpoints = compute_checkpoints(state["loop_id"], state["attempts"])
        for checkpoint in checkpoints:
            if checkpoint not in self.checkpoints:
                self.checkpoints.append(checkpoint)
        result = LoopResult(
            concept=self.current.prompt if self.current else state["prompt"],
            loop_id=state["loop_id"],
            outcome=state["outcome"] or "synthesis-error",
            message=describe_outcome(state),
            final_text=state.get("final_text", ""),
            attempts=list(state["attempts"]),
            checkpoints=checkpoints,
        )
        self.results.append(result)
        self._notify(result.message)

        parts = [
            {"type": "image", "url": a["imageUrl"], "attempt": a["attemptNumber"], "score": a["reviewScore"]}
            for a in state["attempts"] if a.get("imageUrl")
        ]
        parts.append({"type": "text", "text": result.final_text or result.message})
        self.transcript.append({"role": "assistant", "parts": parts})

        self.loop_state = None
        self.current = None
        await self._save_chat()
        await self._process_next_in_queue()

    async def _process_next_in_queue(self) -> None:
        item = self.queue.dequeue()
        if item is None:
            self.phase = "idle"
            return
        # Chained directly: the phase stays "generating" between concepts.
        await self._trigger_generation(item.prompt, list(item.reference_images))

    async def _save_chat(self) -> None:
        if self.sink is None or not self.transcript:
            return
        try:
            self.chat_id = await asyncio.to_thread(
                self.sink.upsert_chat,
                self.chat_id,
                extract_title(self.transcript),
                extract_thumbnail(self.transcript),
                strip_file_parts(self.transcript),
            )
        except Exception as exc:
            print(f"[NAS] Warning: could not save chat: {exc!r}", file=sys.stderr)
