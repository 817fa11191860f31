"""Entry point: interactive terminal front end for a studio session."""

import asyncio
import base64
import mimetypes
import sys
from pathlib import Path

from nas.agents.clarifier import OTHER_OPTION
from nas.session import Session
from nas.storage import SupabaseStorage
from nas.utils.report import write_report


def _data_url(path: str) -> str:
    """Read an image file into a base64 data: URL."""
    content_type = mimetypes.guess_type(path)[0] or "image/jpeg"
    body = base64.b64encode(Path(path).read_bytes()).decode("ascii")
    return f"data:{content_type};base64,{body}"


def _ask_number(prompt: str, low: int, high: int) -> int:
    while True:
        choice = input(prompt).strip()
        try:
            choice_num = int(choice)
        except ValueError:
            print("Please enter a number.")
            continue
        if low <= choice_num <= high:
            return choice_num
        print(f"Please enter a number between {low} and {high}.")


def _collect_clarifications(questions: list[dict]) -> dict[str, str]:
    """Prompt in the terminal for each clarifying question.

    Entering 0 skips the rest; an empty result finalizes ideation.
    """
    answers = {}
    print("\n--- A few details would sharpen this concept (0 to skip) ---\n")

    for question in questions:
        print(question["question"])
        options = question["options"]
        for i, option in enumerate(options, 1):
            print(f"  {i}. {option}")

        choice_num = _ask_number("Your choice (number): ", 0, len(options))
        if choice_num == 0:
            break
        option = options[choice_num - 1]
        if option == OTHER_OPTION:
            option = input("Your answer: ").strip()
        if option:
            answers[question["id"]] = option
        print()

    return answers


def _pick_prompts(ideation: dict) -> tuple[int, list[int]]:
    """Show the ideation result; return the picked index and indexes to queue."""
    prompts = [ideation["primaryPrompt"]] + list(ideation["variations"])
    print("\n--- Prompts ---\n")
    for i, prompt in enumerate(prompts, 1):
        label = "Primary" if i == 1 else f"Variation {i - 1}"
        print(f"{i}. [{label}] {prompt}\n")
    if ideation.get("additionalConcepts"):
        print("Other concepts to explore:")
        for concept in ideation["additionalConcepts"]:
            print(f"  - {concept}")
        print()

    picked = _ask_number("Generate which prompt (number): ", 1, len(prompts)) - 1
    queued = []
    raw = input("Queue others after it (numbers, space separated, blank for none): ").strip()
    for token in raw.split():
        if token.isdigit() and 1 <= int(token) <= len(prompts) and int(token) - 1 != picked:
            queued.append(int(token) - 1)
    return picked, queued


def _ask_approval(request: dict) -> bool:
    print(f"\n--- Attempt {request['attemptNumber'] - 1} did not pass ---")
    print(request["failureReason"])
    print(f"\nRefined prompt:\n{request['refinedPrompt']}\n")
    answer = input(f"Retry as attempt {request['attemptNumber']}? [y/N]: ").strip().lower()
    return answer in ("y", "yes")


def _flush_notices(session: Session, seen: int) -> int:
    for line in session.notices[seen:]:
        print(f"[NAS] {line}")
    return len(session.notices)


async def _converse(session: Session, concept: str, attachments: list[str]) -> None:
    seen = 0
    await session.submit(concept, attachments)
    while True:
        seen = _flush_notices(session, seen)
        if session.phase == "clarifying":
            answers = _collect_clarifications(session.clarification["questions"])
            if answers:
                await session.answer_clarification(answers)
            else:
                await session.skip_clarification()
        elif session.phase == "awaiting":
            picked, queued = _pick_prompts(session.ideation)
            for index in queued:
                session.enqueue(index=index)
            await session.pick_prompt(index=picked)
        elif session.phase == "generating" and session.pending_approval:
            await session.decide(_ask_approval(session.pending_approval))
        else:
            break
    _flush_notices(session, seen)


async def _drive(session: Session, concept: str, attachments: list[str]) -> None:
    try:
        await _converse(session, concept, attachments)
    except asyncio.CancelledError:
        # Ctrl-C: stop the running loop and let its worker return before exiting.
        session.cancel()
        await session.wait_idle()
        raise


def run(concept: str, image_paths: list[str] | None = None, save: bool = True) -> None:
    """Run one interactive session on a concept and write the report.

    Args:
        concept: The raw ad concept; may be empty when images are attached.
        image_paths: Reference image files to attach.
        save: Persist the chat to Supabase.
    """
    attachments = [_data_url(p) for p in image_paths or []]
    session = Session(sink=SupabaseStorage() if save else None)

    try:
        asyncio.run(_drive(session, concept, attachments))
    except KeyboardInterrupt:
        session.cancel()
        print(f"\n[NAS] Cancelled. {len(session.queue)} concept(s) left in the queue.")

    for result in session.results:
        print(f"[NAS] {result.outcome}: {result.message}")
        if result.image_url:
            print(f"      {result.image_url}")
    output_path = write_report(session.results, title=concept.strip()[:100])
    print(f"[NAS] Report written to: {output_path}")


def main() -> None:
    """CLI entry point: accepts the concept as arguments or from stdin."""
    args = sys.argv[1:]
    save = True
    images = []

    if "--no-save" in args:
        save = False
        args.remove("--no-save")
    while "--image" in args:
        i = args.index("--image")
        if i + 1 >= len(args):
            sys.exit("--image needs a file path")
        images.append(args[i + 1])
        del args[i:i + 2]

    if args:
        concept = " ".join(args)
    elif images:
        concept = ""
    else:
        print("Enter your ad concept (Ctrl+D / Ctrl+Z to submit):")
        concept = sys.stdin.read()

    run(concept, image_paths=images, save=save)


if __name__ == "__main__":
    main()
