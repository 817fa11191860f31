"""Session report: renders every finished concept of a session as Markdown."""

from pathlib import Path

from nas.agents.reviewer import MAX_SCORE
from nas.config import get_config


def _attempt_line(attempt: dict) -> str:
    number = attempt.get("attemptNumber", "?")
    if attempt.get("error") and not attempt.get("imageUrl"):
        return f"{number}. **Generation failed:** {attempt['error']}"
    score = attempt.get("reviewScore")
    verdict = "passed" if attempt.get("passed") else "failed"
    scored = f"{score}/{MAX_SCORE}, {verdict}" if score is not None else "not reviewed"
    line = f"{number}. [{scored}] ![attempt {number}]({attempt.get('imageUrl', '')})"
    if attempt.get("error"):
        line += f" ({attempt['error']})"
    return line


def _render_markdown(results: list, title: str = "") -> str:
    """Convert a session's loop results into a Markdown report."""
    lines = [f"# {title or 'Native Ad Session'}", ""]

    if not results:
        lines.append("No concepts were generated.")
        lines.append("")
        return "\n".join(lines)

    # Summary table
    lines.append("| # | Outcome | Attempts | Best score |")
    lines.append("|---|---------|----------|------------|")
    for i, result in enumerate(results, 1):
        scores = [a["reviewScore"] for a in result.attempts if a.get("reviewScore") is not None]
        best = f"{max(scores)}/{MAX_SCORE}" if scores else "n/a"
        lines.append(f"| {i} | `{result.outcome}` | {len(result.attempts)} | {best} |")
    lines.append("")

    for i, result in enumerate(results, 1):
        lines.append(f"## Concept {i}")
        lines.append("")
        lines.append(f"> {result.concept}")
        lines.append("")
        lines.append(f"**Outcome:** {result.message}")
        lines.append("")
        if result.final_text:
            lines.append(result.final_text)
            lines.append("")

        if result.attempts:
            lines.append("### Attempts")
            lines.append("")
            for attempt in result.attempts:
                lines.append(_attempt_line(attempt))
                for issue in attempt.get("issues") or []:
                    lines.append(f"   - {issue}")
            lines.append("")

            # Prompts only differ after a refinement; list them when they do
            prompts = list(dict.fromkeys(a["prompt"] for a in result.attempts))
            if len(prompts) > 1:
                lines.append("### Prompt Refinements")
                lines.append("")
                for n, prompt in enumerate(prompts, 1):
                    lines.append(f"{n}. {prompt}")
                lines.append("")

        if result.checkpoints:
            lines.append(f"**Checkpoints:** {', '.join(f'`{c}`' for c in result.checkpoints)}")
            lines.append("")

    return "\n".join(lines)


def write_report(results: list, title: str = "") -> Path:
    """Write the session report to the configured output path.

    Never overwrites: an existing report gets a numbered sibling.
    Returns the Path to the written file.
    """
    config = get_config()
    base_path = Path(__file__).resolve().parent.parent / config["output_path"]
    output_dir = base_path.parent
    output_dir.mkdir(parents=True, exist_ok=True)

    stem = base_path.stem
    output_path = output_dir / f"{stem}.md"
    counter = 1
    while output_path.exists():
        counter += 1
        output_path = output_dir / f"{stem} ({counter}).md"

    output_path.write_text(_render_markdown(results, title), encoding="utf-8")
    return output_path
