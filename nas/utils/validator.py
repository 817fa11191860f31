"""Input validation for concepts and clarification answers, run at the session boundary."""


def validate_concept(concept: str) -> str:
    """Validate that a concept is a non-empty string.

    Returns the stripped input on success.
    Raises ValueError if input is empty or whitespace-only.
    """
    if not isinstance(concept, str) or not concept.strip():
        raise ValueError("Concept must be a non-empty string.")
    return concept.strip()


def validate_answers(answers) -> dict[str, str]:
    """Normalize a clarification answers map.

    Keys are question ids, values the chosen option or free text. Blank
    values are dropped; an empty result is still a valid (finalizing) answer.
    """
    if answers is None:
        return {}
    if not isinstance(answers, dict):
        raise ValueError("Clarification answers must be a mapping of question id to answer.")
    cleaned = {}
    for key, value in answers.items():
        if not isinstance(key, str) or not isinstance(value, str):
            raise ValueError("Clarification answer keys and values must be strings.")
        if value.strip():
            cleaned[key.strip()] = value.strip()
    return cleaned
