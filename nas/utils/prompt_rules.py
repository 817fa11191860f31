"""Native ad prompt rules for injection into agent system prompts.

Both the ideation model and the generation loop write image prompts; they
share this condensed rule set so a prompt accepted by one is acceptable to
the other.
"""

# Edit the list below when the creative guidelines change.
_PROMPT_RULES = """\
- The image must look like authentic user-generated iPhone content, NOT polished marketing \
or stock photography: imperfect framing, natural light, a real lived-in environment.
- Be specific about lighting: "soft window light", "harsh fluorescent bathroom light", \
"golden hour".
- Be specific about composition: "extreme close-up", "bird's eye view", "45-degree angle", \
"slightly out of focus background".
- Include grounding surface and texture details: "water spots on counter", "slightly crumpled \
tissue", "worn edge".
- Add 2-4 emotional/visceral descriptor tags in square brackets and end with \
"iphone style, low-fi image".
- NEVER include text overlays, captions, timestamps, date stamps, watermarks, borders or UI \
elements, and never instruct the model to render text.
- Prompts must be purely visual and complete: no placeholders such as [PRODUCT] or <persona>.\
"""


def load_prompt_rules() -> str:
    """Return the native ad prompt rules.

    Returns an empty string if rules injection is disabled in config
    (set prompt_rules_enabled to false or remove it).
    """
    from nas.config import get_config

    config = get_config()
    if not config.get("prompt_rules_enabled", False):
        return ""

    return _PROMPT_RULES
