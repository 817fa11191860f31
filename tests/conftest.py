"""Shared fixtures for the NAS test suite."""

import pytest
from unittest.mock import MagicMock, patch

from langchain_core.messages import AIMessage, HumanMessage


@pytest.fixture
def base_state():
    """Minimal valid LoopState at the start of a loop."""
    return {
        "loop_id": "loop1",
        "prompt": "Close-up of red razor bumps on a shin, bathroom light, iphone style, low-fi image",
        "reference_images": [],
        "settings": {},
        "messages": [HumanMessage(content="Close-up of red razor bumps on a shin")],
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


@pytest.fixture
def failed_attempt():
    """A reviewed attempt that scored 3/7."""
    return {
        "attemptNumber": 1,
        "prompt": "Close-up of red razor bumps on a shin",
        "imageUrl": "https://x.supabase.co/storage/v1/object/public/native-images/generated/a.jpg",
        "reviewScore": 3,
        "passed": False,
        "error": None,
        "issues": ["Looks like a stock photo"],
    }


@pytest.fixture
def valid_ideation_response():
    """Complete valid ideation JSON response dict."""
    return {
        "type": "ideate",
        "primaryPrompt": (
            "Close-up of a woman's shin covered in red razor bumps, harsh bathroom "
            "light, cheap pink razor on the tub edge, iphone style, low-fi image"
        ),
        "variations": [
            "Red irritated ankle skin after shaving, seen from above on a bath mat, "
            "morning window light, iphone style, low-fi image",
            "Hand pointing at a patch of razor burn on a calf, messy bathroom counter "
            "behind, overhead light, iphone style, low-fi image",
        ],
        "additionalConcepts": ["Ingrown hairs weeks after waxing"],
    }


@pytest.fixture
def valid_clarify_response():
    """Ideation model response asking one product question."""
    return {
        "type": "clarify",
        "questions": [
            {
                "id": "product",
                "question": "What product is this ad for?",
                "options": ["Air purifier", "HEPA vacuum", "Allergy spray", "Dust mite covers", "Other"],
            }
        ],
    }


@pytest.fixture
def mock_config():
    """Patch the config singleton with test-friendly values."""
    test_config = {
        "agent_model": "claude-test",
        "ideation_model": "gemini-test",
        "max_attempts": 3,
        "max_steps": 12,
        "loop_timeout_seconds": 300,
        "request_timeout_seconds": 30,
        "llm_max_retries": 0,
        "image_model": "google/nano-banana-2",
        "image_defaults": {"aspect_ratio": "4:5", "resolution": "1K", "output_format": "jpg"},
        "storage_bucket": "native-images",
        "prompt_rules_enabled": False,
        "output_path": "./output/report.md",
    }
    with patch("nas.config._config", test_config):
        yield test_config


def tool_call_message(name: str, args: dict, call_id: str = "call_1") -> AIMessage:
    """An AI message carrying one tool call, as a chat model would return it."""
    return AIMessage(content="", tool_calls=[{"name": name, "args": args, "id": call_id}])


def bound_llm(*responses):
    """Patchable chat model class whose bound instance returns ``responses`` in order."""
    llm_class = MagicMock()
    bound = MagicMock()
    bound.invoke.side_effect = list(responses)
    llm_class.return_value.bind_tools.return_value = bound
    return llm_class, bound
