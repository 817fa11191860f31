"""Config loading: YAML settings read once at import, secrets from .env."""

import os
from pathlib import Path

import yaml
from dotenv import load_dotenv

# Secrets (API tokens, storage keys) live in the project-root .env
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

CONFIG_PATH = Path(__file__).resolve().parent / "config.yaml"

_config = yaml.safe_load(CONFIG_PATH.read_text())


def get_config() -> dict:
    """Return the loaded config dictionary."""
    return _config


def get_image_defaults() -> dict:
    """Return the default image settings, with the configured model filled in."""
    defaults = dict(_config.get("image_defaults", {}))
    defaults.setdefault("model", _config.get("image_model", "google/nano-banana-2"))
    return defaults


def require_env(name: str) -> str:
    """Return an environment secret or raise if it is not set."""
    value = os.environ.get(name, "")
    if not value:
        raise RuntimeError(f"{name} not set")
    return value
