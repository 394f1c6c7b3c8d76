"""
MultiMind settings.

config.yaml is read once per process and cached; provider secrets are
written as ${VAR} references and filled from the environment (or .env).
Set MULTIMIND_CONFIG to point at a different file.
"""

import os
import re
from pathlib import Path

import yaml
from dotenv import load_dotenv

load_dotenv()

_CONFIG_PATH = Path(__file__).parent.parent / "config.yaml"
_ENV_REF = re.compile(r"\$\{(\w+)\}")

_config: dict | None = None


def _expand(node):
    """Fill ${VAR} references in every string of a parsed YAML tree. Unset vars become ""."""
    if isinstance(node, str):
        return _ENV_REF.sub(lambda m: os.environ.get(m.group(1), ""), node)
    if isinstance(node, dict):
        return {key: _expand(value) for key, value in node.items()}
    if isinstance(node, list):
        return [_expand(item) for item in node]
    return node


def load_config(path: Path | None = None) -> dict:
    """
    Read the settings file and cache the result.
    Resolution order: explicit path, $MULTIMIND_CONFIG, config.yaml at the repo root.
    """
    global _config
    if _config is not None:
        return _config

    source = Path(path or os.environ.get("MULTIMIND_CONFIG") or _CONFIG_PATH)
    if not source.is_file():
        raise FileNotFoundError(f"MultiMind config not found: {source}")

    _config = _expand(yaml.safe_load(source.read_text()) or {})
    return _config


def get_config() -> dict:
    return _config if _config is not None else load_config()


def reset_config() -> None:
    """Forget the cached settings; the next get_config() rereads the file."""
    global _config
    _config = None
