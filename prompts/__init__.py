"""
Prompts package for InvestMate.
Templates live next to this module as <name>_<language>.txt files.
"""

from pathlib import Path
from typing import Dict

PROMPT_DIR = Path(__file__).resolve().parent
SUPPORTED_LANGUAGES = ("en", "zh")

# Template text keyed by file name, filled on first use
_prompt_cache: Dict[str, str] = {}


def load_prompt(filename: str) -> str:
    """
    Read a prompt file from the package directory.

    Raises:
        FileNotFoundError: if no such prompt ships with the package
    """
    cached = _prompt_cache.get(filename)
    if cached is None:
        path = PROMPT_DIR / filename
        if not path.is_file():
            raise FileNotFoundError(f"Prompt file not found: {path}")
        cached = _prompt_cache[filename] = path.read_text(encoding="utf-8")
    return cached


def _localized(name: str, language: str) -> str:
    # Anything but Chinese falls back to English
    suffix = language if language in SUPPORTED_LANGUAGES else "en"
    return load_prompt(f"{name}_{suffix}.txt")


def get_system_prompt(language: str = "en") -> str:
    """Assistant persona describing the query tools."""
    return _localized("system_prompt", language)


def get_market_analysis_prompt(language: str = "en") -> str:
    """Template with {title}, {content} and {tracked_symbols} placeholders."""
    return _localized("market_analysis", language)
