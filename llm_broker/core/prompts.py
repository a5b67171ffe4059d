"""
Prompt normalization and content addressing.
"""

import hashlib
import re

_WHITESPACE = re.compile(r"\s+")


def normalize_prompt(prompt: str) -> str:
    """Lowercase and collapse whitespace so trivially different prompts match."""
    return _WHITESPACE.sub(" ", prompt).strip().lower()


def prompt_hash(prompt: str) -> str:
    """SHA-256 hex digest of the normalized prompt."""
    return hashlib.sha256(normalize_prompt(prompt).encode("utf-8")).hexdigest()
