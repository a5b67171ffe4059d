"""
Offline deterministic backend.

Always available and never errors. Output is selected from fixed
templates by a stable hash of (call type, normalized prompt), so identical
prompts always produce identical text.
"""

import hashlib
import json
import re
import time
from typing import Dict, List, Optional, Tuple

from .base import Provider, elapsed_ms
from ..core.prompts import normalize_prompt
from ..core.token_counter import estimate_tokens
from ..core.types import CallType, Response, ResponseSource

_WORD = re.compile(r"[a-z]+")

# Keyword -> structured action for decision interpretation, first match wins
DECISION_KEYWORDS: List[Tuple[Tuple[str, ...], Dict[str, object]]] = [
    (("allocate", "give", "feed", "food"),
     {"action": "allocate", "target": "settlers", "tone": "positive", "confidence": 0.8}),
    (("delegate", "assign"),
     {"action": "delegate", "target": "advisors", "tone": "neutral", "confidence": 0.75}),
    (("negotiate", "talk", "peace"),
     {"action": "negotiate", "target": "factions", "tone": "diplomatic", "confidence": 0.7}),
    (("inspire", "motivate"),
     {"action": "inspire", "target": "all", "tone": "positive", "confidence": 0.8}),
    (("suppress", "restrict"),
     {"action": "suppress", "target": "dissenters", "tone": "stern", "confidence": 0.7}),
]

TEMPLATES: Dict[CallType, List[str]] = {
    CallType.DECISION: [
        '{"action": "acknowledge", "target": "settlement", "tone": "neutral", "confidence": 0.3}',
        '{"action": "observe", "target": "settlement", "tone": "cautious", "confidence": 0.3}',
        '{"action": "deliberate", "target": "council", "tone": "neutral", "confidence": 0.3}',
    ],
    CallType.NARRATIVE: [
        "Events unfold in the settlement. The situation remains fluid and uncertain. "
        "Your leadership choices will shape the outcome.",
        "A quiet day passes. Work continues in the fields and workshops, "
        "though whispers of change drift between the houses.",
        "Tensions simmer beneath the surface. Different groups weigh their loyalties "
        "and wait to see which way the wind blows.",
        "The settlement endures. Stores are counted, walls are mended, "
        "and everyone looks to you for direction.",
    ],
    CallType.CONVERSATION: [
        '"There\'s much work to be done before nightfall."',
        '"Have you heard what the council decided? I can\'t make sense of it."',
        '"Strength and patience keep us going, friend."',
        '"Trade has been slow. Let\'s hope the next caravan brings better news."',
        '"I await the leader\'s guidance, same as everyone else."',
    ],
}


def stable_index(call_type: CallType, prompt: str, modulo: int) -> int:
    """Stable template index from the call type and normalized prompt."""
    key = f"{call_type.value}:{normalize_prompt(prompt)}".encode("utf-8")
    return int(hashlib.sha256(key).hexdigest(), 16) % modulo


class OfflineProvider(Provider):
    """Template backend used directly or as the resilience fallback."""

    name = "offline"

    def is_available(self) -> bool:
        return True

    def generate(
        self,
        prompt: str,
        temperature: float = 0.0,
        call_type: Optional[CallType] = None
    ) -> Response:
        started = time.monotonic()
        call_type = call_type or CallType.NARRATIVE
        content = self.render(prompt, call_type)
        return Response(
            success=True,
            content=content,
            input_tokens=estimate_tokens(prompt),
            completion_tokens=estimate_tokens(content),
            cost_usd=0.0,
            duration_ms=elapsed_ms(started),
            source=ResponseSource.OFFLINE,
        )

    def render(self, prompt: str, call_type: CallType) -> str:
        if call_type == CallType.DECISION:
            words = set(_WORD.findall(normalize_prompt(prompt)))
            for keywords, action in DECISION_KEYWORDS:
                if words.intersection(keywords):
                    return json.dumps(action, sort_keys=True)
        templates = TEMPLATES[call_type]
        return templates[stable_index(call_type, prompt, len(templates))]
