"""Deterministic offline storyteller.

Builds story beats from a seeded PRNG instead of calling a hosted model, so
the rotation always has a last resort that cannot rate limit, time out or
cost money. The same prompt and history always produce the same beat.
"""
from __future__ import annotations

from typing import Callable, List, Optional, Sequence, TypeVar

from .base import ConversationTurn, GeneratedContent, ProviderAdapter, estimated_content

T = TypeVar("T")

_MASK = 0xFFFFFFFF

SENSES = ["neon", "dust", "sea-wet air", "library quiet", "violet dusk"]
BEATS_YES = [
    "A guard wavers; the clipboard dims.",
    "A side door clicks open, unmarked.",
    "Someone nods as if they expected you.",
]
BEATS_NO = [
    "The line of passengers rustles like paper.",
    "A siren purrs but never rises.",
    "Footsteps multiply in the hall.",
]
HOOKS = [
    "Follow the whispering lawyer?",
    "Trust the teen with the notebook?",
    "Take the unlit stair?",
    "Ask the driver what he knows?",
]
ENDINGS = [
    "The room exhales. Your story opens elsewhere.",
    "The road bends and forgets you were chased.",
]
ENDING_CHANCE = 0.06


def hash_string_to_seed(value: str) -> int:
    """32-bit FNV-1a hash of a string."""
    h = 2166136261
    for char in value:
        h ^= ord(char)
        h = (h * 16777619) & _MASK
    return h


def mulberry32(seed: int) -> Callable[[], float]:
    """Mulberry32 PRNG returning floats in [0, 1)."""
    state = seed & _MASK

    def next_float() -> float:
        nonlocal state
        state = (state + 0x6D2B79F5) & _MASK
        t = state
        t = ((t ^ (t >> 15)) * (t | 1)) & _MASK
        t ^= (t + ((t ^ (t >> 7)) * (t | 61))) & _MASK
        return ((t ^ (t >> 14)) & _MASK) / 4294967296

    return next_float


def pick(rng: Callable[[], float], items: List[T]) -> T:
    if not items:
        raise ValueError("Cannot pick from empty list")
    return items[int(rng() * len(items))]


def _last_choice(prompt: str, context_history: Sequence[ConversationTurn]) -> Optional[str]:
    candidates = [prompt] + [turn.content for turn in reversed(context_history) if turn.role == "user"]
    for candidate in candidates:
        answer = candidate.strip().upper()
        if answer in ("Y", "N"):
            return answer
    return None


def offline_beat(seed: str, last_choice: Optional[str] = None) -> str:
    """Compose one story beat ending in a binary choice, or an ending."""
    rng = mulberry32(hash_string_to_seed(seed))
    if rng() < ENDING_CHANCE:
        return f"{pick(rng, ENDINGS)} (Restart?)"
    sense = pick(rng, SENSES)
    beat = pick(rng, BEATS_YES) if last_choice == "Y" else pick(rng, BEATS_NO)
    hook = pick(rng, HOOKS)
    return f"{beat} The air tastes of {sense}. {hook} (Y/N)"


class OfflineStorytellerAdapter(ProviderAdapter):
    kind = "offline"

    async def _complete(
        self,
        prompt: str,
        context_history: Sequence[ConversationTurn],
        max_tokens: int,
    ) -> GeneratedContent:
        seed = f"{prompt}|{len(context_history)}"
        text = offline_beat(seed, _last_choice(prompt, context_history))
        return estimated_content(text, prompt, context_history, {"seed": seed})
