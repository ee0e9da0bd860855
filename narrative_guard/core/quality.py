"""
Quality scoring for generated narrative.

Deterministic checks with no I/O, so the same content and constraints always
produce the same verdict and historical decisions can be reproduced.

Check Order:
1. Non-empty text
2. Length within [min_length, max_length]
3. No disallowed content (denylist substrings, patterns, emoji)
4. Ends with a terminal choice marker
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Tuple

from narrative_guard.config.models import QualityConstraints
from narrative_guard.providers.base import GeneratedContent


class IssueTag(Enum):
    """Reasons a response fails quality."""
    EMPTY_CONTENT = "EmptyContent"
    LENGTH_OUT_OF_BOUNDS = "LengthOutOfBounds"
    DISALLOWED_CONTENT = "DisallowedContent"
    MISSING_TERMINAL_MARKER = "MissingTerminalMarker"


@dataclass(frozen=True)
class QualityScore:
    """Verdict for one response. ``issues`` is empty iff ``passed``."""
    passed: bool
    issues: Tuple[IssueTag, ...] = ()


# Code point ranges treated as emoji
EMOJI_RANGES: Tuple[Tuple[int, int], ...] = (
    (0x1F000, 0x1FAFF),  # mahjong through symbols and pictographs extended-A
    (0x2600, 0x27BF),    # miscellaneous symbols, dingbats
    (0x2B50, 0x2B55),    # stars and circles
    (0x231A, 0x231B),    # watch, hourglass
    (0x23E9, 0x23FA),    # media controls
    (0xFE0F, 0xFE0F),    # emoji presentation selector
)


def contains_emoji(text: str) -> bool:
    for char in text:
        code = ord(char)
        for low, high in EMOJI_RANGES:
            if low <= code <= high:
                return True
    return False


def _has_disallowed_content(text: str, constraints: QualityConstraints) -> bool:
    lowered = text.lower()
    if any(term.lower() in lowered for term in constraints.denylist if term):
        return True
    if any(re.search(pattern, text) for pattern in constraints.denylist_patterns):
        return True
    return constraints.reject_emoji and contains_emoji(text)


def _ends_with_marker(text: str, markers: Tuple[str, ...]) -> bool:
    stripped = text.rstrip()
    return any(stripped.endswith(marker) for marker in markers)


def score(content: GeneratedContent, constraints: QualityConstraints) -> QualityScore:
    """Score a generated response against quality constraints.

    Stops at the first failing check unless ``constraints.diagnostic`` is set,
    in which case every applicable issue is reported.

    Args:
        content: Provider output to check
        constraints: Acceptance rules

    Returns:
        QualityScore with passed=True and no issues, or the issues found
    """
    text = content.text
    issues: List[IssueTag] = []

    if not text or not text.strip():
        # Nothing else is meaningful on empty text
        return QualityScore(passed=False, issues=(IssueTag.EMPTY_CONTENT,))

    checks = (
        (IssueTag.LENGTH_OUT_OF_BOUNDS,
         lambda: not constraints.min_length <= len(text) <= constraints.max_length),
        (IssueTag.DISALLOWED_CONTENT,
         lambda: _has_disallowed_content(text, constraints)),
        (IssueTag.MISSING_TERMINAL_MARKER,
         lambda: bool(constraints.terminal_markers)
         and not _ends_with_marker(text, constraints.terminal_markers)),
    )
    for tag, failed in checks:
        if failed():
            issues.append(tag)
            if not constraints.diagnostic:
                break

    return QualityScore(passed=not issues, issues=tuple(issues))
