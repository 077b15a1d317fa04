"""
Character-based token budgeting for context assembly.

A token is approximated as four characters.
"""

from typing import Iterable, List

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Rough token estimate (at least 1 for non-empty text)."""
    if not text:
        return 0
    return max(1, len(text) // CHARS_PER_TOKEN)


def budget_chars(budget_tokens: int) -> int:
    return max(0, budget_tokens) * CHARS_PER_TOKEN


def take_within_budget(header: str, lines: Iterable[str], budget_tokens: int) -> List[str]:
    """
    Select lines in source order while the rendered block fits the budget.

    The rendered block is the header followed by one line per selected item,
    newline-separated. Selection stops at the first line that would overflow;
    later lines are never considered and no line is truncated.
    """
    limit = budget_chars(budget_tokens)
    used = len(header)
    selected = []
    for line in lines:
        cost = len(line) + 1
        if used + cost > limit:
            break
        selected.append(line)
        used += cost
    return selected
