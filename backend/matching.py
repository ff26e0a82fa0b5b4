# backend/matching.py
import logging
from typing import AbstractSet, List, Optional, Sequence, Tuple

from models import GameMode, POINTS_PER_FIND, RevealedItem

logger = logging.getLogger("brainplay_matching")

SIMILARITY_THRESHOLD = 0.6


# --- TEXT HELPERS ---

def clean_text(text: Optional[str]) -> str:
    """Strip markdown bold markers the model sometimes adds anyway."""
    if not text:
        return ""
    return text.replace("**", "")


def _normalize(text: str) -> str:
    return (text or "").strip().casefold()


def levenshtein(a: str, b: str) -> int:
    """Classic edit distance: insert, delete and substitute all cost 1."""
    if a == b:
        return 0
    if len(a) < len(b):
        a, b = b, a
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(min(
                previous[j] + 1,  # deletion
                current[j - 1] + 1,  # insertion
                previous[j - 1] + (ca != cb),  # substitution
            ))
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    """(L - distance) / L with L the longer length. Two empty strings are identical."""
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return (longest - levenshtein(a, b)) / longest


def answer_matches(answer: str, description: str) -> bool:
    """
    True when a typed answer names a revealed item: either string
    contains the other, or they are close enough by edit distance.
    """
    a = _normalize(answer)
    d = _normalize(description)
    if not a or not d:
        return False
    if a in d or d in a:
        return True
    return similarity(a, d) > SIMILARITY_THRESHOLD


def match_answers(
    typed_answers: Sequence[str],
    revealed_items: Sequence[RevealedItem],
    claimed_ids: AbstractSet[int] = frozenset(),
) -> List[Tuple[str, RevealedItem]]:
    """
    Pair typed answers with the first unclaimed revealed item they match.
    Each item is paired at most once, as is each answer (compared
    case-insensitively). Items in claimed_ids, e.g. already found by
    clicking, never pair.
    """
    taken = set(claimed_ids)
    seen_answers = set()
    pairs: List[Tuple[str, RevealedItem]] = []
    for answer in typed_answers:
        key = _normalize(answer)
        if not key or key in seen_answers:
            continue
        seen_answers.add(key)
        for item in revealed_items:
            if item.id in taken:
                continue
            if answer_matches(answer, item.description):
                taken.add(item.id)
                pairs.append((answer, item))
                break
    return pairs


def score_retroactively(
    typed_answers: Sequence[str],
    revealed_items: Sequence[RevealedItem],
    mode: GameMode,
    claimed_ids: AbstractSet[int] = frozenset(),
) -> int:
    """Points earned after the reveal by typed answers that match revealed items. LOGIC never scores here."""
    if mode == GameMode.LOGIC:
        return 0
    pairs = match_answers(typed_answers, revealed_items, claimed_ids)
    points = len(pairs) * POINTS_PER_FIND[mode]
    logger.debug(
        "Retroactive scoring: mode=%s typed=%d revealed=%d matched=%d points=%d",
        mode.value,
        len(typed_answers),
        len(revealed_items),
        len(pairs),
        points,
    )
    return points
