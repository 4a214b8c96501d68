"""
Read-only views derived from a progress document: level, words learned and
the difficulty ordering used to put troublesome words first.
"""

from dataclasses import dataclass
from typing import Dict, List, Mapping, Sequence, TypeVar

from .constants import XP_PER_LEVEL
from .models import ProgressDocument

PackEntry = TypeVar("PackEntry", bound=Mapping[str, str])


@dataclass(frozen=True)
class ProgressSummary:
    """Dashboard figures for one progress document."""

    level: int
    xp: int
    xp_in_level: int
    xp_per_level: int
    streak: int
    words_learned: int
    words_with_errors: int
    completions: Dict[str, int]


def level_for_xp(xp: int) -> int:
    """Levels start at 1 and advance every XP_PER_LEVEL points."""
    return xp // XP_PER_LEVEL + 1


def summarize(document: ProgressDocument) -> ProgressSummary:
    return ProgressSummary(
        level=level_for_xp(document.xp),
        xp=document.xp,
        xp_in_level=document.xp % XP_PER_LEVEL,
        xp_per_level=XP_PER_LEVEL,
        streak=document.streak,
        words_learned=len(document.words_learned),
        words_with_errors=sum(1 for count in document.errors.values() if count),
        completions=dict(document.completions),
    )


def difficulty_score(document: ProgressDocument, word: str) -> int:
    """Mistakes minus successes; higher means harder for this user."""
    return document.errors.get(word, 0) - document.words_learned.get(word, 0)


def order_by_difficulty(
    pack: Sequence[PackEntry], document: ProgressDocument, lang: str
) -> List[PackEntry]:
    """
    Return the pack entries hardest-first.

    Each entry maps language codes to words (e.g. {"it": "ciao", "es":
    "hola"}); `lang` selects the word that is scored. The sort is stable, so
    equally difficult entries keep their pack order.
    """
    return sorted(
        pack,
        key=lambda entry: difficulty_score(document, entry.get(lang, "")),
        reverse=True,
    )
