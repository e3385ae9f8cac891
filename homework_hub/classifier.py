from __future__ import annotations

import re
from typing import Callable

from homework_hub.models import DEFAULT_SUBJECT


Predicate = Callable[[str], bool]


def _contains_any(*needles: str) -> Predicate:
    return lambda text: any(needle in text for needle in needles)


def _word(*words: str) -> Predicate:
    pattern = re.compile(r"\b(?:" + "|".join(re.escape(word) for word in words) + r")\b")
    return lambda text: pattern.search(text) is not None


def _either(*predicates: Predicate) -> Predicate:
    return lambda text: any(predicate(text) for predicate in predicates)


# Evaluated top to bottom, first match wins. Art and PE match whole words only
# ("smart", "open").
SUBJECT_RULES: list[tuple[Predicate, str]] = [
    (_contains_any("spanish", "espanol", "español"), "Spanish"),
    (_contains_any("math"), "Maths"),
    (_contains_any("swedish", "svenska"), "Swedish"),
    (_contains_any("english"), "English"),
    (_word("art"), "Art"),
    (_contains_any("drama", "theatre"), "Drama"),
    (_contains_any("individuals", "societies", "i&s", "history", "geography"), "I+S"),
    (_contains_any("science", "physics", "chem", "bio"), "Science"),
    (_contains_any("design"), "Design"),
    (_either(_word("pe"), _contains_any("phys ed", "sport")), "PE"),
]


def classify(text: str | None) -> str:
    lowered = str(text or "").lower()
    for predicate, label in SUBJECT_RULES:
        if predicate(lowered):
            return label
    return DEFAULT_SUBJECT
