from __future__ import annotations

from typing import Mapping

from .schemas import CATEGORY_ORDER, ActivityCategory, RoundSlot


def build_round_sequence(activity_counts: Mapping[ActivityCategory, int]) -> list[RoundSlot]:
    """Flatten category counts into numbered rounds, one per unit of count.

    Categories are visited in CATEGORY_ORDER regardless of the mapping's own
    ordering, so the sequence is stable for equal inputs.
    """
    slots: list[RoundSlot] = []
    for category in CATEGORY_ORDER:
        for _ in range(max(0, int(activity_counts.get(category, 0)))):
            slots.append(RoundSlot(round_number=len(slots) + 1, category=category))
    return slots


def total_rounds(activity_counts: Mapping[ActivityCategory, int]) -> int:
    return sum(max(0, int(count)) for count in activity_counts.values())
