"""Round evaluation for the vote aggregator.

Evaluation is a pure function of the active option set, the lobby roster
and the current pass's votes; the service applies the returned outcome.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np


def _env_int(name: str, default: int) -> int:
    try:
        return max(0, int(os.getenv(name, str(default))))
    except ValueError:
        return default


MAX_VOTE_RETRIES = _env_int("MAX_VOTE_RETRIES", 2)
MAX_TIEBREAK_PASSES = _env_int("MAX_TIEBREAK_PASSES", 2)

VoteKey = Tuple[str, str]


class Outcome(str, Enum):
    pending = "pending"
    consensus = "consensus"
    tie = "tie"
    revote = "revote"
    no_votes = "no_votes"
    forced = "forced"
    skipped = "skipped"


@dataclass
class Evaluation:
    outcome: Outcome
    winner_option_id: Optional[str] = None
    tied_option_ids: List[str] = field(default_factory=list)
    next_active_ids: List[str] = field(default_factory=list)
    yes_counts: Dict[str, int] = field(default_factory=dict)
    finished_user_ids: List[str] = field(default_factory=list)

    @property
    def resolved(self) -> bool:
        return self.outcome in {Outcome.consensus, Outcome.forced, Outcome.skipped}


def finished_members(option_ids: Sequence[str], member_ids: Sequence[str], votes: Mapping[VoteKey, bool]) -> List[str]:
    """Members who voted on every option of the active set, in roster order."""
    return [
        user_id
        for user_id in member_ids
        if all((user_id, option_id) in votes for option_id in option_ids)
    ]


def vote_matrix(option_ids: Sequence[str], user_ids: Sequence[str], votes: Mapping[VoteKey, bool]) -> np.ndarray:
    matrix = np.zeros((len(user_ids), len(option_ids)), dtype=bool)
    for row, user_id in enumerate(user_ids):
        for col, option_id in enumerate(option_ids):
            matrix[row, col] = bool(votes.get((user_id, option_id), False))
    return matrix


def tally(option_ids: Sequence[str], user_ids: Sequence[str], votes: Mapping[VoteKey, bool]) -> tuple[Dict[str, int], Dict[str, bool]]:
    """Yes-counts and unanimity per option among the given voters."""
    if not option_ids:
        return {}, {}
    matrix = vote_matrix(option_ids, user_ids, votes)
    counts = matrix.sum(axis=0) if len(user_ids) else np.zeros(len(option_ids), dtype=int)
    unanimous = matrix.all(axis=0) if len(user_ids) else np.zeros(len(option_ids), dtype=bool)
    return (
        {option_id: int(counts[idx]) for idx, option_id in enumerate(option_ids)},
        {option_id: bool(unanimous[idx]) for idx, option_id in enumerate(option_ids)},
    )


def break_tie_by_join_order(tied_ids: Sequence[str], member_ids: Sequence[str], votes: Mapping[VoteKey, bool]) -> str:
    """Earliest-joined member with exactly one yes among the tied options decides."""
    for user_id in member_ids:
        liked = [option_id for option_id in tied_ids if votes.get((user_id, option_id))]
        if len(liked) == 1:
            return liked[0]
    return tied_ids[0]


def evaluate_round(
    option_ids: Sequence[str],
    member_ids: Sequence[str],
    votes: Mapping[VoteKey, bool],
    tiebreak_count: int = 0,
    retry_count: int = 0,
    max_retries: int = MAX_VOTE_RETRIES,
    max_tiebreaks: int = MAX_TIEBREAK_PASSES,
) -> Evaluation:
    if not option_ids:
        raise ValueError("cannot evaluate a round without options")

    finishers = finished_members(option_ids, member_ids, votes)
    yes_counts, unanimous = tally(option_ids, finishers, votes)
    if not member_ids or len(finishers) < len(member_ids):
        return Evaluation(Outcome.pending, yes_counts=yes_counts, finished_user_ids=finishers)

    top = max(yes_counts.values())
    if top == 0:
        if retry_count < max_retries:
            return Evaluation(
                Outcome.no_votes,
                next_active_ids=list(option_ids),
                yes_counts=yes_counts,
                finished_user_ids=finishers,
            )
        return Evaluation(Outcome.skipped, yes_counts=yes_counts, finished_user_ids=finishers)

    leaders = [option_id for option_id in option_ids if yes_counts[option_id] == top]
    if len(leaders) == 1:
        leader = leaders[0]
        if unanimous[leader]:
            return Evaluation(Outcome.consensus, winner_option_id=leader, yes_counts=yes_counts, finished_user_ids=finishers)
        if retry_count < max_retries:
            liked = [option_id for option_id in option_ids if yes_counts[option_id] > 0]
            return Evaluation(
                Outcome.revote,
                next_active_ids=liked,
                yes_counts=yes_counts,
                finished_user_ids=finishers,
            )
        return Evaluation(Outcome.forced, winner_option_id=leader, yes_counts=yes_counts, finished_user_ids=finishers)

    if tiebreak_count < max_tiebreaks:
        return Evaluation(
            Outcome.tie,
            tied_option_ids=leaders,
            next_active_ids=leaders,
            yes_counts=yes_counts,
            finished_user_ids=finishers,
        )
    return Evaluation(
        Outcome.forced,
        winner_option_id=break_tie_by_join_order(leaders, member_ids, votes),
        tied_option_ids=leaders,
        yes_counts=yes_counts,
        finished_user_ids=finishers,
    )
