"""
Signal Sampler - combines indicator votes into one direction per tick

Indicator collaborators publish Buy/Sell/None votes onto a VoteBoard. The
sampler reads the configured votes and applies the aggregation rule. It has
no side effects: the same votes always produce the same Signal.
"""

import logging
from collections.abc import Mapping
from typing import Protocol

from contracts.signal import (
    Direction,
    Signal,
    SignalRule,
    SignalSourceConfig,
    Vote,
)

logger = logging.getLogger(__name__)


class VoteSource(Protocol):
    """Anything that can report the latest vote for a name"""

    def get_vote(self, name: str) -> Direction: ...


class VoteBoard:
    """In-memory board where indicator collaborators publish their votes"""

    def __init__(self) -> None:
        self._votes: dict[str, Vote] = {}

    def publish(self, name: str, direction: Direction | str | None) -> Vote:
        vote = Vote(name=name, direction=Direction.parse(direction))
        self._votes[name] = vote
        return vote

    def get_vote(self, name: str) -> Direction:
        vote = self._votes.get(name)
        return vote.direction if vote else Direction.NONE

    def clear(self, name: str | None = None) -> None:
        if name is None:
            self._votes.clear()
        else:
            self._votes.pop(name, None)

    def snapshot(self) -> dict[str, Vote]:
        return dict(self._votes)


def combine_pair(first: Direction, second: Direction) -> tuple[Direction, bool]:
    """Buy+Buy=Buy, Sell+Sell=Sell, disagreement is ambiguous, a missing vote is None"""
    if first == Direction.NONE or second == Direction.NONE:
        return Direction.NONE, False
    if first == second:
        return first, False
    return Direction.NONE, True


def combine_majority(votes: list[Direction], required: int) -> tuple[Direction, bool]:
    buys = sum(1 for v in votes if v == Direction.BUY)
    sells = sum(1 for v in votes if v == Direction.SELL)
    if buys >= required and buys > sells:
        return Direction.BUY, False
    if sells >= required and sells > buys:
        return Direction.SELL, False
    return Direction.NONE, buys > 0 and sells > 0


def combine_all(votes: list[Direction]) -> tuple[Direction, bool]:
    if any(v == Direction.NONE for v in votes):
        return Direction.NONE, False
    if all(v == votes[0] for v in votes):
        return votes[0], False
    return Direction.NONE, True


def aggregate(
    source: SignalSourceConfig, votes: Mapping[str, Direction]
) -> tuple[Direction, bool]:
    """Apply the configured rule to a name->direction mapping.

    Returns the combined direction and whether present votes disagreed.
    """
    values = [votes.get(name, Direction.NONE) for name in source.votes]

    if source.rule in (SignalRule.SINGLE, SignalRule.EXTERNAL):
        return values[0], False
    if source.rule == SignalRule.PAIR:
        return combine_pair(values[0], values[1])
    if source.rule == SignalRule.N_OF_M:
        # validated non-None for this rule
        return combine_majority(values, source.required or len(values))
    if source.rule == SignalRule.ALL:
        return combine_all(values)

    logger.warning(f"Unknown signal rule {source.rule}, treating as no signal")
    return Direction.NONE, False


class SignalSampler:
    """Reads the configured votes and produces one Signal per tick"""

    def __init__(self, source: SignalSourceConfig, votes: VoteSource) -> None:
        self.source = source
        self.votes = votes

    def sample(self, now: float) -> Signal:
        current = {name: self.votes.get_vote(name) for name in self.source.votes}
        direction, ambiguous = aggregate(self.source, current)
        return Signal(
            direction=direction,
            sampled_at=now,
            ambiguous=ambiguous,
            pre_confirmed=self.source.pre_confirmed,
        )
