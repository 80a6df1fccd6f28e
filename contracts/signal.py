from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator


class Direction(str, Enum):
    """Directional vote produced by an indicator or by the sampler"""

    BUY = "buy"
    SELL = "sell"
    NONE = "none"

    @property
    def opposite(self) -> "Direction":
        if self is Direction.BUY:
            return Direction.SELL
        if self is Direction.SELL:
            return Direction.BUY
        return Direction.NONE

    @classmethod
    def parse(cls, value: "str | Direction | None") -> "Direction":
        """Accept the loose string tags indicators emit ('buy', 'flat', None...)"""
        if isinstance(value, Direction):
            return value
        if value is None:
            return cls.NONE
        normalized = str(value).strip().lower()
        if normalized in ("buy", "long", "up"):
            return cls.BUY
        if normalized in ("sell", "short", "down"):
            return cls.SELL
        return cls.NONE


class SignalRule(str, Enum):
    """How individual votes are combined into one direction"""

    SINGLE = "single"  # pass-through of one named vote
    PAIR = "pair"  # buy+buy=buy, sell+sell=sell, disagreement=none
    N_OF_M = "n_of_m"  # at least `required` votes agree
    ALL = "all"  # every vote present and agreeing
    EXTERNAL = "external"  # one vote already debounced by its producer


class SignalSourceConfig(BaseModel):
    """Aggregation rule plus the votes it reads"""

    rule: SignalRule = Field(SignalRule.SINGLE, description="Combination rule")
    votes: list[str] = Field(
        default_factory=lambda: ["live_drift"], description="Vote names to read"
    )
    required: int | None = Field(
        None, ge=1, description="Agreeing votes needed for the n_of_m rule"
    )

    @field_validator("votes")
    @classmethod
    def validate_votes(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("At least one vote name is required")
        return v

    @model_validator(mode="after")
    def validate_rule_arity(self) -> "SignalSourceConfig":
        if self.rule in (SignalRule.SINGLE, SignalRule.EXTERNAL) and len(self.votes) != 1:
            raise ValueError(f"Rule {self.rule.value} reads exactly one vote")
        if self.rule == SignalRule.PAIR and len(self.votes) != 2:
            raise ValueError("Rule pair reads exactly two votes")
        if self.rule == SignalRule.N_OF_M:
            if self.required is None:
                raise ValueError("Rule n_of_m needs a required count")
            if self.required > len(self.votes):
                raise ValueError(
                    f"required={self.required} exceeds vote count {len(self.votes)}"
                )
        return self

    @property
    def pre_confirmed(self) -> bool:
        return self.rule == SignalRule.EXTERNAL


class Signal(BaseModel):
    """One sampled direction, recomputed every tick"""

    direction: Direction = Field(Direction.NONE, description="Sampled direction")
    sampled_at: float = Field(..., description="Sample time in seconds")
    ambiguous: bool = Field(
        False, description="Votes were present but disagreed (direction is none)"
    )
    pre_confirmed: bool = Field(
        False, description="Producer already debounced this direction"
    )


class Vote(BaseModel):
    """Latest vote published by one indicator collaborator"""

    name: str
    direction: Direction = Direction.NONE
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class LockChange(BaseModel):
    """Emitted exactly once when a new direction takes the lock"""

    previous: Direction
    current: Direction
    changed_at: float
    pre_confirmed: bool = False
