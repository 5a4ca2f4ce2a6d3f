"""
The interval ladder: base review interval, in days, for each stage.
"""

from typing import Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .constants import DEFAULT_LADDER_STEPS, MAX_INTERVAL_DAYS


class IntervalLadder(BaseModel):
    """
    Fixed, strictly ascending sequence of positive day counts indexed by stage.

    The last rung is the baseline once an item has graduated; growth past it
    is multiplicative and bounded by `max_interval`.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    steps: Tuple[int, ...] = Field(
        default=DEFAULT_LADDER_STEPS,
        min_length=1,
        description="Base interval in days for each stage.",
    )
    max_interval: int = Field(
        default=MAX_INTERVAL_DAYS,
        ge=1,
        description="Ceiling on any raw interval, in days.",
    )

    @model_validator(mode="after")
    def check_steps(self) -> "IntervalLadder":
        if any(step < 1 for step in self.steps):
            raise ValueError("Ladder steps must be positive day counts.")
        for lower, upper in zip(self.steps, self.steps[1:]):
            if upper <= lower:
                raise ValueError(
                    f"Ladder steps must strictly increase: {lower} -> {upper}."
                )
        return self

    @property
    def max_stage_index(self) -> int:
        return len(self.steps) - 1

    @property
    def final_step(self) -> int:
        return self.steps[-1]

    def clamp_stage(self, stage: int) -> int:
        """Clamp any integer into the valid stage range."""
        return max(0, min(stage, self.max_stage_index))

    def is_past_ladder(self, stage: int) -> bool:
        return self.clamp_stage(stage) >= self.max_stage_index

    def interval_for(self, stage: int) -> int:
        return self.steps[self.clamp_stage(stage)]

    def cap(self, days: int) -> int:
        """Apply the ceiling and the one-day floor to a raw interval."""
        return max(1, min(days, self.max_interval))

    def __len__(self) -> int:
        return len(self.steps)


DEFAULT_LADDER = IntervalLadder()
