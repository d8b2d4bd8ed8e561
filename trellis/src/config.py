"""Engine configuration for Trellis."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class CascadeMode(str, Enum):
    """How far level changes propagate below a moved node."""

    FULL = "full"
    SHALLOW = "shallow"


@dataclass
class EngineConfig:
    """Configuration for gesture zones, order keys, and persistence.

    Attributes:
        order_gap: Offset applied to a target's order key on insertion.
        root_step: Spacing between a new root and the last existing root.
        before_zone: Normalized y below which a drop lands before the target.
        after_zone: Normalized y above which a drop lands after the target.
        child_zone_x: Normalized x right of which a middle-band drop nests.
        cascade: FULL rewrites every descendant's level; SHALLOW only
            updates direct children on child moves.
        gateway_timeout: Seconds to wait for the gateway, None for no limit.
    """

    order_gap: float = 0.5
    root_step: float = 1.0
    before_zone: float = 0.25
    after_zone: float = 0.75
    child_zone_x: float = 0.5
    cascade: CascadeMode = CascadeMode.FULL
    gateway_timeout: float | None = 10.0

    def __post_init__(self) -> None:
        self.cascade = CascadeMode(self.cascade)
        if self.order_gap <= 0:
            raise ValueError(f"order_gap must be positive, got {self.order_gap}")
        if self.root_step <= 0:
            raise ValueError(f"root_step must be positive, got {self.root_step}")
        if not 0.0 <= self.before_zone <= self.after_zone <= 1.0:
            raise ValueError(
                "Zones must satisfy 0 <= before_zone <= after_zone <= 1, "
                f"got {self.before_zone} / {self.after_zone}"
            )
        if not 0.0 <= self.child_zone_x <= 1.0:
            raise ValueError(f"child_zone_x must be within [0, 1], got {self.child_zone_x}")
        if self.gateway_timeout is not None and self.gateway_timeout <= 0:
            raise ValueError(f"gateway_timeout must be positive, got {self.gateway_timeout}")
