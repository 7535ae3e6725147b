from __future__ import annotations
from dataclasses import dataclass
import logging

from .errors import InvalidAmount

logger = logging.getLogger(__name__)

ACC_PRECISION = 10**12
BPS = 10_000
MAX_FEE_BPS = 50


def require_uint(value: int, what: str) -> int:
    if not isinstance(value, int) or isinstance(value, bool):
        raise InvalidAmount(f"{what} must be an int, got {type(value).__name__}")
    if value < 0:
        raise InvalidAmount(f"{what} must be non-negative, got {value}")
    return value


def mul_div(a: int, b: int, denominator: int) -> int:
    """Floor of ``a * b / denominator``; zero when the denominator is zero."""
    if denominator == 0:
        return 0
    return (a * b) // denominator


def bps_of(amount: int, bps: int) -> int:
    return mul_div(amount, bps, BPS)


def clamp(value: int, ceiling: int, what: str) -> int:
    """min(value, ceiling), logging when the ceiling actually bites."""
    if value > ceiling:
        logger.warning("[CLAMP] %s requested=%d capped_to=%d", what, value, ceiling)
        return ceiling
    return value


@dataclass(frozen=True)
class AccPerShare:
    """Cumulative reward per share, stored as an integer scaled by ACC_PRECISION."""
    raw: int = 0

    def __post_init__(self) -> None:
        require_uint(self.raw, "acc_reward_per_share")

    def accrue(self, reward: int, shares_total: int) -> "AccPerShare":
        if shares_total == 0 or reward == 0:
            return self
        return AccPerShare(self.raw + reward * ACC_PRECISION // shares_total)

    def value_of(self, shares: int) -> int:
        return shares * self.raw // ACC_PRECISION

    def pending(self, shares: int, baseline: int) -> int:
        owed = self.value_of(shares) - baseline
        if owed < 0:
            logger.warning("[CLAMP] pending below zero shares=%d baseline=%d acc=%d",
                           shares, baseline, self.raw)
            return 0
        return owed

    def __int__(self) -> int:
        return self.raw
