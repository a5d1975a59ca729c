"""
Anti-ban humanization — how long to wait before a message goes out.

A human reply takes a random "reaction" pause plus the time it takes to
type the text; the sum is jittered by ±20% so consecutive sends never
fall on a regular cadence.

    delay_ms = floor((uniform(min, max) + len(text) / cps * 1000) * uniform(0.8, 1.2))
"""
from __future__ import annotations

import math
import random
from typing import Optional

from config.settings import AntiBanConfig

JITTER_LOW = 0.8
JITTER_HIGH = 1.2


def typing_time_ms(content: str, chars_per_second: float) -> float:
    if chars_per_second <= 0:
        return 0.0
    return len(content or "") / chars_per_second * 1000


def compute_delay_ms(
    content: str, config: AntiBanConfig, rng: Optional[random.Random] = None,
) -> int:
    rng = rng or random
    low = min(config.message_delay_min_ms, config.message_delay_max_ms)
    high = max(config.message_delay_min_ms, config.message_delay_max_ms)
    base = rng.uniform(low, high)
    typing = typing_time_ms(content, config.typing_chars_per_second)
    return math.floor((base + typing) * rng.uniform(JITTER_LOW, JITTER_HIGH))


def delay_bounds_ms(content: str, config: AntiBanConfig) -> tuple[int, int]:
    """Smallest and largest delay compute_delay_ms can return for `content`."""
    typing = typing_time_ms(content, config.typing_chars_per_second)
    low = min(config.message_delay_min_ms, config.message_delay_max_ms)
    high = max(config.message_delay_min_ms, config.message_delay_max_ms)
    return (
        math.floor((low + typing) * JITTER_LOW),
        math.floor((high + typing) * JITTER_HIGH),
    )
