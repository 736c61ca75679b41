
from __future__ import annotations
import random
from typing import Optional


def calc_item_delay(
    attempts: int,
    *,
    base_seconds: float = 1.0,
    multiplier: float = 2.0,
    max_seconds: float = 30.0,
    jitter: float = 0.3,
    retry_after: Optional[float] = None,
    rand: Optional[random.Random] = None,
) -> float:
    """
    单个 item 的重试等待：base * multiplier^(attempts-1)，上限 max_seconds，
    再加 0~jitter 比例的抖动；上游给了 Retry-After 时取两者较大值。
    """
    attempts = max(1, attempts)
    delay = min(max_seconds, base_seconds * (multiplier ** (attempts - 1)))
    if jitter > 0:
        delay += (rand or random).uniform(0, jitter * delay)
    if retry_after is not None and retry_after > delay:
        delay = float(retry_after)
    return round(delay, 3)
