"""Exponential reconnect backoff with jitter.

Delays double after every failed attempt, starting at ``initial`` and
capped at ``maximum``.  Each delay is scaled by a random factor in
``[1 - jitter, 1]`` so a fleet of bridges does not hammer a broker
that just came back in lock-step.
"""

from __future__ import annotations

import random
from collections.abc import Callable
from dataclasses import dataclass, field


@dataclass
class ExponentialBackoff:
    """Stateful delay generator for consecutive reconnect attempts.

    Call :meth:`next_delay` after each failure and :meth:`reset` after
    a success.
    """

    initial: float
    maximum: float
    factor: float = 2.0
    jitter: float = 0.1
    rand: Callable[[], float] = field(default=random.random, repr=False)
    step: int = field(default=0, init=False)

    def __post_init__(self) -> None:
        if self.initial <= 0 or self.maximum <= 0:
            msg = "Backoff delays must be positive"
            raise ValueError(msg)
        if self.factor < 1:
            msg = "Backoff factor must be at least 1"
            raise ValueError(msg)
        if not 0 <= self.jitter < 1:
            msg = "Backoff jitter must be in [0, 1)"
            raise ValueError(msg)

    def peek(self) -> float:
        """Un-jittered delay the next failure will produce."""
        return min(self.initial * self.factor**self.step, self.maximum)

    def next_delay(self) -> float:
        """Return the delay before the next attempt and advance."""
        delay = self.peek()
        # Stop growing the exponent once capped.
        if delay < self.maximum:
            self.step += 1
        return delay * (1 - self.jitter * self.rand())

    def reset(self) -> None:
        """Start over from ``initial`` after a successful attempt."""
        self.step = 0
