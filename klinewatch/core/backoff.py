import random
from typing import Optional


class ExponentialBackoff:
    """
    Reconnect delay policy: base * factor^attempt, capped at max_delay,
    with random jitter so many feeds don't reconnect in lockstep.
    Retries are unbounded; callers decide when to stop.
    """

    def __init__(self, initial: float = 1.0, max_delay: float = 30.0, factor: float = 2.0,
                 jitter: float = 0.1, rng: Optional[random.Random] = None):
        if initial <= 0 or max_delay < initial:
            raise ValueError("backoff needs 0 < initial <= max_delay")
        self.initial = initial
        self.max_delay = max_delay
        self.factor = factor
        self.jitter = jitter
        self.attempt = 0
        self._rng = rng or random.Random()

    def next_delay(self) -> float:
        base = min(self.initial * (self.factor ** self.attempt), self.max_delay)
        self.attempt += 1
        # Jitter only ever shortens the delay, so the cap holds
        return base * (1.0 - self.jitter * self._rng.random())

    def reset(self):
        self.attempt = 0
