from __future__ import annotations

import random
from dataclasses import dataclass

from ..settings import BackoffSettings


@dataclass(slots=True)
class BackoffPolicy:
    """
    Capped exponential backoff: `min(base_s * 2**attempt, max_s)`.

    `jitter` spreads each delay down by up to that fraction; it defaults to 0
    so the sequence is deterministic for a single bot instance.
    """

    base_s: float = 1.0
    max_s: float = 30.0
    jitter: float = 0.0

    @classmethod
    def from_settings(cls, settings: BackoffSettings) -> BackoffPolicy:
        return cls(base_s=settings.base_s, max_s=settings.max_s, jitter=settings.jitter)

    def delay_for(self, attempt: int) -> float:
        if attempt < 0:
            raise ValueError("attempt must be >= 0")
        # Avoid float overflow for very long outages.
        if attempt >= 64:
            delay = self.max_s
        else:
            delay = min(self.base_s * (2**attempt), self.max_s)
        if self.jitter:
            delay -= delay * self.jitter * random.random()
        return delay
