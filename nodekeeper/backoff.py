"""
Backoff policy for reconnect attempts.

delay(attempt) = base * factor ** min(attempt, cap_index), clamped to
[base, max_delay]. Pure, no state.
"""

from dataclasses import dataclass

from nodekeeper.errors import ConfigurationError


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Multiplicative backoff with a growth cap.

    The defaults match the reconnect policy the node connections have
    always used: 30s base, x1.5 per attempt, growth capped after five
    steps, never more than five minutes.
    """

    base_delay: float = 30.0
    factor: float = 1.5
    max_delay: float = 300.0
    cap_index: int = 5

    def __post_init__(self):
        if self.base_delay <= 0:
            raise ConfigurationError(f"base_delay must be positive, got {self.base_delay}")
        if self.factor < 1:
            raise ConfigurationError(f"factor must be >= 1, got {self.factor}")
        if self.max_delay < self.base_delay:
            raise ConfigurationError(
                f"max_delay ({self.max_delay}) must be >= base_delay ({self.base_delay})"
            )
        if self.cap_index < 0:
            raise ConfigurationError(f"cap_index must be >= 0, got {self.cap_index}")

    @classmethod
    def fixed(cls, seconds: float) -> "BackoffPolicy":
        """Single-step policy: every attempt waits exactly `seconds`."""
        return cls(base_delay=seconds, factor=1.0, max_delay=seconds, cap_index=0)

    def delay(self, attempt: int) -> float:
        """Seconds to wait before retry number `attempt` (0-based)."""
        if attempt < 0:
            raise ValueError(f"attempt must be non-negative, got {attempt}")

        raw = self.base_delay * (self.factor ** min(attempt, self.cap_index))
        return max(self.base_delay, min(raw, self.max_delay))
