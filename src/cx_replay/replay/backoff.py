from pydantic import BaseModel, Field

DEFAULT_BACKOFF_MULTIPLIER = 1.5
DEFAULT_MAX_DELAY = 30000


def compute_backoff_delay(
    attempt: int,
    base: float,
    multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
    maximum: float = DEFAULT_MAX_DELAY,
) -> float:
    """
    Delay in ms to wait after failed attempt number `attempt` (1-based):
    `base * multiplier ** (attempt - 1)`, capped at `maximum`.
    """
    if attempt < 1 or base <= 0:
        return 0.0
    return min(maximum, base * multiplier ** (attempt - 1))


class BackoffPolicy(BaseModel):
    """Exponential backoff between step attempts."""

    base_delay: float = Field(1000, ge=0, description="Delay after the first failure in ms.")
    multiplier: float = Field(
        DEFAULT_BACKOFF_MULTIPLIER, ge=1, description="Growth factor per attempt."
    )
    max_delay: float = Field(DEFAULT_MAX_DELAY, ge=0, description="Ceiling in ms.")

    def delay(self, attempt: int) -> float:
        return compute_backoff_delay(attempt, self.base_delay, self.multiplier, self.max_delay)

    def schedule(self, attempts: int) -> list[float]:
        """Delays between `attempts` consecutive tries."""
        return [self.delay(n) for n in range(1, attempts)]
