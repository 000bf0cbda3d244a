"""
Retry policy configuration for task dispatch.

Design Pattern: Strategy Pattern
RetryPolicy encapsulates retry behavior, allowing different retry strategies
per task template without modifying the scheduler.

Design Rationale:
- Safe default: no automatic retries
- Simple retry: `RetryPolicy.with_limit(3)` with standard backoff
- Advanced control: custom RetryPolicy for full control
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, cast

from pytaxis.errors import ValidationError


@dataclass(frozen=True)
class RetryPolicy:
    """
    Configuration for task retry behavior.

    Controls how many times a task is redispatched after a retryable failure
    and the backoff between attempts.

    Examples:
        # Simple: just specify the retry limit (uses standard delays)
        policy = RetryPolicy.with_limit(3)

        # Named policy: predefined sensible defaults
        policy = RetryPolicy.STANDARD

        # Custom policy: full control
        policy = RetryPolicy(
            limit=5,
            initial_delay=1.0,
            backoff_multiplier=2.0,
            max_delay=30.0,
        )
    """

    limit: int = 0
    """Maximum number of retries after the first attempt.

    limit = 3 means up to 4 attempts in total:
    - Attempt 1: immediate
    - Attempt 2: after initial_delay
    - Attempt 3: after initial_delay * backoff_multiplier
    - Attempt 4: after initial_delay * backoff_multiplier^2
    """

    initial_delay: float = 1.0
    """Delay before the first retry in seconds."""

    backoff_multiplier: float = 2.0
    """Multiplier for exponential backoff.

    Each retry delay is calculated as:
    min(initial_delay * backoff_multiplier^(attempt-1), max_delay)
    """

    max_delay: float = 60.0
    """Maximum delay between retries in seconds (caps exponential backoff)."""

    retry_on_timeout: bool = False
    """Treat TaskTimeoutError as retryable."""

    jitter: float = 0.0
    """Random spread applied to each delay, as a fraction (0.1 = ±10%)."""

    # =========================================================================
    # Predefined Policies
    # =========================================================================

    if TYPE_CHECKING:
        NONE: RetryPolicy
        STANDARD: RetryPolicy
        AGGRESSIVE: RetryPolicy
    else:
        NONE = cast("RetryPolicy", None)
        STANDARD = cast("RetryPolicy", None)
        AGGRESSIVE = cast("RetryPolicy", None)

    def __post_init__(self) -> None:
        problems = []
        if self.limit < 0:
            problems.append(f"retry limit must be >= 0, got {self.limit}")
        if self.initial_delay < 0 or self.max_delay < 0:
            problems.append("retry delays must be >= 0")
        if self.backoff_multiplier < 1.0:
            problems.append(
                f"backoff multiplier must be >= 1.0, got {self.backoff_multiplier}"
            )
        if not 0.0 <= self.jitter < 1.0:
            problems.append(f"jitter must be in [0, 1), got {self.jitter}")
        if problems:
            raise ValidationError(problems)

    @classmethod
    def with_limit(cls, limit: int) -> RetryPolicy:
        """
        Create a policy with a custom retry limit (uses standard delays).

        Args:
            limit: Maximum number of retries

        Returns:
            RetryPolicy with standard delays
        """
        return cls(limit=limit, initial_delay=1.0, backoff_multiplier=2.0, max_delay=30.0)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> RetryPolicy:
        """Build a policy from its serialized form.

        Accepts the keys `limit`, `backoff` (`base`, `factor`, `max`),
        `retry_on_timeout` and `jitter`. Missing keys keep their defaults.
        """
        if not data:
            return cls.NONE
        backoff = data.get("backoff") or {}
        try:
            return cls(
                limit=int(data.get("limit", 0)),
                initial_delay=float(backoff.get("base", data.get("initial_delay", 1.0))),
                backoff_multiplier=float(
                    backoff.get("factor", data.get("backoff_multiplier", 2.0))
                ),
                max_delay=float(backoff.get("max", data.get("max_delay", 60.0))),
                retry_on_timeout=bool(data.get("retry_on_timeout", False)),
                jitter=float(data.get("jitter", 0.0)),
            )
        except (TypeError, ValueError) as e:
            raise ValidationError(f"invalid retry policy {dict(data)!r}: {e}") from e

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the form accepted by from_dict()."""
        return {
            "limit": self.limit,
            "backoff": {
                "base": self.initial_delay,
                "factor": self.backoff_multiplier,
                "max": self.max_delay,
            },
            "retry_on_timeout": self.retry_on_timeout,
            "jitter": self.jitter,
        }

    def delay_for_attempt(self, attempt: int) -> float | None:
        """
        Calculate the delay before retrying after a failed attempt.

        Uses exponential backoff: initial_delay * backoff_multiplier^(attempt-1)
        capped at max_delay. Jitter is not applied here.

        Args:
            attempt: The attempt that just failed (1-indexed)

        Returns:
            Delay in seconds before the next attempt, or None if the retry
            budget is exhausted.

        Example:
            policy = RetryPolicy(limit=3, initial_delay=1.0, backoff_multiplier=2.0)
            policy.delay_for_attempt(1)  # 1.0
            policy.delay_for_attempt(3)  # 4.0
            policy.delay_for_attempt(4)  # None
        """
        if attempt > self.limit:
            return None

        delay = self.initial_delay * self.backoff_multiplier ** (attempt - 1)
        return min(delay, self.max_delay)

    def __repr__(self) -> str:
        return (
            f"RetryPolicy(limit={self.limit}, initial_delay={self.initial_delay}, "
            f"backoff_multiplier={self.backoff_multiplier}, max_delay={self.max_delay})"
        )


# Initialize predefined policies after class definition
RetryPolicy.NONE = RetryPolicy(limit=0, initial_delay=0.0, backoff_multiplier=1.0, max_delay=0.0)

RetryPolicy.STANDARD = RetryPolicy(
    limit=3,
    initial_delay=1.0,
    backoff_multiplier=2.0,
    max_delay=30.0,
)

RetryPolicy.AGGRESSIVE = RetryPolicy(
    limit=10,
    initial_delay=0.1,
    backoff_multiplier=1.5,
    max_delay=10.0,
)


# =============================================================================
# RetryableError - Fine-grained error retry control
# =============================================================================


class RetryableError(Exception):
    """
    Base class for handler errors that state whether they should be retried.

    Raise a subclass from a task handler to control classification by the
    in-process executor.

    Example:
        class DeployError(RetryableError):
            def __init__(self, message: str, is_retryable: bool = True):
                super().__init__(message)
                self._retryable = is_retryable

            def is_retryable(self) -> bool:
                return self._retryable

        raise DeployError("registry unavailable", is_retryable=True)
        raise DeployError("manifest invalid", is_retryable=False)
    """

    def is_retryable(self) -> bool:
        """
        Returns True if this error is transient and the task should be retried.

        Returns:
            True if retryable, False if permanent
        """
        return True
