"""
Retry with bounded exponential backoff for upstream page fetches.
"""

import random
import time
from typing import Any, Callable, Optional, Tuple, Type

from audit_kernel.errors import RetryExhaustedError, TransientUpstreamError
from audit_kernel.models.config import OrchestratorConfig
from audit_kernel.observability.logging import get_logger

logger = get_logger("audit_kernel.orchestrator.retry")


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(self,
                 max_attempts: int = 3,
                 base_delay: float = 1.0,
                 max_delay: float = 30.0,
                 exponential_base: float = 2.0,
                 jitter: bool = True):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter

    @classmethod
    def from_orchestrator(cls, config: OrchestratorConfig) -> "RetryConfig":
        return cls(
            max_attempts=config.max_page_attempts,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
            exponential_base=config.retry_exponential_base,
            jitter=config.retry_jitter,
        )


def _calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Delay before the attempt after `attempt`, capped and jittered."""
    delay = config.base_delay * (config.exponential_base ** (attempt - 1))
    delay = min(delay, config.max_delay)

    if config.jitter:
        jitter_amount = delay * 0.1  # 10% jitter
        delay += random.uniform(-jitter_amount, jitter_amount)

    return max(0.0, delay)


def retry_call(
    func: Callable[..., Any],
    *args: Any,
    config: Optional[RetryConfig] = None,
    exceptions: Tuple[Type[BaseException], ...] = (TransientUpstreamError,),
    sleep: Callable[[float], None] = time.sleep,
    operation: str = "",
    **kwargs: Any,
) -> Any:
    """Call func, retrying on the given exceptions. Anything else propagates
    immediately. Raises RetryExhaustedError after the last failed attempt."""
    config = config or RetryConfig()
    name = operation or getattr(func, "__name__", "call")

    for attempt in range(1, config.max_attempts + 1):
        try:
            result = func(*args, **kwargs)
            if attempt > 1:
                logger.info("Retry succeeded", attempt=attempt, operation=name)
            return result
        except exceptions as e:
            if attempt == config.max_attempts:
                logger.error(
                    "All retry attempts exhausted",
                    attempts=attempt,
                    operation=name,
                    error=str(e),
                )
                raise RetryExhaustedError(
                    f"{name} failed after {attempt} attempts: {e}",
                    last_exception=e,
                    attempts=attempt,
                )

            delay = _calculate_delay(attempt, config)
            logger.warning(
                "Retry attempt failed, waiting before next attempt",
                attempt=attempt,
                delay=round(delay, 3),
                operation=name,
                error=str(e),
            )
            sleep(delay)

    raise ValueError("max_attempts must be at least 1")
