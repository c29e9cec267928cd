"""Retry utilities for registry operations with exponential backoff"""

import logging
import random
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from functools import wraps
from typing import Callable, List, Optional, Set, Tuple, TypeVar

from image_migrator.error_utils import ManifestNotFoundError, RateLimitedError, RegistryError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryableErrorType(Enum):
    """Types of errors that should trigger retries"""

    NETWORK = "network"  # Connection errors, timeouts
    TEMPORARY = "temporary"  # 5xx errors, rate limiting
    PERMANENT = "permanent"  # 4xx errors (except rate limiting), auth failures


NETWORK_INDICATORS = [
    "connection",
    "timeout",
    "timed out",
    "network",
    "dns",
    "resolve",
    "refused",
    "unreachable",
    "reset",
    "broken pipe",
    "no route to host",
    "temporary failure",
]


# A status code only counts next to "status"/"code"/"http" or its reason phrase;
# bare digits also occur inside blob digests and host:port strings
HTTP_STATUS_RE = re.compile(
    r"(?:\bstatus(?: code)?|\bcode|\bhttp(?:/[\d.]+)?)[:=\s]+(\d{3})\b"
    r"|\b(\d{3}) (?:too many requests|unauthorized|forbidden|not found|internal server error"
    r"|bad gateway|service unavailable|gateway timeout)"
)

RATE_LIMIT_INDICATORS = ["rate limit", "too many requests", "toomanyrequests"]
NOT_FOUND_INDICATORS = ["manifest unknown", "name unknown"]


def http_status_codes(text: str) -> Set[int]:
    """HTTP status codes mentioned in an error message."""
    return {int(a or b) for a, b in HTTP_STATUS_RE.findall(text.lower())}


def is_rate_limited(text: str) -> bool:
    lowered = text.lower()
    return 429 in http_status_codes(lowered) or any(i in lowered for i in RATE_LIMIT_INDICATORS)


def is_not_found(text: str) -> bool:
    lowered = text.lower()
    return 404 in http_status_codes(lowered) or any(i in lowered for i in NOT_FOUND_INDICATORS)


def is_retryable_error(error: Exception, error_message: str = "") -> Tuple[bool, RetryableErrorType]:
    """Determine if an error is retryable and what type it is

    Args:
        error: The exception that occurred
        error_message: Optional error message string (e.g. captured stderr)

    Returns:
        Tuple of (is_retryable, error_type)
    """
    if isinstance(error, ManifestNotFoundError):
        return False, RetryableErrorType.PERMANENT
    if isinstance(error, RateLimitedError):
        return True, RetryableErrorType.TEMPORARY

    if isinstance(error, RegistryError):
        # The formatted message embeds the reference (host:port), only stderr is meaningful
        combined = f"{error.stderr} {error_message}".lower()
    else:
        combined = f"{error} {error_message}".lower()

    codes = http_status_codes(combined)

    # Rate limiting reported through a generic error
    if is_rate_limited(combined):
        return True, RetryableErrorType.TEMPORARY

    # Auth errors - not retryable (won't fix itself)
    if codes & {401, 403} or "unauthorized" in combined or "forbidden" in combined:
        return False, RetryableErrorType.PERMANENT

    if any(indicator in combined for indicator in NETWORK_INDICATORS):
        return True, RetryableErrorType.NETWORK

    # HTTP 5xx errors - retryable (server errors)
    if codes & {500, 502, 503, 504}:
        return True, RetryableErrorType.TEMPORARY

    if is_not_found(combined):
        return False, RetryableErrorType.PERMANENT

    # Unknown errors - treat as transient
    return True, RetryableErrorType.TEMPORARY


@dataclass
class RetryPolicy:
    """Bounded retry policy owned by a registry client.

    ``sleep`` is injectable so tests can run the policy without waiting.
    """

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    @classmethod
    def from_config(cls, config_manager) -> "RetryPolicy":
        return cls(
            max_retries=config_manager.get_max_retries(),
            initial_delay=config_manager.get_retry_initial_delay(),
            max_delay=config_manager.get_retry_max_delay(),
            exponential_base=config_manager.get_retry_exponential_base(),
            jitter=config_manager.get_retry_jitter(),
        )

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def compute_delay(self, attempt: int, error: Optional[Exception] = None) -> float:
        """Delay before the retry that follows ``attempt`` (0-based)."""
        delay = min(self.initial_delay * (self.exponential_base**attempt), self.max_delay)

        if self.jitter:
            jitter_amount = delay * 0.1  # 10% jitter
            delay = max(0.1, delay + random.uniform(-jitter_amount, jitter_amount))

        retry_after = getattr(error, "retry_after", None)
        if retry_after:
            delay = max(delay, retry_after)
        return delay


def retry_with_backoff(
    policy: RetryPolicy,
    retryable_errors: Optional[List[RetryableErrorType]] = None,
) -> Callable:
    """Decorator for retrying functions with exponential backoff

    Args:
        policy: RetryPolicy giving the attempt bound and the delay curve
        retryable_errors: List of error types to retry (None = retry all retryable types)

    Returns:
        Decorator function
    """
    if retryable_errors is None:
        retryable_errors = [RetryableErrorType.NETWORK, RetryableErrorType.TEMPORARY]

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            for attempt in range(policy.max_attempts):
                try:
                    result = func(*args, **kwargs)
                    if attempt > 0:
                        logger.info(f"{func.__name__} succeeded on attempt {attempt + 1}")
                    return result

                except Exception as e:
                    error_message = getattr(e, "stderr", "") or ""
                    is_retryable, error_type = is_retryable_error(e, error_message)

                    if not is_retryable or error_type not in retryable_errors:
                        logger.debug(f"{func.__name__} failed with non-retryable error ({error_type.value})")
                        raise

                    if attempt >= policy.max_retries:
                        logger.error(
                            f"{func.__name__} failed after {policy.max_attempts} attempts. "
                            f"Last error ({error_type.value}): {getattr(e, 'message', e)}"
                        )
                        raise

                    delay = policy.compute_delay(attempt, e)
                    logger.warning(
                        f"{func.__name__} failed on attempt {attempt + 1}/{policy.max_attempts} "
                        f"({error_type.value} error: {getattr(e, 'message', e)}). "
                        f"Retrying in {delay:.2f}s..."
                    )
                    policy.sleep(delay)

            raise RuntimeError(f"{func.__name__} exhausted retries without a result")

        return wrapper

    return decorator
