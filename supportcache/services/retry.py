"""Retry with backoff for transient source failures"""
import logging
import time
from typing import Any, Callable, Optional

from supportcache.exceptions import RateLimitedError

logger = logging.getLogger(__name__)

RETRYABLE_SERVER_CODES = (500, 502, 503, 504)
DEFAULT_RETRY_AFTER_S = 15.0


def _status_code(exc: Exception) -> Optional[int]:
    # Our own errors carry status_code; python-gitlab errors carry response_code.
    code = getattr(exc, "status_code", None)
    if code is None:
        code = getattr(exc, "response_code", None)
    return code


def parse_retry_after(value: Optional[str]) -> float:
    """Seconds from a Retry-After header; HTTP-date or garbage values fall back to the default."""
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return DEFAULT_RETRY_AFTER_S
    return seconds if 0 <= seconds < float("inf") else DEFAULT_RETRY_AFTER_S


def retry_delay(exc: Exception, attempt: int, base_delay_s: float) -> Optional[float]:
    """Seconds to wait before the next attempt, or None when `exc` is not transient."""
    if isinstance(exc, RateLimitedError):
        return exc.retry_after
    code = _status_code(exc)
    if code == 429:
        return DEFAULT_RETRY_AFTER_S
    if code in RETRYABLE_SERVER_CODES:
        return base_delay_s * (2 ** (attempt - 1))
    # If we can't classify, don't retry to avoid hiding real issues.
    return None


def with_retries(
    fn: Callable[[], Any],
    *,
    source: str,
    max_attempts: int = 3,
    base_delay_s: float = 2.0,
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    """Run callable, retrying rate-limit (429) and 5xx failures up to `max_attempts` times.

    A 429 that survives every attempt is re-raised as RateLimitedError so callers can
    tell throttling apart from other source failures.
    """
    attempt = 1
    while True:
        try:
            return fn()
        except Exception as e:
            delay = retry_delay(e, attempt, base_delay_s)
            if delay is None:
                raise
            if attempt >= max_attempts:
                if _status_code(e) == 429 and not isinstance(e, RateLimitedError):
                    raise RateLimitedError(source, retry_after=delay) from e
                raise
            if _status_code(e) == 429:
                logger.warning(f"{source} rate limited; waiting {delay:.0f}s before retry {attempt + 1}/{max_attempts}")
            else:
                logger.warning(f"{source} transient error ({e}); retry {attempt + 1}/{max_attempts} in {delay:.1f}s")
            sleep(delay)
            attempt += 1
