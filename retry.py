"""
Bounded retries for upstream calls.

Two shapes: ``with_retry`` repeats the same call after a short delay for
transient failures, ``fetch_with_variants`` walks a header-variant ladder when
a CDN rejects the request shape with 403.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable

import requests

from config import RETRY_DELAY, RETRY_MAX_ATTEMPTS
from errors import ProxyError
from header_strategy import apply_variant

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = 502


def is_retryable(error):
    """Timeouts, aborted connections and upstream 502s are worth one more try."""
    if isinstance(error, (requests.exceptions.Timeout, requests.exceptions.ConnectionError)):
        return True
    if isinstance(error, ProxyError):
        return error.retryable
    if isinstance(error, requests.exceptions.HTTPError) and error.response is not None:
        return error.response.status_code == RETRYABLE_STATUS
    return False


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = RETRY_MAX_ATTEMPTS
    delay: float = RETRY_DELAY
    is_retryable: Callable[[BaseException], bool] = is_retryable


DEFAULT_POLICY = RetryPolicy()


def with_retry(fn, policy=None, sleep=time.sleep, label='upstream call'):
    policy = policy or DEFAULT_POLICY
    attempts = max(1, policy.max_attempts)

    for attempt in range(1, attempts + 1):
        try:
            result = fn()
        except Exception as e:
            if attempt >= attempts or not policy.is_retryable(e):
                raise
            logger.warning(f"Retryable error in {label} on attempt {attempt}/{attempts}: {e}")
            sleep(policy.delay)
            continue
        if attempt > 1:
            logger.info(f"{label} succeeded on attempt {attempt}")
        return result


def fetch_with_variants(send, headers, variants, retry_status=403):
    """Send ``headers``; on ``retry_status`` retry with each variant in order.

    ``send`` takes a header dict and returns a requests ``Response``. Rejected
    responses are closed before the next attempt. The last response is
    returned whatever its status.
    """
    response = send(headers)
    for variant in variants:
        if response.status_code != retry_status:
            break
        logger.info(f"Got {retry_status}, trying header variant '{variant.name}'")
        response.close()
        response = send(apply_variant(headers, variant))
        logger.info(f"Variant '{variant.name}' status: {response.status_code}")
    return response
