"""Common utilities and types for the provisioning engine."""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class ActionResult:
    """Result returned by a node operation."""
    success: bool
    message: str = ''
    duration: float = 0.0
    attributes: dict = field(default_factory=dict)


def call_with_retry(
    func: Callable[[], T],
    retry_on: tuple,
    retries: int = 3,
    backoff: float = 0.5,
    description: str = 'call',
) -> T:
    """Call func, retrying on the given exception types with exponential backoff.

    Only exceptions listed in retry_on are retried; anything else propagates
    on the first attempt. After the last retry the exception propagates.
    """
    attempt = 0
    while True:
        try:
            return func()
        except retry_on as e:
            if attempt >= retries:
                logger.error(f"{description} failed after {attempt + 1} attempts: {e}")
                raise
            delay = backoff * (2 ** attempt)
            attempt += 1
            logger.warning(f"{description} failed ({e}), retry {attempt}/{retries} in {delay:.1f}s")
            time.sleep(delay)


def wait_until(
    predicate: Callable[[], bool],
    timeout: float = 300,
    interval: float = 2.0,
    description: str = 'condition',
    cancel: Optional[threading.Event] = None,
) -> bool:
    """Poll predicate until it returns True, the timeout expires, or cancel is set."""
    logger.debug(f"Waiting for {description}...")
    start = time.time()
    while True:
        if predicate():
            logger.debug(f"{description} reached after {time.time() - start:.1f}s")
            return True
        if time.time() - start >= timeout:
            logger.error(f"Timeout waiting for {description}")
            return False
        if cancel is not None and cancel.wait(interval):
            logger.warning(f"Cancelled while waiting for {description}")
            return False
        if cancel is None:
            time.sleep(interval)
