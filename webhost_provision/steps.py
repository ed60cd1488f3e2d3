"""Per-step failure policy and the single dispatcher that applies it."""

import enum
import logging
import time
from typing import Any, Callable, Optional

from webhost_provision.errors import ExecutionError, RetriableError, SetupError

logger = logging.getLogger(__name__)


class StepPolicy(enum.Enum):
    """How a failing step affects the run."""

    FATAL = "fatal"
    RETRIABLE = "retriable"
    BEST_EFFORT = "best_effort"


def run_step(
    description: str,
    func: Callable[[], Any],
    policy: StepPolicy = StepPolicy.FATAL,
    attempts: int = 3,
    retry_delay: float = 2.0,
) -> Optional[Any]:
    """
    Run ``func`` and dispatch any failure according to ``policy``.

    FATAL re-raises. RETRIABLE retries with exponential backoff and raises
    RetriableError once ``attempts`` are exhausted. BEST_EFFORT logs a
    warning and returns None.
    """
    if policy is StepPolicy.BEST_EFFORT:
        try:
            return func()
        except (SetupError, OSError) as e:
            logger.warning(f"{description} failed (continuing): {e}")
            return None

    if policy is StepPolicy.FATAL:
        return func()

    attempt = 0
    while True:
        attempt += 1
        try:
            return func()
        except ExecutionError as e:
            if attempt >= attempts:
                logger.error(f"{description} failed after {attempts} attempts: {e}")
                raise RetriableError(
                    f"{description} failed: {e}. Check connectivity and re-run.",
                    returncode=e.returncode,
                    stdout=e.stdout,
                    stderr=e.stderr,
                ) from e
            delay = retry_delay * (2 ** (attempt - 1))
            logger.warning(
                f"{description} failed (attempt {attempt}/{attempts}): {e}. "
                f"Retrying in {delay:.1f}s..."
            )
            time.sleep(delay)
