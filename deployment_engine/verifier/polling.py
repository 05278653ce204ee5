# deployment_engine/verifier/polling.py
"""Poll-with-backoff used by every verification check."""

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Tuple

logger = logging.getLogger(__name__)


# A check returns (passed, message)
Check = Callable[[], Tuple[bool, str]]


@dataclass(frozen=True)
class PollPolicy:
    """
    Bounded retries with exponential backoff.

    With the defaults a check is tried 5 times, waiting 1s, 2s, 4s, 8s
    in between.
    """
    attempts: int = 5
    initial_delay: float = 1.0
    backoff_factor: float = 2.0
    max_delay: float = 10.0

    def delays(self) -> List[float]:
        """Waits between consecutive attempts (one fewer than attempts)."""
        delays = []
        delay = self.initial_delay
        for _ in range(max(self.attempts - 1, 0)):
            delays.append(min(delay, self.max_delay))
            delay *= self.backoff_factor
        return delays


SINGLE_ATTEMPT = PollPolicy(attempts=1)


@dataclass
class PollResult:
    passed: bool
    attempts: int
    message: str


def poll(
    check: Check,
    policy: PollPolicy,
    label: str = "check",
    sleep: Callable[[float], None] = time.sleep,
) -> PollResult:
    """Run ``check`` until it passes or the policy's attempts are used up."""
    delays = policy.delays()
    attempts = max(policy.attempts, 1)
    message = ""

    for attempt in range(1, attempts + 1):
        passed, message = check()
        if passed:
            return PollResult(passed=True, attempts=attempt, message=message)

        if attempt < attempts:
            delay = delays[attempt - 1]
            logger.debug(f"[verify] {label} attempt {attempt}/{attempts} failed ({message}), retry in {delay}s")
            sleep(delay)

    return PollResult(passed=False, attempts=attempts, message=message)
