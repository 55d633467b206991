"""
Retry policy for rsync transfers.

Classifies rsync exit codes and drives an explicit attempt state machine:

    ATTEMPTING -> SUCCESS
    ATTEMPTING -> RETRYABLE(delay) -> ATTEMPTING
    ATTEMPTING -> FATAL

The caller owns the loop (run transfer, advance, sleep); RetryState carries
the attempt number and current backoff.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import FrozenSet, List, Optional


# rsync exit codes for transient faults:
# 10 socket I/O, 11 file I/O, 12 protocol data stream, 30 timeout in data
# send/receive, 35 timeout waiting for daemon connection, 255 ssh session
RETRYABLE_EXIT_CODES: FrozenSet[int] = frozenset({10, 11, 12, 30, 35, 255})


class Classification(Enum):
    SUCCESS = 'success'
    RETRYABLE = 'retryable'
    FATAL = 'fatal'


class AttemptStatus(Enum):
    ATTEMPTING = 'attempting'
    SUCCESS = 'success'
    RETRYABLE = 'retryable'
    FATAL = 'fatal'


@dataclass(frozen=True)
class RetryState:
    """State of one snapshot's transfer attempt sequence."""
    attempt_number: int = 1
    current_backoff_seconds: float = 0.0
    status: AttemptStatus = AttemptStatus.ATTEMPTING
    last_code: Optional[int] = None
    exhausted: bool = False
    backoff_history: List[float] = field(default_factory=list)

    @property
    def finished(self) -> bool:
        return self.status in (AttemptStatus.SUCCESS, AttemptStatus.FATAL)

    def next_attempt(self) -> 'RetryState':
        """Move from RETRYABLE back to ATTEMPTING after the backoff sleep."""
        if self.status is not AttemptStatus.RETRYABLE:
            raise RuntimeError(f"Cannot start a new attempt from state {self.status.value}")
        return replace(
            self,
            attempt_number=self.attempt_number + 1,
            status=AttemptStatus.ATTEMPTING
        )


def next_backoff(attempt: int, base: float, cap: float) -> float:
    """
    Backoff delay before the attempt following ``attempt``.

    Doubles from ``base`` with each attempt and is clamped to ``cap``:
    attempt 1 -> base, attempt 2 -> 2*base, attempt 3 -> 4*base, ...

    Args:
        attempt: Number of the attempt that just failed (1-based)
        base: Initial delay in seconds
        cap: Maximum delay in seconds

    Returns:
        Delay in seconds
    """
    if attempt < 1:
        attempt = 1
    return min(cap, base * (2 ** (attempt - 1)))


class RetryPolicy:
    """
    Exit code classification plus the transition function of the attempt
    state machine.
    """

    def __init__(self, max_attempts: int = 3, backoff_base: float = 30.0,
                 backoff_cap: float = 600.0,
                 retryable_codes: FrozenSet[int] = RETRYABLE_EXIT_CODES):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.retryable_codes = frozenset(retryable_codes)

    @classmethod
    def from_settings(cls, retry_settings) -> 'RetryPolicy':
        return cls(
            max_attempts=retry_settings.max_attempts,
            backoff_base=retry_settings.backoff_base,
            backoff_cap=retry_settings.backoff_cap
        )

    def classify(self, code: int) -> Classification:
        if code == 0:
            return Classification.SUCCESS
        if code in self.retryable_codes:
            return Classification.RETRYABLE
        return Classification.FATAL

    def start(self) -> RetryState:
        return RetryState()

    def advance(self, state: RetryState, code: int) -> RetryState:
        """
        Apply the outcome of the current attempt.

        Args:
            state: State in ATTEMPTING status
            code: Exit code returned by the transfer

        Returns:
            New state: SUCCESS, FATAL, or RETRYABLE with the backoff to sleep
        """
        if state.status is not AttemptStatus.ATTEMPTING:
            raise RuntimeError(f"Cannot apply an exit code in state {state.status.value}")

        classification = self.classify(code)

        if classification is Classification.SUCCESS:
            return replace(state, status=AttemptStatus.SUCCESS, last_code=code)

        if classification is Classification.FATAL:
            return replace(state, status=AttemptStatus.FATAL, last_code=code)

        if state.attempt_number >= self.max_attempts:
            return replace(state, status=AttemptStatus.FATAL, last_code=code, exhausted=True)

        delay = next_backoff(state.attempt_number, self.backoff_base, self.backoff_cap)
        return replace(
            state,
            status=AttemptStatus.RETRYABLE,
            last_code=code,
            current_backoff_seconds=delay,
            backoff_history=state.backoff_history + [delay]
        )
