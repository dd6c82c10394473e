"""
Guards in front of the remote vision provider.

RateLimiter caps remote calls per fixed window and healing attempts per step.
CircuitBreaker stops calling a provider that keeps failing and lets exactly
one trial call through after the cooldown. RemoteCallGuard combines both so
that admission and accounting happen under one lock.
"""

import time
from enum import Enum
from threading import Lock
from typing import Callable, Dict, Optional, Any

from stepheal.self_healing.config import RateLimitConfig
from stepheal.utils.logger import get_logger

logger = get_logger(__name__)


class CircuitState(Enum):
    CLOSED = 'closed'
    OPEN = 'open'
    HALF_OPEN = 'half-open'


class Admission(Enum):
    """Why a remote call was or was not let through."""
    ADMITTED = 'admitted'
    CIRCUIT_OPEN = 'circuit-open'
    RATE_LIMITED = 'rate-limited'

    @property
    def admitted(self) -> bool:
        return self is Admission.ADMITTED


class RateLimiter:
    """
    Fixed-window call budget plus per-step attempt counters.

    Not synchronized on its own; RemoteCallGuard serializes access.
    """

    def __init__(
        self,
        max_calls_per_window: int = 50,
        window_seconds: float = 60.0,
        max_attempts_per_step: int = 2,
        clock: Callable[[], float] = time.monotonic
    ):
        self.max_calls_per_window = max_calls_per_window
        self.window_seconds = window_seconds
        self.max_attempts_per_step = max_attempts_per_step
        self._clock = clock

        self._window_start = clock()
        self._window_calls = 0
        self._step_attempts: Dict[str, int] = {}

    def _roll_window(self) -> None:
        now = self._clock()
        if now - self._window_start >= self.window_seconds:
            self._window_start = now
            self._window_calls = 0

    @property
    def calls_in_window(self) -> int:
        self._roll_window()
        return self._window_calls

    def can_call(self) -> bool:
        self._roll_window()
        return self._window_calls < self.max_calls_per_window

    def record_call(self) -> None:
        self._roll_window()
        self._window_calls += 1

    def step_attempts(self, step_key: str) -> int:
        return self._step_attempts.get(step_key, 0)

    def can_attempt_step(self, step_key: str) -> bool:
        return self.step_attempts(step_key) < self.max_attempts_per_step

    def record_step_attempt(self, step_key: str) -> int:
        self._step_attempts[step_key] = self.step_attempts(step_key) + 1
        return self._step_attempts[step_key]

    def reset_steps(self) -> None:
        self._step_attempts.clear()

    def reset(self) -> None:
        self._window_start = self._clock()
        self._window_calls = 0
        self._step_attempts.clear()


class CircuitBreaker:
    """
    Three-state breaker.

    CLOSED -> OPEN after ``threshold`` consecutive failures.
    OPEN -> HALF_OPEN once ``cooldown_seconds`` have passed.
    HALF_OPEN admits a single trial: success closes, failure reopens and
    restarts the cooldown.

    Not synchronized on its own; RemoteCallGuard serializes access.
    """

    def __init__(
        self,
        threshold: int = 3,
        cooldown_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.threshold = threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        if self._state is CircuitState.OPEN and self._cooldown_elapsed():
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
            logger.info("Circuit breaker half-open, next remote call is a trial")
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def _cooldown_elapsed(self) -> bool:
        return self._opened_at is not None and self._clock() - self._opened_at >= self.cooldown_seconds

    def allow_request(self) -> bool:
        """Check admission; in HALF_OPEN this claims the single trial slot."""
        state = self.state
        if state is CircuitState.CLOSED:
            return True
        if state is CircuitState.HALF_OPEN and not self._trial_in_flight:
            self._trial_in_flight = True
            return True
        return False

    def record_success(self) -> None:
        if self._state is not CircuitState.CLOSED:
            logger.info("Circuit breaker closed after successful call")
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = None
        self._trial_in_flight = False

    def record_failure(self) -> None:
        self._consecutive_failures += 1
        if self._state is CircuitState.HALF_OPEN:
            self._open("trial call failed")
        elif self._state is CircuitState.CLOSED and self._consecutive_failures >= self.threshold:
            self._open(f"{self._consecutive_failures} consecutive failures")

    def _open(self, reason: str) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._trial_in_flight = False
        logger.warning(f"Circuit breaker opened ({reason}); remote calls paused for {self.cooldown_seconds:.0f}s")

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = None
        self._trial_in_flight = False


class RemoteCallGuard:
    """Thread-safe front for RateLimiter + CircuitBreaker."""

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.config = config if config is not None else RateLimitConfig()
        self._lock = Lock()
        self.limiter = RateLimiter(
            max_calls_per_window=self.config.max_calls_per_window,
            window_seconds=self.config.window_seconds,
            max_attempts_per_step=self.config.max_attempts_per_step,
            clock=clock,
        )
        self.breaker = CircuitBreaker(
            threshold=self.config.circuit_breaker_threshold,
            cooldown_seconds=self.config.circuit_breaker_cooldown_seconds,
            clock=clock,
        )

    def try_acquire_step(self, step_key: str) -> bool:
        """Count a healing attempt for ``step_key`` if it is under the per-step cap."""
        with self._lock:
            if not self.limiter.can_attempt_step(step_key):
                return False
            self.limiter.record_step_attempt(step_key)
            return True

    def try_acquire_remote(self) -> Admission:
        """
        Admit one remote call, consuming a window slot (and the half-open
        trial slot) only when admitted.
        """
        with self._lock:
            if not self.limiter.can_call():
                return Admission.RATE_LIMITED
            if not self.breaker.allow_request():
                return Admission.CIRCUIT_OPEN
            self.limiter.record_call()
            return Admission.ADMITTED

    def record_success(self) -> None:
        with self._lock:
            self.breaker.record_success()

    def record_failure(self) -> None:
        with self._lock:
            self.breaker.record_failure()

    def reset_steps(self) -> None:
        with self._lock:
            self.limiter.reset_steps()

    def reset_breaker(self) -> None:
        with self._lock:
            self.breaker.reset()

    @property
    def circuit_state(self) -> CircuitState:
        with self._lock:
            return self.breaker.state

    def state(self) -> Dict[str, Any]:
        """Snapshot for session reporting."""
        with self._lock:
            return {
                'circuit_state': self.breaker.state.value,
                'consecutive_failures': self.breaker.consecutive_failures,
                'calls_in_window': self.limiter.calls_in_window,
                'max_calls_per_window': self.limiter.max_calls_per_window,
                'step_attempts': dict(self.limiter._step_attempts),
            }
