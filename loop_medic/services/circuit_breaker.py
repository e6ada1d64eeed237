"""Circuit breaker gating remediation actions."""

import logging
import threading
import time
from typing import Callable, Optional

from loop_medic.models.monitor import CircuitBreakerState, CircuitState

logger = logging.getLogger(__name__)


class CircuitBreaker:
    """Stops remediation after repeated failures until a cooldown passes.

    closed -> open after ``max_failures`` consecutive failures;
    open -> half-open on the first ``can_proceed()`` after the cooldown;
    half-open -> closed on success, back to open on failure.
    While half-open, at most ``half_open_attempts`` trial actions are let
    through before an outcome is recorded.
    """

    def __init__(
        self,
        max_failures: int = 3,
        cooldown_period_ms: int = 60000,
        half_open_attempts: int = 1,
        clock: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
    ):
        self.half_open_limit = half_open_attempts
        self._clock = clock
        self.logger = logger or logging.getLogger(__name__)
        self._lock = threading.RLock()
        self._state = CircuitBreakerState(
            max_failures=max_failures,
            cooldown_period_ms=cooldown_period_ms,
        )

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def can_proceed(self) -> bool:
        """Whether an action may run now.

        Performs the open -> half-open transition once the cooldown is over.
        """
        with self._lock:
            s = self._state
            if s.state == CircuitState.OPEN:
                if self._now_ms() - s.last_failure_time < s.cooldown_period_ms:
                    return False
                s.state = CircuitState.HALF_OPEN
                s.half_open_attempts = 0
                self.logger.info("Circuit breaker half-open, allowing a trial action")

            if s.state == CircuitState.HALF_OPEN:
                if s.half_open_attempts >= self.half_open_limit:
                    return False
                s.half_open_attempts += 1
            return True

    def record_success(self) -> None:
        with self._lock:
            s = self._state
            if s.state == CircuitState.HALF_OPEN:
                self.logger.info("Circuit breaker closed after successful trial")
            s.consecutive_failures = 0
            s.half_open_attempts = 0
            s.state = CircuitState.CLOSED

    def record_failure(self) -> None:
        with self._lock:
            s = self._state
            s.consecutive_failures += 1
            s.last_failure_time = self._now_ms()

            if s.state == CircuitState.HALF_OPEN:
                s.state = CircuitState.OPEN
                s.half_open_attempts = 0
                self.logger.warning("Circuit breaker re-opened: trial action failed")
            elif (
                s.state == CircuitState.CLOSED
                and s.consecutive_failures >= s.max_failures
            ):
                s.state = CircuitState.OPEN
                self.logger.warning(
                    f"Circuit breaker opened after {s.consecutive_failures} "
                    f"consecutive failures"
                )

    def abandon_trial(self) -> None:
        """Return a half-open trial slot whose action never produced an outcome."""
        with self._lock:
            s = self._state
            if s.state == CircuitState.HALF_OPEN and s.half_open_attempts > 0:
                s.half_open_attempts -= 1

    def reset(self) -> None:
        """Force the breaker back to closed."""
        with self._lock:
            self._state.consecutive_failures = 0
            self._state.last_failure_time = 0
            self._state.half_open_attempts = 0
            self._state.state = CircuitState.CLOSED

    def get_state(self) -> CircuitBreakerState:
        """Snapshot of the breaker for persistence."""
        with self._lock:
            return CircuitBreakerState(**vars(self._state))

    def load_state(self, state: CircuitBreakerState) -> None:
        """Restore failure history from a snapshot.

        The limits stay as configured on this breaker, and no half-open
        trial is considered in flight after a restore.
        """
        with self._lock:
            s = self._state
            s.consecutive_failures = state.consecutive_failures
            s.last_failure_time = state.last_failure_time
            s.state = state.state
            s.half_open_attempts = 0

    @property
    def state(self) -> CircuitState:
        return self._state.state

    @property
    def consecutive_failures(self) -> int:
        return self._state.consecutive_failures

    @property
    def is_open(self) -> bool:
        return self._state.state == CircuitState.OPEN

    def cooldown_remaining(self) -> int:
        """Milliseconds until an open breaker may go half-open (0 otherwise)."""
        with self._lock:
            s = self._state
            if s.state != CircuitState.OPEN:
                return 0
            return max(0, s.cooldown_period_ms - (self._now_ms() - s.last_failure_time))

    def status(self) -> str:
        with self._lock:
            s = self._state
            if s.state == CircuitState.OPEN:
                seconds = -(-self.cooldown_remaining() // 1000)
                return f"OPEN (cooldown: {seconds}s remaining)"
            if s.state == CircuitState.HALF_OPEN:
                return "HALF-OPEN (testing recovery)"
            return f"CLOSED (failures: {s.consecutive_failures}/{s.max_failures})"
