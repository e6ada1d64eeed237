"""Pause side channel shared with the task loop via pause-state.json."""

import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from loop_medic.utils.json_store import read_json, write_json

logger = logging.getLogger(__name__)

MAX_PAUSE_DURATION_MS = 5 * 60 * 1000


@dataclass
class PauseState:
    """Persisted pause request; timestamps are epoch milliseconds."""

    paused: bool = False
    reason: str = ""
    paused_at: int = 0
    resume_at: int = 0
    duration: int = 0

    def to_dict(self) -> dict:
        return {
            "paused": self.paused,
            "reason": self.reason,
            "pausedAt": self.paused_at,
            "resumeAt": self.resume_at,
            "duration": self.duration,
        }


class PauseService:
    """Reads and writes the loop's pause request."""

    def __init__(
        self,
        pause_file: Path,
        max_duration_ms: int = MAX_PAUSE_DURATION_MS,
        clock: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
    ):
        self.pause_file = Path(pause_file)
        self.max_duration_ms = max_duration_ms
        self._clock = clock
        self.logger = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def load(self) -> PauseState:
        raw = read_json(self.pause_file, dict)
        if not isinstance(raw, dict):
            return PauseState()
        try:
            return PauseState(
                paused=bool(raw.get("paused", False)),
                reason=str(raw.get("reason", "")),
                paused_at=int(raw.get("pausedAt", 0)),
                resume_at=int(raw.get("resumeAt", 0)),
                duration=int(raw.get("duration", 0)),
            )
        except (TypeError, ValueError):
            return PauseState()

    def save(self, state: PauseState) -> None:
        write_json(self.pause_file, state.to_dict())

    def clear(self) -> None:
        if self.pause_file.exists():
            try:
                self.pause_file.unlink()
            except OSError as e:
                self.logger.warning(f"Could not remove pause file: {e}")

    def is_paused(self) -> bool:
        """Whether a pause is in force; expired pauses are cleared."""
        with self._lock:
            state = self.load()
            if not state.paused:
                return False
            if self._now_ms() >= state.resume_at:
                self.clear()
                self.logger.info("Pause expired, loop may resume")
                return False
            return True

    def remaining_ms(self) -> int:
        state = self.load()
        if not state.paused:
            return 0
        return max(0, state.resume_at - self._now_ms())

    def pause(self, reason: str, duration_ms: int) -> PauseState:
        """Pause the loop, capping the duration at the safety maximum."""
        duration = max(0, min(int(duration_ms), self.max_duration_ms))
        if duration < duration_ms:
            self.logger.warning(
                f"Requested pause of {duration_ms}ms capped at {self.max_duration_ms}ms"
            )
        now = self._now_ms()
        state = PauseState(
            paused=True,
            reason=reason,
            paused_at=now,
            resume_at=now + duration,
            duration=duration,
        )
        with self._lock:
            self.save(state)
        self.logger.warning(f"Loop paused for {duration // 1000}s: {reason}")
        return state

    def resume(self) -> bool:
        """Lift a pause early.

        Returns:
            True if a pause was in force.
        """
        with self._lock:
            state = self.load()
            self.clear()
        if state.paused:
            paused_for = (self._now_ms() - state.paused_at) // 1000
            self.logger.info(f"Loop resumed after {paused_for}s")
        return state.paused

    def wait_until_resumed(
        self,
        poll_interval: float = 1.0,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        """Block until the pause lifts (or ``stop_event`` is set)."""
        stop_event = stop_event or threading.Event()
        while self.is_paused():
            if stop_event.wait(poll_interval):
                return
