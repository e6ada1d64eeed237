"""Monitor orchestrator: wires the healing pipeline to the task loop.

Log lines flow tailer -> classifier -> dispatcher -> circuit breaker gate
-> execution -> wisdom/verification feedback -> persisted state. Task
recovery runs out-of-band from the task-failed hook.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from loop_medic.config import MedicSettings, StatePaths, load_settings
from loop_medic.logging import LogContext, configure_logging, set_session_id
from loop_medic.models.actions import Action, ActionResult, AutoFixAction
from loop_medic.models.monitor import (
    LogLine,
    MonitorEvent,
    MonitorEventKind,
    MonitorState,
    RecoveryRecord,
)
from loop_medic.models.recovery import RecoveryAnalysis, TaskBackend
from loop_medic.models.verification import CheckType
from loop_medic.models.wisdom import WisdomStats
from loop_medic.services.action_dispatcher import ActionDispatcher, ActionStats
from loop_medic.services.circuit_breaker import CircuitBreaker
from loop_medic.services.concurrency import ConcurrencyController
from loop_medic.services.llm_analyzer import AnalysisCache, LLMAnalyzer, hash_error
from loop_medic.services.log_tailer import LogTailer
from loop_medic.services.patterns import (
    get_pattern_by_name,
    looks_like_error,
    match_pattern,
)
from loop_medic.services.pause_service import PauseService
from loop_medic.services.task_recovery_service import TaskRecoveryService
from loop_medic.services.verification_service import (
    VerificationEngine,
    build_check_configs,
)
from loop_medic.services.wisdom_service import (
    WisdomService,
    pattern_signature,
    text_signature,
)
from loop_medic.utils.json_store import read_json, write_json

logger = logging.getLogger(__name__)

RECENT_LINES_PER_RETRY = 20
UNKNOWN_CACHE_LIMIT = 1000
MAINTENANCE_INTERVAL_MS = 60 * 60 * 1000
WORKER_JOIN_TIMEOUT = 30.0

Subscriber = Callable[[MonitorEvent], None]


@dataclass
class MonitorStats:
    """Session summary."""

    session_id: str
    uptime_ms: int
    llm_calls_count: int
    circuit_breaker: str
    detected_patterns: dict[str, int] = field(default_factory=dict)
    recovery_attempts: int = 0
    recovery_successes: int = 0
    recovery_failures: int = 0
    actions: ActionStats = field(default_factory=ActionStats)
    wisdom: WisdomStats = field(default_factory=WisdomStats)


def _new_session_id() -> str:
    return f"session-{uuid.uuid4().hex[:12]}"


class Monitor:
    """Self-healing supervisor for a task-execution loop.

    All session state lives in one MonitorState guarded by ``_lock``;
    tailer callbacks, health timers and task hooks may arrive on
    different threads. Tailed lines are queued to a single worker thread,
    so slow remediation (verification commands, LLM calls) never holds up
    reading the log.
    """

    def __init__(
        self,
        settings: Optional[MedicSettings] = None,
        log_file: Optional[Path] = None,
        project_root: Optional[Path] = None,
        backend: Optional[TaskBackend] = None,
        llm_client: Any = None,
        clock: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
    ):
        """Initialize the monitor.

        Args:
            settings: Resolved settings (defaults to built-in defaults).
            log_file: Task-loop log file to tail.
            project_root: Project directory; when given, components are
                built immediately, otherwise on on_config_load().
            backend: Task backend used by task recovery.
            llm_client: Pre-built OpenAI-compatible client (testing).
            clock: Time source in epoch seconds.
            logger: Logger to use (defaults to the module logger).
        """
        self.settings = settings or MedicSettings()
        self.log_file = Path(log_file) if log_file else None
        self.backend = backend
        self.logger = logger or logging.getLogger(__name__)
        self._clock = clock
        self._llm_client = llm_client

        self._lock = threading.RLock()
        self._subscribers: list[Subscriber] = []
        self._recent_lines: deque[str] = deque(
            maxlen=max(1, self.settings.recovery.max_retries) * RECENT_LINES_PER_RETRY
        )
        self._stop_event = threading.Event()
        self._health_thread: Optional[threading.Thread] = None
        self._lifetime_timer: Optional[threading.Timer] = None
        self._lines: "queue.Queue[Optional[str]]" = queue.Queue()
        self._worker: Optional[threading.Thread] = None
        self._last_maintenance_ms = 0
        self._stale_reported = False
        self._running = False

        self.project_root: Optional[Path] = None
        self.paths: Optional[StatePaths] = None
        self.state = MonitorState(session_id=_new_session_id())
        self.tailer: Optional[LogTailer] = None

        if project_root is not None:
            self.on_config_load(project_root)

    @classmethod
    def from_project(
        cls,
        project_root: Path,
        log_file: Path,
        backend: Optional[TaskBackend] = None,
    ) -> "Monitor":
        """Composition root: load settings, configure logging, build the monitor."""
        settings = load_settings(project_root=project_root)
        for error in settings.validate():
            logging.getLogger(__name__).warning(f"Config: {error}")
        configure_logging(level=settings.log_level, log_file=settings.log_file)
        return cls(
            settings=settings,
            log_file=log_file,
            project_root=project_root,
            backend=backend,
        )

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    # ── Lifecycle hooks ───────────────────────────────────────────────

    def on_config_load(self, project_root: Path) -> None:
        """Build every component for a project and restore saved state."""
        s = self.settings
        self.project_root = Path(project_root)
        self.paths = StatePaths.for_project(self.project_root, s.state_dir)
        self.paths.state_dir.mkdir(parents=True, exist_ok=True)

        self.breaker = CircuitBreaker(
            max_failures=s.circuit_breaker.max_failures,
            cooldown_period_ms=s.circuit_breaker.cooldown_period_ms,
            half_open_attempts=s.circuit_breaker.half_open_attempts,
            clock=self._clock,
        )
        self.controller = ConcurrencyController(
            default=s.concurrency.default,
            providers=s.concurrency.providers,
            models=s.concurrency.models,
        )
        cache = (
            AnalysisCache(
                self.paths.cache_file, ttl_ms=s.cache.ttl_ms, clock=self._clock
            )
            if s.cache.enabled
            else None
        )
        self.analyzer = LLMAnalyzer(
            cache=cache,
            model=s.llm.model,
            provider=s.llm.provider,
            api_key=s.llm.api_key,
            base_url=s.llm.base_url,
            timeout=s.llm.timeout,
            max_per_session=s.llm.max_per_session,
            cooldown_ms=s.llm.cooldown_ms,
            controller=self.controller,
            acquire_timeout_ms=s.llm.acquire_timeout_ms,
            client=self._llm_client,
            clock=self._clock,
        )
        self.wisdom = WisdomService(
            self.paths.wisdom_file,
            pattern_expiry_days=s.wisdom.pattern_expiry_days,
            min_success_for_trust=s.wisdom.min_success_for_trust,
            enabled=s.wisdom.enabled,
            clock=self._clock,
        )
        self.verifier = VerificationEngine(
            self.project_root,
            build_check_configs(
                s.verification.checks,
                self.project_root,
                overrides={
                    CheckType.BUILD: s.verification.build_command,
                    CheckType.TEST: s.verification.test_command,
                    CheckType.LINT: s.verification.lint_command,
                },
            ),
            log_file=self.log_file,
            freshness_ttl_ms=s.verification.freshness_ttl_ms,
            log_tail_lines=s.verification.log_tail_lines,
            clock=self._clock,
        )
        self.recovery = TaskRecoveryService(self.project_root)
        self.pause = PauseService(self.paths.pause_file, clock=self._clock)
        self.dispatcher = ActionDispatcher(self.project_root, self.pause, self.analyzer)

        self.load_state()
        self.logger.info(f"Monitor configured for {self.project_root}")

    def on_backend_ready(self, backend: TaskBackend) -> None:
        self.backend = backend

    def _ensure_configured(self) -> None:
        if self.paths is None:
            self.on_config_load(Path.cwd())

    def on_loop_start(self) -> None:
        """Start the line worker, the log tailer and the health/lifetime timers."""
        self._ensure_configured()
        if self._running:
            return
        self._running = True
        self._stop_event.clear()
        self._stale_reported = False
        set_session_id(self.state.session_id)

        self.maintain(force=True)

        self._worker = threading.Thread(
            target=self._line_worker,
            args=(self._lines,),
            name="monitor-lines",
            daemon=True,
        )
        self._worker.start()

        if self.log_file is not None:
            self.tailer = LogTailer(
                self.log_file,
                on_line=self._on_tail_line,
                on_error=self._on_tail_error,
                polling_interval_ms=self.settings.monitoring.polling_interval_ms,
                debounce_ms=self.settings.monitoring.debounce_ms,
            )
            self.tailer.start()

        self._health_thread = threading.Thread(
            target=self._health_loop, name="monitor-health", daemon=True
        )
        self._health_thread.start()
        self._lifetime_timer = threading.Timer(
            self.settings.health.max_lifetime_ms / 1000.0, self.check_lifetime
        )
        self._lifetime_timer.daemon = True
        self._lifetime_timer.start()
        self.logger.info(f"Monitor started (session {self.state.session_id})")

    def on_loop_end(self) -> None:
        """Stop timers and the tailer, then flush state."""
        if not self._running:
            return
        self._running = False
        self._stop_event.set()

        if self._lifetime_timer is not None:
            self._lifetime_timer.cancel()
            self._lifetime_timer = None
        health = self._health_thread
        if health is not None and health is not threading.current_thread():
            health.join(timeout=5)
        self._health_thread = None

        if self.tailer is not None:
            self.tailer.stop()
            self.tailer = None

        # Lines already queued are handled before the sentinel
        self._lines.put(None)
        self._lines = queue.Queue()
        worker = self._worker
        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout=WORKER_JOIN_TIMEOUT)
            if worker.is_alive():
                self.logger.warning("Monitor line worker still busy at shutdown")
        self._worker = None

        self.save_state()
        self.logger.info(f"Monitor stopped (session {self.state.session_id})")

    stop = on_loop_end

    @property
    def is_running(self) -> bool:
        return self._running

    def on_task_start(self, task_id: str) -> None:
        self._touch()
        self.logger.debug(f"Task started: {task_id}")

    def on_task_complete(self, task_id: str) -> None:
        self._touch()
        self.logger.debug(f"Task completed: {task_id}")

    def on_task_failed(
        self, task_id: str, error: str = ""
    ) -> Optional[RecoveryAnalysis]:
        self._touch()
        return self.recover_task(task_id, error)

    def _touch(self) -> None:
        with self._lock:
            self.state.last_activity = self._now()
            self._stale_reported = False

    # ── Observer ──────────────────────────────────────────────────────

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Receive every published MonitorEvent.

        Returns:
            Function that removes the subscription.
        """
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, kind: MonitorEventKind, **payload: Any) -> None:
        event = MonitorEvent(kind=kind, payload=payload, timestamp=self._now())
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                self.logger.exception(f"Monitor subscriber failed on {kind.value}")

    # ── Log line handling ─────────────────────────────────────────────

    def _on_tail_line(self, log_line: LogLine) -> None:
        self.submit_line(log_line.line)

    def submit_line(self, line: str) -> None:
        """Queue a log line for the worker thread."""
        self._lines.put(line)

    def _line_worker(self, lines: "queue.Queue[Optional[str]]") -> None:
        while True:
            line = lines.get()
            if line is None:
                return
            try:
                self.handle_log_line(line)
            except Exception:
                self.logger.exception("Monitor failed to handle log line")

    def _on_tail_error(self, error: Exception) -> None:
        self.logger.warning(f"Monitor lost the log file: {error}")

    def handle_log_line(self, line: str) -> Optional[ActionResult]:
        """Classify one log line and run whatever remediation it calls for.

        Returns:
            The action outcome, or None when the line needs no action.
        """
        self._ensure_configured()
        with self._lock:
            self.state.last_activity = self._now()
            self._stale_reported = False
            self._recent_lines.append(line)

        match = match_pattern(line)
        if match is not None:
            with self._lock:
                counts = self.state.detected_patterns
                counts[match.pattern] = counts.get(match.pattern, 0) + 1
            self.publish(
                MonitorEventKind.ERROR_DETECTED,
                pattern=match.pattern,
                severity=match.severity.value,
                context=dict(match.context),
                line=line,
            )
            action = self.dispatcher.decide(match)
            if action is None:
                self.save_state()
                return None
            return self._run_action(action)

        if looks_like_error(line) and self._should_analyze_unknown(line):
            return self._run_action(self.dispatcher.decide_unknown(line))
        return None

    def _should_analyze_unknown(self, line: str) -> bool:
        """Gate unknown-error analysis on novelty and the LLM throttle.

        Lines are deduplicated by their normalized hash, so lines that
        differ only in dates, times or absolute paths count as seen.
        """
        if not self.settings.llm.enabled:
            return False
        key = hash_error(line)
        with self._lock:
            if self.settings.cache.enabled and key in self.state.unknown_error_cache:
                self.logger.debug("Unknown error already analyzed this session")
                return False
        decision = self.analyzer.check_throttle()
        if decision.throttled:
            self.logger.debug(decision.reason)
            return False
        with self._lock:
            if self.settings.cache.enabled:
                cache = self.state.unknown_error_cache
                cache.append(key)
                del cache[:-UNKNOWN_CACHE_LIMIT]
        return True

    def _signature_for(self, action: Action) -> str:
        pattern = get_pattern_by_name(action.pattern)
        if pattern is not None:
            return pattern_signature(pattern)
        return text_signature(hash_error(str(action.context.get("rawLine", ""))))

    def _run_action(self, action: Action) -> ActionResult:
        if not self.breaker.can_proceed():
            self.logger.warning(
                f"Healing blocked for {action.pattern}: "
                f"circuit breaker {self.breaker.status()}"
            )
            return ActionResult(
                action=action,
                success=False,
                error="Circuit breaker open",
                details={"blocked": True},
                timestamp=self._now(),
            )

        signature = self._signature_for(action)
        trusted = self.wisdom.find_trusted(signature)
        if trusted is not None:
            action.context["wisdom"] = {
                "fixAction": trusted.fix_action,
                "successCount": trusted.success_count,
            }

        self.publish(
            MonitorEventKind.HEALING_STARTED,
            pattern=action.pattern,
            action=action.type.value,
        )
        try:
            result = self.dispatcher.execute(action)
        except Exception:
            self.breaker.abandon_trial()
            raise

        if result.details.get("blocked"):
            self.breaker.abandon_trial()
        elif result.success:
            self.wisdom.record_success(
                signature, action.type.value, {"errorTypes": [action.pattern]}
            )
            if isinstance(action, AutoFixAction):
                verification = self.verifier.verify(f"auto-fix for {action.pattern}")
                result.details["verification"] = {
                    "passed": verification.passed,
                    "failedChecks": [c.value for c in verification.failed_checks],
                }
                if verification.passed:
                    self.breaker.record_success()
                else:
                    self.breaker.record_failure()
            else:
                self.breaker.record_success()
        else:
            self.wisdom.record_failure(signature, action.type.value)
            self.breaker.record_failure()

        with self._lock:
            self.state.llm_calls_count = self.analyzer.call_count
            self.state.last_llm_call = self.analyzer.last_call_ms

        self.publish(
            MonitorEventKind.HEALING_COMPLETED,
            pattern=action.pattern,
            action=action.type.value,
            success=result.success,
            error=result.error,
        )
        self.save_state()
        return result

    # ── Task recovery ─────────────────────────────────────────────────

    def recover_task(self, task_id: str, error: str = "") -> Optional[RecoveryAnalysis]:
        """Analyze an early task exit and enhance the task for its retry.

        Skipped when recovery is disabled, no backend is wired, the breaker
        is open, or this (task, exit reason) pair was already handled.
        """
        self._ensure_configured()
        if not self.settings.recovery.enabled or self.backend is None:
            return None
        if not self.breaker.can_proceed():
            self.logger.warning(f"Recovery for {task_id} blocked by circuit breaker")
            return None

        with self._lock:
            lines = list(self._recent_lines)
        if error:
            lines.append(error)

        with LogContext(task_id=task_id):
            try:
                analysis = self.recovery.analyze_early_exit(
                    task_id, lines, self.backend
                )
                key = analysis.history_key
                with self._lock:
                    if key in self.state.recovery_history:
                        self.logger.info(f"Recovery already applied: {key}")
                        self.breaker.abandon_trial()
                        return None

                self.recovery.apply_enhancement(analysis, self.backend)

                with self._lock:
                    self.state.recovery_history[key] = RecoveryRecord(
                        timestamp=self._now_ms(), success=True
                    )
                    self.state.recovery_attempts += 1
                    self.state.recovery_successes += 1
                self.breaker.record_success()
                self.logger.info(
                    f"Recovery for {task_id}: {analysis.exit_reason.value} "
                    f"-> {analysis.strategy.value}"
                )
                self.publish(
                    MonitorEventKind.RECOVERY_COMPLETED,
                    task_id=task_id,
                    exit_reason=analysis.exit_reason.value,
                    strategy=analysis.strategy.value,
                )
                return analysis
            except Exception as e:
                with self._lock:
                    self.state.recovery_attempts += 1
                    self.state.recovery_failures += 1
                self.breaker.record_failure()
                self.logger.error(f"Recovery for {task_id} failed: {e}")
                return None
            finally:
                self.save_state()

    # ── Health timers ─────────────────────────────────────────────────

    def _health_loop(self) -> None:
        interval = self.settings.health.health_check_interval_ms / 1000.0
        while not self._stop_event.wait(interval):
            self.check_health()
            self.maintain()

    def check_health(self) -> bool:
        """Publish a stale event once per idle stretch.

        Returns:
            True if the session is stale.
        """
        with self._lock:
            idle = self._now() - self.state.last_activity
            idle_ms = int(idle.total_seconds() * 1000)
            stale = idle_ms >= self.settings.health.stale_detection_ms
            first = stale and not self._stale_reported
            if first:
                self._stale_reported = True
        if first:
            self.logger.warning(f"Monitor: no loop activity for {idle_ms // 1000}s")
            self.publish(MonitorEventKind.STALE, idle_ms=idle_ms)
        return stale

    def maintain(self, force: bool = False) -> bool:
        """Purge expired wisdom patterns and analysis cache entries when due.

        Runs at most once per MAINTENANCE_INTERVAL_MS unless forced.

        Returns:
            True if a purge ran.
        """
        self._ensure_configured()
        now = self._now_ms()
        with self._lock:
            last = self._last_maintenance_ms
            if not force and last and now - last < MAINTENANCE_INTERVAL_MS:
                return False
            self._last_maintenance_ms = now
        patterns = self.wisdom.clear_expired()
        entries = self.analyzer.cleanup_expired()
        self.logger.debug(
            f"Monitor maintenance: {patterns} wisdom patterns, "
            f"{entries} cache entries expired"
        )
        return True

    def check_lifetime(self) -> bool:
        """Stop the monitor once the session exceeds its maximum lifetime."""
        with self._lock:
            age = self._now() - self.state.start_time
        age_ms = int(age.total_seconds() * 1000)
        if age_ms < self.settings.health.max_lifetime_ms:
            return False
        self.logger.warning(f"Monitor: max lifetime reached after {age_ms // 1000}s")
        self.publish(MonitorEventKind.MAX_LIFETIME, lifetime_ms=age_ms)
        self.on_loop_end()
        return True

    # ── State ─────────────────────────────────────────────────────────

    def load_state(self) -> None:
        """Restore counters, history and breaker; the session clock restarts."""
        raw = read_json(self.paths.monitor_state_file, dict)
        if not isinstance(raw, dict):
            raw = {}
        try:
            restored = MonitorState.from_dict(raw, self.state.session_id)
        except (TypeError, ValueError, AttributeError) as e:
            self.logger.warning(f"Ignoring malformed monitor state: {e}")
            restored = MonitorState(session_id=self.state.session_id)

        now = self._now()
        restored.session_id = self.state.session_id
        restored.start_time = now
        restored.last_activity = now
        with self._lock:
            self.state = restored
        self.breaker.load_state(restored.circuit_breaker)
        self.analyzer.sync_state(restored.llm_calls_count, restored.last_llm_call)

    def save_state(self) -> None:
        if self.paths is None:
            return
        with self._lock:
            self.state.circuit_breaker = self.breaker.get_state()
            data = self.state.to_dict()
        write_json(self.paths.monitor_state_file, data)

    # ── Introspection ─────────────────────────────────────────────────

    def stats(self) -> MonitorStats:
        self._ensure_configured()
        with self._lock:
            uptime = self._now() - self.state.start_time
            return MonitorStats(
                session_id=self.state.session_id,
                uptime_ms=int(uptime.total_seconds() * 1000),
                llm_calls_count=self.state.llm_calls_count,
                circuit_breaker=self.breaker.status(),
                detected_patterns=dict(self.state.detected_patterns),
                recovery_attempts=self.state.recovery_attempts,
                recovery_successes=self.state.recovery_successes,
                recovery_failures=self.state.recovery_failures,
                actions=self.dispatcher.stats(),
                wisdom=self.wisdom.stats(),
            )

    def reset_circuit_breaker(self) -> None:
        self._ensure_configured()
        self.breaker.reset()
        self.save_state()
        self.logger.info("Monitor circuit breaker reset")

    def is_paused(self) -> bool:
        self._ensure_configured()
        return self.pause.is_paused()
