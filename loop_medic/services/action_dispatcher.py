"""Action dispatcher: turns classified log lines into remediation actions."""

from __future__ import annotations

import logging
import threading
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from loop_medic.exceptions import ActionContractError
from loop_medic.models.actions import (
    Action,
    ActionResult,
    ActionType,
    AnalyzeAction,
    AutoFixAction,
    NotifyAction,
    PauseAction,
    SkipAction,
)
from loop_medic.models.monitor import PatternMatch
from loop_medic.services.llm_analyzer import LLMAnalyzer
from loop_medic.services.patterns import get_pattern_by_name
from loop_medic.services.pause_service import PauseService

logger = logging.getLogger(__name__)

RATE_LIMIT_PAUSE_MS = 60000

PRD_STUB = """# {name}

## Goal

Describe the outcome this task must deliver.

## Requirements

- List the concrete requirements.
"""


@dataclass
class ActionStats:
    """Aggregate counters over the action history."""

    total: int = 0
    successful: int = 0
    failed: int = 0
    by_type: dict[str, int] = field(default_factory=dict)
    by_pattern: dict[str, int] = field(default_factory=dict)


class ActionDispatcher:
    """Decides and executes remediation actions, keeping a history."""

    def __init__(
        self,
        project_root: Path,
        pause_service: PauseService,
        analyzer: LLMAnalyzer,
        logger: Optional[logging.Logger] = None,
    ):
        self.project_root = Path(project_root)
        self.pause_service = pause_service
        self.analyzer = analyzer
        self.logger = logger or logging.getLogger(__name__)
        self._history: list[ActionResult] = []
        self._lock = threading.Lock()

    # ── Decision ──────────────────────────────────────────────────────

    def decide(self, match: PatternMatch) -> Optional[Action]:
        """Map a classified line to an action, or None for a clean exit."""
        pattern = get_pattern_by_name(match.pattern)
        context = {"rawLine": match.raw_line, "severity": match.severity.value}
        context.update(match.context)

        if pattern is None:
            return AnalyzeAction(
                pattern=match.pattern, context=context, prompt=match.raw_line
            )

        kind = pattern.default_action
        if kind is None:
            return None
        if kind == ActionType.AUTO_FIX:
            return AutoFixAction(
                pattern=match.pattern,
                context=context,
                fn=self._prd_stub_fix(match.context.get("path", "")),
                description="Create missing PRD stub",
            )
        if kind == ActionType.PAUSE:
            return PauseAction(
                pattern=match.pattern,
                context=context,
                reason=f"{pattern.description}, backing off",
                duration_ms=RATE_LIMIT_PAUSE_MS,
            )
        if kind == ActionType.NOTIFY:
            return NotifyAction(
                pattern=match.pattern,
                context=context,
                message=f"[{match.severity.value}] {pattern.description}: {match.raw_line}",
            )
        return AnalyzeAction(
            pattern=match.pattern, context=context, prompt=match.raw_line
        )

    def decide_unknown(self, line: str) -> AnalyzeAction:
        return AnalyzeAction(
            pattern="unknown", context={"rawLine": line}, prompt=line
        )

    def _prd_stub_fix(self, reported_path: str) -> Callable[[], bool]:
        def fix() -> bool:
            if not reported_path:
                raise ValueError("No PRD path in log line")
            path = Path(reported_path.strip().strip("'\"`"))
            if not path.is_absolute():
                path = self.project_root / path
            if path.exists():
                return True
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(PRD_STUB.format(name=path.stem))
            self.logger.info(f"Healing: created PRD stub at {path}")
            return True

        return fix

    # ── Execution ─────────────────────────────────────────────────────

    def execute(self, action: Action) -> ActionResult:
        """Run an action and record its outcome.

        Raises:
            ActionContractError: The action is not a known variant or is
                missing what its executor needs.
        """
        if isinstance(action, AutoFixAction):
            result = self.execute_auto_fix(action)
        elif isinstance(action, PauseAction):
            result = self.execute_pause(action)
        elif isinstance(action, SkipAction):
            result = self.execute_skip(action)
        elif isinstance(action, NotifyAction):
            result = self.execute_notify(action)
        elif isinstance(action, AnalyzeAction):
            result = self.execute_analyze(action)
        else:
            raise ActionContractError(
                f"Unknown action variant: {type(action).__name__}"
            )

        with self._lock:
            self._history.append(result)
        return result

    def execute_auto_fix(self, action: Action) -> ActionResult:
        if not isinstance(action, AutoFixAction) or action.fn is None:
            raise ActionContractError(
                "execute_auto_fix requires an AutoFixAction with fn"
            )
        try:
            applied = bool(action.fn())
        except Exception as e:
            self.logger.warning(f"Healing: auto-fix for {action.pattern} failed: {e}")
            return ActionResult(action=action, success=False, error=str(e))
        return ActionResult(
            action=action,
            success=applied,
            error=None if applied else "Auto-fix reported no change",
            details={"description": action.description},
        )

    def execute_pause(self, action: Action) -> ActionResult:
        if not isinstance(action, PauseAction):
            raise ActionContractError("execute_pause requires a PauseAction")
        state = self.pause_service.pause(action.reason, action.duration_ms)
        return ActionResult(
            action=action,
            success=True,
            details={"resumeAt": state.resume_at, "duration": state.duration},
        )

    def execute_skip(self, action: Action) -> ActionResult:
        if not isinstance(action, SkipAction):
            raise ActionContractError("execute_skip requires a SkipAction")
        self.logger.info(f"Healing: skipping {action.target} {action.name}".rstrip())
        return ActionResult(
            action=action, success=True, details={"target": action.target}
        )

    def execute_notify(self, action: Action) -> ActionResult:
        if not isinstance(action, NotifyAction):
            raise ActionContractError("execute_notify requires a NotifyAction")
        task_id = action.context.get("taskId")
        suffix = f" (task {task_id})" if task_id else ""
        self.logger.warning(
            f"Monitor notice [{action.pattern}]{suffix}: {action.message}"
        )
        return ActionResult(
            action=action, success=True, details={"channel": action.channel}
        )

    def execute_analyze(self, action: Action) -> ActionResult:
        if not isinstance(action, AnalyzeAction):
            raise ActionContractError("execute_analyze requires an AnalyzeAction")
        message = action.prompt or str(action.context.get("rawLine", ""))
        if not message:
            raise ActionContractError("execute_analyze requires a prompt or rawLine")

        analysis = self.analyzer.analyze(message)
        details = {
            "rootCause": analysis.root_cause,
            "suggestedFixes": list(analysis.suggested_fixes),
            "confidence": analysis.confidence,
            "cached": analysis.cached,
            "source": analysis.source,
        }
        if analysis.throttled:
            details["blocked"] = True
            return ActionResult(
                action=action,
                success=False,
                error=analysis.throttle_reason,
                details=details,
            )

        self.logger.info(
            f"Healing analysis for {action.pattern}: {analysis.root_cause} "
            f"(confidence {analysis.confidence:.0%})"
        )
        for i, fix in enumerate(analysis.suggested_fixes, 1):
            self.logger.info(f"  {i}. {fix}")
        return ActionResult(action=action, success=True, details=details)

    # ── History ───────────────────────────────────────────────────────

    def history(self) -> list[ActionResult]:
        with self._lock:
            return list(self._history)

    def clear_history(self) -> None:
        with self._lock:
            self._history.clear()

    def recent_actions(
        self, pattern: Optional[str] = None, limit: int = 10
    ) -> list[ActionResult]:
        """Most recent results first, optionally for one pattern."""
        with self._lock:
            results = [
                r for r in self._history if pattern is None or r.pattern == pattern
            ]
        return list(reversed(results))[:limit]

    def stats(self) -> ActionStats:
        with self._lock:
            history = list(self._history)
        successful = sum(1 for r in history if r.success)
        return ActionStats(
            total=len(history),
            successful=successful,
            failed=len(history) - successful,
            by_type=dict(Counter(r.action.type.value for r in history)),
            by_pattern=dict(Counter(r.pattern for r in history)),
        )
