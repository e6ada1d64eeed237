"""Remediation actions and their execution results."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, ClassVar, Dict, Optional


class ActionType(str, Enum):
    """Tag identifying each action variant."""

    AUTO_FIX = "auto-fix"
    PAUSE = "pause"
    SKIP = "skip"
    NOTIFY = "notify"
    ANALYZE = "analyze"


@dataclass
class Action:
    """Base for every remediation directive."""

    type: ClassVar[ActionType]

    pattern: str
    context: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AutoFixAction(Action):
    """Run a remediation closure that returns True when the fix applied."""

    type: ClassVar[ActionType] = ActionType.AUTO_FIX

    fn: Optional[Callable[[], bool]] = None
    description: str = ""


@dataclass
class PauseAction(Action):
    """Pause the loop for a bounded duration."""

    type: ClassVar[ActionType] = ActionType.PAUSE

    reason: str = ""
    duration_ms: int = 60000


@dataclass
class SkipAction(Action):
    """Skip a task or pattern without doing any work."""

    type: ClassVar[ActionType] = ActionType.SKIP

    target: str = "task"
    name: str = ""


@dataclass
class NotifyAction(Action):
    """Surface a message to the operator."""

    type: ClassVar[ActionType] = ActionType.NOTIFY

    channel: str = "log"
    message: str = ""


@dataclass
class AnalyzeAction(Action):
    """Ask the LLM fallback analyzer for a diagnosis."""

    type: ClassVar[ActionType] = ActionType.ANALYZE

    prompt: str = ""


@dataclass
class ActionResult:
    """Outcome of executing one action."""

    action: Action
    success: bool
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def pattern(self) -> str:
        return self.action.pattern
