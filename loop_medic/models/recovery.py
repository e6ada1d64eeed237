"""
Data models for task recovery.

When a task exits without completing, the recovery analyzer guesses why
and produces an enhancement for the retry. The task loop supplies a
TaskBackend so recovery can read task metadata and create sub-tasks.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class ExitReason(str, Enum):
    """Why a task stopped before completing."""

    VAGUE_PRD = "vague_prd"
    MISSING_TESTS = "missing_tests"
    MISSING_CONTEXT = "missing_context"
    SCOPE_LARGE = "scope_large"
    WRONG_APPROACH = "wrong_approach"


class RecoveryStrategy(str, Enum):
    """How the loop should retry an enhanced task."""

    CONTEXT_TRUNCATION = "context-truncation"
    MODEL_FALLBACK = "model-fallback"
    TASK_RESTART = "task-restart"


@dataclass
class Task:
    """Task metadata as exposed by the task loop."""

    id: str
    title: str
    description: str = ""
    feature: Optional[str] = None
    parent_id: Optional[str] = None
    depends_on: List[str] = field(default_factory=list)
    priority: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class TaskBackend(ABC):
    """Capability the task loop provides to task recovery."""

    @abstractmethod
    def get_task(self, task_id: str) -> Optional[Task]:
        """Return the task, or None if it does not exist."""

    @abstractmethod
    def create_sub_task(self, parent_id: str, data: Dict[str, Any]) -> Optional[Task]:
        """Create a sub-task under ``parent_id``."""


@dataclass
class PrdAdditions:
    """Sections to add to a task's PRD."""

    key_files: List[str] = field(default_factory=list)
    context: str = ""
    approach_hints: List[str] = field(default_factory=list)
    non_goals: List[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (
            self.key_files or self.context or self.approach_hints or self.non_goals
        )


@dataclass
class TaskEnhancement:
    """Concrete changes proposed for a task retry."""

    prd_additions: Optional[PrdAdditions] = None
    split_into: List[str] = field(default_factory=list)
    test_scaffolding: Optional[str] = None


@dataclass
class RecoveryAnalysis:
    """Diagnosis of an early task exit."""

    task_id: str
    exit_reason: ExitReason
    evidence: List[str]
    enhancement: TaskEnhancement
    strategy: RecoveryStrategy
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def history_key(self) -> str:
        """Key used to deduplicate recovery per (task, reason)."""
        return f"{self.task_id}:{self.exit_reason.value}"
