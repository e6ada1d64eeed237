"""
Task recovery: work out why a task exited early and enhance it for retry.

Recent log text is scored against keyword families, one per exit reason.
The winning reason selects an enhancement (PRD additions, test scaffold,
sub-task split or constraints) and a retry strategy.
"""

import logging
import os
import re
from pathlib import Path
from typing import Dict, List, Optional

from loop_medic.exceptions import TaskNotFoundError
from loop_medic.models.recovery import (
    ExitReason,
    PrdAdditions,
    RecoveryAnalysis,
    RecoveryStrategy,
    Task,
    TaskBackend,
    TaskEnhancement,
)

logger = logging.getLogger(__name__)

MAX_RELEVANT_FILES = 10
EVIDENCE_LINES = 20
CONCISE_GOAL_THRESHOLD = 500
CONCISE_GOAL_LENGTH = 300

EXIT_PATTERNS: Dict[ExitReason, List["re.Pattern[str]"]] = {
    ExitReason.VAGUE_PRD: [
        re.compile(r"unclear requirements", re.IGNORECASE),
        re.compile(r"need more detail", re.IGNORECASE),
        re.compile(r"what (?:should|do you want)", re.IGNORECASE),
        re.compile(r"can you clarify", re.IGNORECASE),
        re.compile(r"which file", re.IGNORECASE),
        re.compile(r"where should", re.IGNORECASE),
    ],
    ExitReason.MISSING_TESTS: [
        re.compile(r"no tests found", re.IGNORECASE),
        re.compile(r"missing test", re.IGNORECASE),
        re.compile(r"should (?:i|we) write tests", re.IGNORECASE),
        re.compile(r"test (?:file|cases?) (?:needed|required)", re.IGNORECASE),
    ],
    ExitReason.MISSING_CONTEXT: [
        re.compile(r"cannot find", re.IGNORECASE),
        re.compile(r"where is", re.IGNORECASE),
        re.compile(r"file not found", re.IGNORECASE),
        re.compile(r"which directory", re.IGNORECASE),
        re.compile(r"path to", re.IGNORECASE),
    ],
    ExitReason.SCOPE_LARGE: [
        re.compile(r"too (?:complex|large)", re.IGNORECASE),
        re.compile(r"too many (?:changes|files)", re.IGNORECASE),
        re.compile(r"should (?:we |i )?(?:break|split)\b", re.IGNORECASE),
        re.compile(r"multiple (?:components|areas)", re.IGNORECASE),
    ],
    ExitReason.WRONG_APPROACH: [
        re.compile(r"failed attempt", re.IGNORECASE),
        re.compile(r"didn't work", re.IGNORECASE),
        re.compile(r"try (?:a )?different", re.IGNORECASE),
        re.compile(r"wrong (?:approach|direction)", re.IGNORECASE),
        re.compile(r"constraint", re.IGNORECASE),
        re.compile(r"limitation", re.IGNORECASE),
    ],
}

_STRATEGIES = {
    ExitReason.WRONG_APPROACH: RecoveryStrategy.MODEL_FALLBACK,
    ExitReason.SCOPE_LARGE: RecoveryStrategy.TASK_RESTART,
}

_FILE_PATH_RE = re.compile(r"(?:[\w.-]+/)+[\w.-]+\.(?:py|pyi|ts|tsx|js|jsx)\b")
_SOURCE_SUFFIXES = {".py", ".pyi", ".ts", ".tsx", ".js", ".jsx"}
_SKIP_DIRS = {"node_modules", "dist", "build", ".git", "__pycache__", ".venv", "venv"}
_SECTION_RE = re.compile(r"^##\s+(.+)$", re.MULTILINE)
_GOAL_RE = re.compile(r"## Goal\n([\s\S]+?)(?=\n##|\Z)")


def score_exit_reasons(lines: List[str]) -> Dict[ExitReason, int]:
    """Count keyword matches per exit reason across the log text."""
    text = "\n".join(lines)
    return {
        reason: sum(len(p.findall(text)) for p in patterns)
        for reason, patterns in EXIT_PATTERNS.items()
    }


def detect_exit_reason(lines: List[str]) -> ExitReason:
    """Pick the highest-scoring reason; vague_prd when nothing matched.

    Ties keep the earlier reason in EXIT_PATTERNS order.
    """
    best, best_score = ExitReason.VAGUE_PRD, 0
    for reason, score in score_exit_reasons(lines).items():
        if score > best_score:
            best, best_score = reason, score
    logger.debug(f"Exit reason detected: {best.value} (score: {best_score})")
    return best


def choose_strategy(reason: ExitReason) -> RecoveryStrategy:
    return _STRATEGIES.get(reason, RecoveryStrategy.CONTEXT_TRUNCATION)


def prd_path(task_id: str, project_root: Path) -> Path:
    return Path(project_root) / ".specs" / "tasks" / f"{task_id}.md"


def _scan_sources(directory: Path, project_root: Path) -> List[str]:
    files = []
    for current, dirs, names in os.walk(directory):
        dirs[:] = sorted(d for d in dirs if d not in _SKIP_DIRS)
        for name in sorted(names):
            if Path(name).suffix in _SOURCE_SUFFIXES:
                files.append(os.path.relpath(os.path.join(current, name), project_root))
    return files


def find_relevant_files(task: Task, project_root: Path) -> List[str]:
    """Locate source files likely relevant to a task.

    Uses path-like substrings of the description that exist on disk, then
    a scan of the task's feature area. Deduplicated, capped at 10.
    """
    root = Path(project_root)
    found: List[str] = []

    for match in _FILE_PATH_RE.findall(task.description or ""):
        if (root / match).is_file():
            found.append(match)

    if task.feature:
        feature = task.feature.lower()
        for directory in (
            root / feature,
            root / "src" / feature,
            root / "packages" / feature / "src",
        ):
            if directory.is_dir():
                found.extend(_scan_sources(directory, root))

    return list(dict.fromkeys(found))[:MAX_RELEVANT_FILES]


def _context_from_task(task: Task) -> str:
    parts = []
    if task.feature:
        parts.append(f"Feature: {task.feature}")
    if task.parent_id:
        parts.append(f"This is a sub-task of {task.parent_id}")
    if task.depends_on:
        parts.append(f"Depends on: {', '.join(task.depends_on)}")
    feature_name = task.metadata.get("featureName")
    if feature_name:
        parts.append(f"Feature name: {feature_name}")
    return "\n".join(parts)


def _test_scaffold(task: Task) -> str:
    name = re.sub(r"\W+", "_", task.id.lower()).strip("_")
    return f'''"""Tests for {task.id}: {task.title}."""

import pytest


class Test{name.title().replace("_", "")}:
    def test_implements_requirement(self):
        pytest.fail("Replace with a test for the PRD requirements")

    def test_handles_error_cases(self):
        pytest.fail("Replace with error-handling tests")
'''


def _subtasks(task: Task, prd_content: str) -> List[str]:
    if len(_SECTION_RE.findall(prd_content)) > 2:
        return [
            f"{task.id}a: Core implementation",
            f"{task.id}b: Tests and validation",
            f"{task.id}c: Documentation and cleanup",
        ]
    return [
        f"{task.id}a: Implementation part 1",
        f"{task.id}b: Implementation part 2",
    ]


def generate_enhancement(
    reason: ExitReason, task: Task, prd_content: str, relevant_files: List[str]
) -> TaskEnhancement:
    """Build the enhancement payload for an exit reason."""
    if reason == ExitReason.VAGUE_PRD:
        return TaskEnhancement(
            prd_additions=PrdAdditions(
                key_files=relevant_files[:5],
                context=_context_from_task(task),
                approach_hints=[
                    "Review existing patterns in related files",
                    "Follow the project coding style",
                    "Use existing utility functions where possible",
                ],
            )
        )
    if reason == ExitReason.MISSING_TESTS:
        return TaskEnhancement(
            test_scaffolding=_test_scaffold(task),
            prd_additions=PrdAdditions(
                approach_hints=[
                    "Write tests first, then implement until they pass",
                    "Follow the layout of the existing test suite",
                ]
            ),
        )
    if reason == ExitReason.MISSING_CONTEXT:
        listing = "\n".join(f"- {f}" for f in relevant_files)
        return TaskEnhancement(
            prd_additions=PrdAdditions(
                key_files=list(relevant_files),
                context=f"Key files for {task.feature or 'this task'}:\n{listing}",
            )
        )
    if reason == ExitReason.SCOPE_LARGE:
        return TaskEnhancement(split_into=_subtasks(task, prd_content))
    if reason == ExitReason.WRONG_APPROACH:
        return TaskEnhancement(
            prd_additions=PrdAdditions(
                non_goals=[
                    "Do not modify core framework code unless necessary",
                    "Follow existing architecture patterns",
                    "Avoid breaking changes to public APIs",
                ],
                approach_hints=[
                    "Review similar implementations in the codebase",
                    "Prefer extension points over changing shared code",
                ],
            )
        )
    raise ValueError(f"Unhandled exit reason: {reason}")


class TaskRecoveryService:
    """Analyzes early task exits and applies enhancements for the retry."""

    def __init__(self, project_root: Path, logger: Optional[logging.Logger] = None):
        self.project_root = Path(project_root)
        self.logger = logger or logging.getLogger(__name__)

    def analyze_early_exit(
        self, task_id: str, recent_lines: List[str], backend: TaskBackend
    ) -> RecoveryAnalysis:
        """Diagnose an early exit.

        Args:
            task_id: Task that exited.
            recent_lines: Recent log lines, oldest first.
            backend: Task backend for metadata lookup.

        Returns:
            RecoveryAnalysis with reason, evidence, enhancement and strategy.

        Raises:
            TaskNotFoundError: The backend does not know the task.
        """
        reason = detect_exit_reason(recent_lines)

        task = backend.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)

        path = prd_path(task_id, self.project_root)
        try:
            prd_content = path.read_text() if path.exists() else ""
        except OSError as e:
            self.logger.warning(f"Could not read PRD {path}: {e}")
            prd_content = ""

        files = find_relevant_files(task, self.project_root)
        return RecoveryAnalysis(
            task_id=task_id,
            exit_reason=reason,
            evidence=recent_lines[-EVIDENCE_LINES:],
            enhancement=generate_enhancement(reason, task, prd_content, files),
            strategy=choose_strategy(reason),
        )

    def apply_enhancement(
        self, analysis: RecoveryAnalysis, backend: TaskBackend
    ) -> None:
        """Write the enhancement to disk and the task backend."""
        task_id = analysis.task_id
        enhancement = analysis.enhancement
        self.logger.info(
            f"Recovery: enhancing task {task_id} for {analysis.exit_reason.value}"
        )

        if enhancement.prd_additions and not enhancement.prd_additions.is_empty():
            self._update_prd(task_id, enhancement.prd_additions)

        if enhancement.test_scaffolding:
            self._write_test_scaffold(task_id, enhancement.test_scaffolding)

        if enhancement.split_into:
            task = backend.get_task(task_id)
            if task is not None:
                for title in enhancement.split_into:
                    backend.create_sub_task(
                        task_id,
                        {
                            "title": title,
                            "description": f"Part of {task.title}",
                            "priority": task.priority,
                        },
                    )
                self.logger.info(
                    f"Recovery: split {task_id} into {len(enhancement.split_into)} sub-tasks"
                )

        if analysis.strategy == RecoveryStrategy.CONTEXT_TRUNCATION:
            self._add_concise_goal(task_id)

    def _update_prd(self, task_id: str, additions: PrdAdditions) -> None:
        path = prd_path(task_id, self.project_root)
        if path.exists():
            content = path.read_text()
        else:
            content = f"# {task_id}\n\n## Goal\n\nDefine goal\n\n## Requirements\n\nDefine requirements\n"

        sections = []
        if additions.key_files:
            sections.append(("Key Files", "\n".join(f"- {f}" for f in additions.key_files)))
        if additions.context:
            sections.append(("Context", additions.context))
        if additions.approach_hints:
            sections.append(
                ("Approach Hints", "\n".join(f"- {h}" for h in additions.approach_hints))
            )
        if additions.non_goals:
            sections.append(("Non-Goals", "\n".join(f"- {g}" for g in additions.non_goals)))

        for title, body in sections:
            if f"## {title}" not in content:
                content += f"\n## {title}\n{body}\n"

        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        self.logger.debug(f"Updated PRD: {path}")

    def _write_test_scaffold(self, task_id: str, scaffold: str) -> None:
        name = re.sub(r"\W+", "_", task_id.lower()).strip("_")
        path = self.project_root / "tests" / f"test_{name}.py"
        if path.exists():
            self.logger.debug(f"Test file already exists: {path}")
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(scaffold)
        self.logger.debug(f"Created test scaffold: {path}")

    def _add_concise_goal(self, task_id: str) -> None:
        path = prd_path(task_id, self.project_root)
        if not path.exists():
            return
        content = path.read_text()
        if "## Concise Goal" in content:
            return
        match = _GOAL_RE.search(content)
        if not match or len(match.group(1)) <= CONCISE_GOAL_THRESHOLD:
            return
        goal = match.group(1)
        concise = goal[:CONCISE_GOAL_LENGTH] + "... [Truncated for context efficiency]"
        content = content.replace(
            match.group(0), f"## Goal\n{goal}\n\n## Concise Goal\n{concise}", 1
        )
        path.write_text(content)
        self.logger.debug(f"Added concise goal for {task_id}")
