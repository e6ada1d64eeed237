"""Tests for early-exit task recovery."""

import pytest

from conftest import FakeBackend
from loop_medic.exceptions import TaskNotFoundError
from loop_medic.models.recovery import ExitReason, RecoveryStrategy, Task
from loop_medic.services.task_recovery_service import (
    TaskRecoveryService,
    choose_strategy,
    detect_exit_reason,
    find_relevant_files,
    generate_enhancement,
    prd_path,
    score_exit_reasons,
)

VAGUE_LINES = [
    "I need more detail on the expected output.",
    "Can you clarify the acceptance criteria?",
    "Which file should hold the form?",
]
SCOPE_LINES = [
    "This change is too complex for one pass.",
    "It touches too many files.",
    "Should we split the work up?",
]


@pytest.fixture
def service(project_root):
    return TaskRecoveryService(project_root)


@pytest.fixture
def auth_sources(project_root):
    src = project_root / "src" / "auth"
    src.mkdir(parents=True)
    (src / "login.py").write_text("def login():\n    pass\n")
    (src / "session.py").write_text("")
    (src / "notes.txt").write_text("")
    cache = src / "__pycache__"
    cache.mkdir()
    (cache / "login.cpython-312.pyc").write_text("")
    return src


# ── Detection ────────────────────────────────────────────────────────


class TestDetection:
    def test_vague_prd(self):
        """Test clarification requests detect a vague PRD."""
        scores = score_exit_reasons(VAGUE_LINES)
        assert scores[ExitReason.VAGUE_PRD] == 3
        assert max(scores, key=scores.get) == ExitReason.VAGUE_PRD
        assert detect_exit_reason(VAGUE_LINES) == ExitReason.VAGUE_PRD

    def test_scope_large(self):
        """Test size complaints detect a large scope."""
        scores = score_exit_reasons(SCOPE_LINES)
        assert scores[ExitReason.SCOPE_LARGE] == 3
        assert detect_exit_reason(SCOPE_LINES) == ExitReason.SCOPE_LARGE

    def test_missing_tests(self):
        """Test test complaints detect missing tests."""
        assert detect_exit_reason(["No tests found for module"]) == ExitReason.MISSING_TESTS

    def test_wrong_approach(self):
        """Test backtracking detects a wrong approach."""
        lines = ["That didn't work, let's try a different library"]
        assert detect_exit_reason(lines) == ExitReason.WRONG_APPROACH

    def test_nothing_matches_defaults_to_vague_prd(self):
        """Test no matches defaults to a vague PRD."""
        assert detect_exit_reason(["all quiet"]) == ExitReason.VAGUE_PRD

    def test_strategies(self):
        """Test each exit reason maps to its retry strategy."""
        assert choose_strategy(ExitReason.WRONG_APPROACH) == RecoveryStrategy.MODEL_FALLBACK
        assert choose_strategy(ExitReason.SCOPE_LARGE) == RecoveryStrategy.TASK_RESTART
        assert choose_strategy(ExitReason.VAGUE_PRD) == RecoveryStrategy.CONTEXT_TRUNCATION
        assert (
            choose_strategy(ExitReason.MISSING_CONTEXT)
            == RecoveryStrategy.CONTEXT_TRUNCATION
        )


class TestRelevantFiles:
    def test_description_and_feature_scan(self, project_root, sample_task, auth_sources):
        """Test files come from the description and feature directory."""
        files = find_relevant_files(sample_task, project_root)
        assert files == ["src/auth/login.py", "src/auth/session.py"]

    def test_capped_at_ten(self, project_root):
        """Test at most ten files are returned."""
        area = project_root / "billing"
        area.mkdir()
        for i in range(15):
            (area / f"m{i:02d}.py").write_text("")
        task = Task(id="T", title="t", feature="billing")
        assert len(find_relevant_files(task, project_root)) == 10

    def test_missing_paths_ignored(self, project_root):
        """Test paths that do not exist are ignored."""
        task = Task(id="T", title="t", description="see lib/nothing.py")
        assert find_relevant_files(task, project_root) == []


class TestEnhancements:
    def test_scope_split_two(self, sample_task):
        """Test a small PRD splits into two sub-tasks."""
        enhancement = generate_enhancement(
            ExitReason.SCOPE_LARGE, sample_task, "## Goal\nx\n", []
        )
        assert len(enhancement.split_into) == 2

    def test_scope_split_three_for_large_prd(self, sample_task):
        """Test a PRD with many sections splits into three."""
        prd = "## Goal\n\n## Requirements\n\n## Notes\n"
        enhancement = generate_enhancement(ExitReason.SCOPE_LARGE, sample_task, prd, [])
        assert len(enhancement.split_into) == 3
        assert enhancement.split_into[0].startswith("TASK-001a")

    def test_missing_tests_scaffold(self, sample_task):
        """Test a missing-tests enhancement carries a scaffold."""
        enhancement = generate_enhancement(ExitReason.MISSING_TESTS, sample_task, "", [])
        assert "class TestTask001" in enhancement.test_scaffolding
        assert any("tests first" in h for h in enhancement.prd_additions.approach_hints)

    def test_missing_context_lists_files(self, sample_task):
        """Test a missing-context enhancement lists the files."""
        enhancement = generate_enhancement(
            ExitReason.MISSING_CONTEXT, sample_task, "", ["src/auth/login.py"]
        )
        assert enhancement.prd_additions.key_files == ["src/auth/login.py"]
        assert "- src/auth/login.py" in enhancement.prd_additions.context

    def test_wrong_approach_non_goals(self, sample_task):
        """Test a wrong-approach enhancement adds non-goals."""
        enhancement = generate_enhancement(ExitReason.WRONG_APPROACH, sample_task, "", [])
        assert enhancement.prd_additions.non_goals
        assert any("similar" in h for h in enhancement.prd_additions.approach_hints)

    def test_vague_prd_context(self, sample_task):
        """Test a vague-PRD enhancement adds context."""
        enhancement = generate_enhancement(ExitReason.VAGUE_PRD, sample_task, "", [])
        assert "Feature: auth" in enhancement.prd_additions.context


# ── Service ──────────────────────────────────────────────────────────


class TestAnalyzeEarlyExit:
    def test_analysis(self, service, backend, auth_sources):
        """Test the full early-exit analysis."""
        lines = [f"noise {i}" for i in range(30)] + VAGUE_LINES
        analysis = service.analyze_early_exit("TASK-001", lines, backend)
        assert analysis.exit_reason == ExitReason.VAGUE_PRD
        assert analysis.strategy == RecoveryStrategy.CONTEXT_TRUNCATION
        assert len(analysis.evidence) == 20
        assert analysis.evidence[-1] == VAGUE_LINES[-1]
        assert analysis.history_key == "TASK-001:vague_prd"
        assert "src/auth/login.py" in analysis.enhancement.prd_additions.key_files

    def test_unknown_task(self, service):
        """Test analyzing an unknown task raises."""
        with pytest.raises(TaskNotFoundError, match="Task NOPE not found"):
            service.analyze_early_exit("NOPE", VAGUE_LINES, FakeBackend())


class TestApplyEnhancement:
    def test_prd_sections_added_once(self, service, backend, project_root):
        """Test PRD sections are not appended twice."""
        analysis = service.analyze_early_exit("TASK-001", VAGUE_LINES, backend)
        service.apply_enhancement(analysis, backend)
        service.apply_enhancement(analysis, backend)
        content = prd_path("TASK-001", project_root).read_text()
        assert content.startswith("# TASK-001")
        assert content.count("## Approach Hints") == 1
        assert content.count("## Context") == 1

    def test_scaffold_not_overwritten(self, service, backend, project_root):
        """Test an existing test file is kept."""
        existing = project_root / "tests" / "test_task_001.py"
        existing.parent.mkdir()
        existing.write_text("# mine\n")
        analysis = service.analyze_early_exit(
            "TASK-001", ["No tests found"], backend
        )
        service.apply_enhancement(analysis, backend)
        assert existing.read_text() == "# mine\n"

    def test_scaffold_written(self, service, backend, project_root):
        """Test the test scaffold is written."""
        analysis = service.analyze_early_exit("TASK-001", ["missing test"], backend)
        service.apply_enhancement(analysis, backend)
        assert (project_root / "tests" / "test_task_001.py").exists()

    def test_sub_tasks_created(self, service, backend):
        """Test sub-tasks are created for a large scope."""
        analysis = service.analyze_early_exit("TASK-001", SCOPE_LINES, backend)
        service.apply_enhancement(analysis, backend)
        assert [parent for parent, _ in backend.created] == ["TASK-001", "TASK-001"]
        assert backend.created[0][1]["priority"] == "high"
        assert backend.created[0][1]["description"] == "Part of Add login form"

    def test_concise_goal_for_long_goal(self, service, backend, project_root):
        """Test a long goal gets a concise summary."""
        path = prd_path("TASK-001", project_root)
        path.parent.mkdir(parents=True)
        goal = "Build it. " * 80
        path.write_text(f"# TASK-001\n\n## Goal\n{goal}\n## Requirements\n- one\n")

        analysis = service.analyze_early_exit("TASK-001", VAGUE_LINES, backend)
        service.apply_enhancement(analysis, backend)

        content = path.read_text()
        assert "## Concise Goal" in content
        assert "... [Truncated for context efficiency]" in content
        assert content.index("## Concise Goal") < content.index("## Requirements")

    def test_short_goal_left_alone(self, service, backend, project_root):
        """Test a short goal is left unchanged."""
        analysis = service.analyze_early_exit("TASK-001", VAGUE_LINES, backend)
        service.apply_enhancement(analysis, backend)
        assert "## Concise Goal" not in prd_path("TASK-001", project_root).read_text()
