"""Verification engine confirming that a remediation actually worked."""

import json
import logging
import re
import shlex
import subprocess
import sys
import time
from collections import deque
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from loop_medic.models.verification import (
    CheckConfig,
    CheckType,
    VerificationCheckResult,
    VerificationEvidence,
    VerificationResult,
)

logger = logging.getLogger(__name__)

DEFAULT_FRESHNESS_TTL_MS = 300000
DEFAULT_LOG_TAIL_LINES = 100
OUTPUT_LIMIT = 2000

DEFAULT_CHECKS: Dict[CheckType, CheckConfig] = {
    CheckType.BUILD: CheckConfig(CheckType.BUILD, required=True, timeout=120.0),
    CheckType.TEST: CheckConfig(CheckType.TEST, required=True, timeout=180.0),
    CheckType.LINT: CheckConfig(CheckType.LINT, required=False, timeout=60.0),
    CheckType.ERROR_FREE: CheckConfig(CheckType.ERROR_FREE, required=True),
    CheckType.FUNCTIONALITY: CheckConfig(CheckType.FUNCTIONALITY, required=False),
    CheckType.ARCHITECT: CheckConfig(CheckType.ARCHITECT, required=False),
    CheckType.TODO: CheckConfig(CheckType.TODO, required=False),
}

_ERROR_TOKENS = re.compile(r"\[ERROR\]|failed|exception", re.IGNORECASE)
_OWN_CHATTER = re.compile(r"healing|recovery|monitor", re.IGNORECASE)
_TODO_MARKERS = re.compile(r"\b(TODO|FIXME|XXX)\b")


def detect_commands(project_root: Path) -> Dict[CheckType, List[str]]:
    """Guess build/test/lint commands from the project's packaging files.

    Args:
        project_root: Project directory.

    Returns:
        Mapping of check type to argv; checks with no known command are absent.
    """
    root = Path(project_root)
    if any((root / name).exists() for name in ("pyproject.toml", "setup.py", "setup.cfg")):
        return {
            CheckType.BUILD: [sys.executable, "-m", "compileall", "-q", "."],
            CheckType.TEST: [sys.executable, "-m", "pytest", "-q", "--tb=short"],
            CheckType.LINT: ["ruff", "check", "."],
        }

    package_json = root / "package.json"
    if package_json.exists():
        try:
            scripts = json.loads(package_json.read_text()).get("scripts") or {}
        except (OSError, ValueError, AttributeError):
            scripts = {}
        commands: Dict[CheckType, List[str]] = {}
        if "build" in scripts:
            commands[CheckType.BUILD] = ["npm", "run", "build"]
        if "test" in scripts:
            commands[CheckType.TEST] = ["npm", "test"]
        if "lint" in scripts:
            commands[CheckType.LINT] = ["npm", "run", "lint"]
        return commands

    return {}


def build_check_configs(
    names: Sequence[str],
    project_root: Path,
    overrides: Optional[Dict[CheckType, Optional[str]]] = None,
) -> List[CheckConfig]:
    """Resolve configured check names into runnable CheckConfigs.

    ERROR_FREE is always appended so a remediation is never verified while
    the loop's log is still reporting errors.
    """
    detected = detect_commands(project_root)
    configs = []
    seen = set()
    for name in list(names) + [CheckType.ERROR_FREE.value]:
        try:
            check_type = CheckType(str(name).upper())
        except ValueError:
            logger.warning(f"Ignoring unknown verification check: {name}")
            continue
        if check_type in seen:
            continue
        seen.add(check_type)

        base = DEFAULT_CHECKS[check_type]
        override = (overrides or {}).get(check_type)
        command = shlex.split(override) if override else detected.get(check_type)
        configs.append(
            CheckConfig(
                type=check_type,
                required=base.required,
                timeout=base.timeout,
                command=command,
            )
        )
    return configs


class VerificationEngine:
    """Runs an ordered battery of checks against the project."""

    def __init__(
        self,
        project_root: Path,
        checks: List[CheckConfig],
        log_file: Optional[Path] = None,
        freshness_ttl_ms: int = DEFAULT_FRESHNESS_TTL_MS,
        log_tail_lines: int = DEFAULT_LOG_TAIL_LINES,
        clock: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
    ):
        self.project_root = Path(project_root)
        self.checks = checks
        self.log_file = Path(log_file) if log_file else None
        self.freshness_ttl = timedelta(milliseconds=freshness_ttl_ms)
        self.log_tail_lines = log_tail_lines
        self._clock = clock
        self.logger = logger or logging.getLogger(__name__)

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def verify(
        self, claim: str, changed_files: Optional[List[str]] = None
    ) -> VerificationResult:
        """Run every configured check for a claim.

        Args:
            claim: What is being verified (e.g. "auto-fix for prd-not-found").
            changed_files: Files touched by the remediation, for the TODO check.

        Returns:
            VerificationResult; passed iff every required check passed.
        """
        self.logger.info(f"Verifying: {claim}")
        results = [self.run_check(c, changed_files or []) for c in self.checks]

        evidence = VerificationEvidence(
            claim=claim, checks=results, timestamp=self._now()
        )
        result = VerificationResult(
            passed=all(r.passed for r in results if r.required),
            checks=results,
            evidence=evidence,
            timestamp=evidence.timestamp,
        )

        if result.passed:
            self.logger.info(f"Verification passed for: {claim}")
        else:
            failed = ", ".join(c.value for c in result.failed_checks)
            self.logger.warning(f"Verification failed for {claim}: {failed}")
        return result

    def is_evidence_fresh(self, evidence: VerificationEvidence) -> bool:
        """Whether evidence is recent enough to trust without re-running."""
        return evidence.is_fresh(self._now(), self.freshness_ttl)

    def run_check(
        self, config: CheckConfig, changed_files: Optional[List[str]] = None
    ) -> VerificationCheckResult:
        start = time.monotonic()
        if config.type == CheckType.ERROR_FREE:
            passed, output = self._check_error_free()
            error = None if passed else "Errors found in recent log output"
        elif config.type == CheckType.TODO:
            passed, output = self._check_todos(changed_files or [])
            error = None if passed else "Unresolved TODO markers"
        elif config.type in (CheckType.FUNCTIONALITY, CheckType.ARCHITECT):
            passed, output, error = True, "Manual check; no reviewer configured", None
        else:
            passed, output, error = self._run_command(config)

        return VerificationCheckResult(
            type=config.type,
            passed=passed,
            required=config.required,
            output=output,
            duration=time.monotonic() - start,
            error=error,
            timestamp=self._now(),
        )

    def _run_command(self, config: CheckConfig):
        if not config.command:
            return True, "No command configured; skipped", None
        try:
            # List args, no shell
            result = subprocess.run(
                config.command,
                cwd=self.project_root,
                capture_output=True,
                text=True,
                timeout=config.timeout,
            )
        except subprocess.TimeoutExpired:
            return False, "", f"{config.type.value} timed out after {config.timeout:.0f}s"
        except FileNotFoundError:
            return False, "", f"Command not found: {config.command[0]}"
        except OSError as e:
            return False, "", f"Error running {config.type.value}: {e}"

        output = ((result.stdout or "") + (result.stderr or ""))[-OUTPUT_LIMIT:]
        if result.returncode != 0:
            return False, output, f"Exit code {result.returncode}"
        return True, output, None

    def _check_error_free(self):
        if self.log_file is None or not self.log_file.exists():
            return True, "No log file to scan"
        try:
            with open(self.log_file, encoding="utf-8", errors="replace") as f:
                tail = deque(f, maxlen=self.log_tail_lines)
        except OSError as e:
            return False, f"Could not read log: {e}"

        offending = [
            line.rstrip("\n")
            for line in tail
            if _ERROR_TOKENS.search(line) and not _OWN_CHATTER.search(line)
        ]
        if offending:
            return False, "\n".join(offending[:5])
        return True, f"No errors in last {len(tail)} log lines"

    def _check_todos(self, changed_files: List[str]):
        issues = []
        for name in changed_files:
            path = self.project_root / name
            try:
                text = path.read_text(errors="replace")
            except OSError:
                continue
            for lineno, line in enumerate(text.splitlines(), 1):
                if _TODO_MARKERS.search(line):
                    issues.append(f"{name}:{lineno}: {line.strip()}")
        if issues:
            return False, "\n".join(issues[:10])
        return True, "No TODO markers in changed files"
