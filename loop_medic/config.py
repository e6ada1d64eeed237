"""Unified configuration for Loop Medic.

Loads settings from (in order of precedence, highest first):
1. Environment variables (MEDIC_*, after loading .env from cwd)
2. Project-local config (.loop-medic.yml in the project root)
3. User config (~/.loop-medic/config.yml)
4. Built-in defaults
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv

DEFAULT_STATE_DIR = ".loop-medic"
PROJECT_CONFIG_NAME = ".loop-medic.yml"


@dataclass
class CircuitBreakerSettings:
    """Circuit breaker configuration."""

    max_failures: int = 3
    cooldown_period_ms: int = 60000
    half_open_attempts: int = 1


@dataclass
class ConcurrencySettings:
    """Per-key concurrency limits for external calls."""

    default: int = 3
    providers: Dict[str, int] = field(
        default_factory=lambda: {"claude": 2, "gemini": 3}
    )
    models: Dict[str, int] = field(default_factory=lambda: {"claude-opus": 1})


@dataclass
class LLMSettings:
    """LLM fallback analyzer configuration."""

    enabled: bool = True
    model: str = "haiku"
    provider: str = "claude"
    base_url: str = "https://api.anthropic.com/v1/"
    api_key: str = ""
    timeout: float = 60.0
    cooldown_ms: int = 300000
    max_per_session: int = 10
    acquire_timeout_ms: int = 30000


@dataclass
class CacheSettings:
    """LLM analysis cache configuration."""

    enabled: bool = True
    ttl_ms: int = 86400000


@dataclass
class WisdomSettings:
    """Learned remediation store configuration."""

    enabled: bool = True
    pattern_expiry_days: int = 30
    min_success_for_trust: int = 3


@dataclass
class VerificationSettings:
    """Verification engine configuration."""

    freshness_ttl_ms: int = 300000
    checks: List[str] = field(default_factory=lambda: ["BUILD", "TEST", "LINT"])
    build_command: Optional[str] = None
    test_command: Optional[str] = None
    lint_command: Optional[str] = None
    log_tail_lines: int = 100


@dataclass
class MonitoringSettings:
    """Log tailer configuration."""

    polling_interval_ms: int = 2000
    debounce_ms: int = 100


@dataclass
class HealthSettings:
    """Session health timers."""

    stale_detection_ms: int = 180000
    max_lifetime_ms: int = 1800000
    health_check_interval_ms: int = 5000


@dataclass
class RecoverySettings:
    """Task recovery configuration."""

    enabled: bool = True
    max_retries: int = 3


@dataclass
class MedicSettings:
    """Root configuration container."""

    log_file: Optional[str] = None
    state_dir: str = DEFAULT_STATE_DIR
    log_level: str = "INFO"
    circuit_breaker: CircuitBreakerSettings = field(
        default_factory=CircuitBreakerSettings
    )
    concurrency: ConcurrencySettings = field(default_factory=ConcurrencySettings)
    llm: LLMSettings = field(default_factory=LLMSettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    wisdom: WisdomSettings = field(default_factory=WisdomSettings)
    verification: VerificationSettings = field(default_factory=VerificationSettings)
    monitoring: MonitoringSettings = field(default_factory=MonitoringSettings)
    health: HealthSettings = field(default_factory=HealthSettings)
    recovery: RecoverySettings = field(default_factory=RecoverySettings)

    def validate(self) -> List[str]:
        """Validate configuration.

        Returns:
            List of validation error messages (empty if valid).
        """
        errors = []

        if self.circuit_breaker.max_failures < 1:
            errors.append("circuit_breaker.max_failures must be at least 1")
        if self.circuit_breaker.cooldown_period_ms < 0:
            errors.append("circuit_breaker.cooldown_period_ms must not be negative")
        if self.circuit_breaker.half_open_attempts < 1:
            errors.append("circuit_breaker.half_open_attempts must be at least 1")
        if self.concurrency.default < 1:
            errors.append("concurrency.default must be at least 1")
        for name, limit in {
            **self.concurrency.providers,
            **self.concurrency.models,
        }.items():
            if limit < 1:
                errors.append(f"concurrency limit for {name} must be at least 1")
        if self.llm.max_per_session < 0:
            errors.append("llm.max_per_session must not be negative")
        if self.wisdom.min_success_for_trust < 1:
            errors.append("wisdom.min_success_for_trust must be at least 1")
        if self.monitoring.polling_interval_ms <= 0:
            errors.append("monitoring.polling_interval_ms must be positive")
        if self.health.health_check_interval_ms <= 0:
            errors.append("health.health_check_interval_ms must be positive")

        return errors


@dataclass
class StatePaths:
    """Locations of every file the monitor persists."""

    state_dir: Path
    wisdom_file: Path
    cache_file: Path
    monitor_state_file: Path
    pause_file: Path

    @classmethod
    def for_project(
        cls, project_root: Optional[Path] = None, state_dir: str = DEFAULT_STATE_DIR
    ) -> "StatePaths":
        """Build the state file layout for a project root.

        Args:
            project_root: Project directory (defaults to cwd).
            state_dir: State directory, relative to the root unless absolute.

        Returns:
            StatePaths rooted at the resolved state directory.
        """
        root = Path(project_root) if project_root else Path.cwd()
        base = Path(state_dir)
        if not base.is_absolute():
            base = root / base
        return cls(
            state_dir=base,
            wisdom_file=base / "wisdom.json",
            cache_file=base / "llm-cache.json",
            monitor_state_file=base / "monitor-state.json",
            pause_file=base / "pause-state.json",
        )


def load_yaml_config(path: Path) -> dict:
    """Load a YAML config file, returning empty dict if not found.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed dict, or empty dict on any failure.
    """
    if not path.exists():
        return {}
    try:
        import yaml

        with open(path) as f:
            data = yaml.safe_load(f)
        return data if isinstance(data, dict) else {}
    except Exception:
        return {}


def _as_bool(value) -> bool:
    return value if isinstance(value, bool) else str(value).lower() == "true"


def _apply_section(target, data: dict) -> None:
    """Apply known keys of a YAML section onto a settings dataclass."""
    for key, value in data.items():
        if not hasattr(target, key):
            continue
        current = getattr(target, key)
        if isinstance(current, bool):
            setattr(target, key, _as_bool(value))
        elif isinstance(current, int):
            setattr(target, key, int(value))
        elif isinstance(current, float):
            setattr(target, key, float(value))
        elif isinstance(current, dict) and isinstance(value, dict):
            setattr(target, key, {str(k): int(v) for k, v in value.items()})
        elif isinstance(current, list) and isinstance(value, list):
            setattr(target, key, [str(v).upper() for v in value])
        elif isinstance(current, (dict, list)):
            continue
        else:
            setattr(target, key, None if value is None else str(value))


_SECTIONS = (
    "circuit_breaker",
    "concurrency",
    "llm",
    "cache",
    "wisdom",
    "verification",
    "monitoring",
    "health",
    "recovery",
)


def _apply_dict(settings: MedicSettings, data: dict) -> None:
    """Apply a parsed YAML document onto MedicSettings."""
    if "state_dir" in data:
        settings.state_dir = str(data["state_dir"])
    if "log_level" in data:
        settings.log_level = str(data["log_level"])
    if "log_file" in data:
        settings.log_file = str(data["log_file"])
    for section in _SECTIONS:
        if isinstance(data.get(section), dict):
            _apply_section(getattr(settings, section), data[section])


# (env var, section, attribute, converter)
_ENV_OVERRIDES = [
    ("MEDIC_LLM_MODEL", "llm", "model", str),
    ("MEDIC_LLM_BASE_URL", "llm", "base_url", str),
    ("MEDIC_LLM_API_KEY", "llm", "api_key", str),
    ("MEDIC_LLM_TIMEOUT", "llm", "timeout", float),
    ("MEDIC_LLM_ENABLED", "llm", "enabled", _as_bool),
    ("MEDIC_LLM_MAX_PER_SESSION", "llm", "max_per_session", int),
    ("MEDIC_LLM_COOLDOWN_MS", "llm", "cooldown_ms", int),
    ("MEDIC_MAX_FAILURES", "circuit_breaker", "max_failures", int),
    ("MEDIC_COOLDOWN_PERIOD_MS", "circuit_breaker", "cooldown_period_ms", int),
    ("MEDIC_CACHE_ENABLED", "cache", "enabled", _as_bool),
    ("MEDIC_POLLING_INTERVAL_MS", "monitoring", "polling_interval_ms", int),
    ("MEDIC_STALE_DETECTION_MS", "health", "stale_detection_ms", int),
    ("MEDIC_MAX_LIFETIME_MS", "health", "max_lifetime_ms", int),
]


def _apply_env_overrides(settings: MedicSettings) -> None:
    """Apply MEDIC_* environment variable overrides."""
    for env_var, section, attr, convert in _ENV_OVERRIDES:
        value = os.environ.get(env_var)
        if value:
            setattr(getattr(settings, section), attr, convert(value))

    # Fall back to the provider's conventional key name
    if not settings.llm.api_key:
        settings.llm.api_key = os.environ.get("ANTHROPIC_API_KEY", "")

    state_dir = os.environ.get("MEDIC_STATE_DIR")
    if state_dir:
        settings.state_dir = state_dir

    log_level = os.environ.get("MEDIC_LOG_LEVEL")
    if log_level:
        settings.log_level = log_level

    log_file = os.environ.get("MEDIC_LOG_FILE")
    if log_file:
        settings.log_file = log_file


def load_settings(
    project_root: Optional[Path] = None,
    user_config_path: Optional[Path] = None,
    project_config_path: Optional[Path] = None,
) -> MedicSettings:
    """Load settings from config files and env vars.

    Args:
        project_root: Directory holding the project config (defaults to cwd).
        user_config_path: Override path for user config (testing).
        project_config_path: Override path for project config (testing).

    Returns:
        Fully resolved MedicSettings.
    """
    load_dotenv(os.path.join(os.getcwd(), ".env"))
    settings = MedicSettings()

    user_path = user_config_path or (Path.home() / ".loop-medic" / "config.yml")
    _apply_dict(settings, load_yaml_config(user_path))

    root = Path(project_root) if project_root else Path.cwd()
    project_path = project_config_path or (root / PROJECT_CONFIG_NAME)
    _apply_dict(settings, load_yaml_config(project_path))

    _apply_env_overrides(settings)

    return settings


# Module-level cached instance
_settings: Optional[MedicSettings] = None


def get_settings() -> MedicSettings:
    """Get cached settings instance."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Reset cached settings (for testing)."""
    global _settings
    _settings = None
