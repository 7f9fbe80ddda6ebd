# =============================================================================
# ISSUE TRIAGE SYSTEM - CONFIGURATION
# =============================================================================
"""
Configuration

Loads settings from a YAML file and ``TRIAGE_`` environment variables and
resolves them into one AppConfig handed to every component at construction.

Precedence (highest first):
    1. Environment: TRIAGE_<SECTION>__<KEY>, e.g. TRIAGE_AI__PROVIDER=groq
    2. YAML file: $XDG_CONFIG_HOME/issue-triage/config.yaml
    3. Built-in defaults

Example config.yaml:
    ai:
      provider: gemini
      model: gemini-3-flash-preview
      tasks:
        triage:
          provider: groq
          model: llama-3.3-70b-versatile
    cache:
      issue_ttl_minutes: 30
    ui:
      confirm_before_post: true
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from triage_engine.engine.errors import ConfigurationError


logger = logging.getLogger(__name__)

APP_DIR_NAME = "issue-triage"
ENV_PREFIX = "TRIAGE_"

DEFAULT_ALLOWED_LABELS = [
    "bug",
    "enhancement",
    "documentation",
    "question",
    "good first issue",
    "help wanted",
    "duplicate",
    "invalid",
    "wontfix",
]


def config_dir() -> Path:
    """User configuration directory, honoring XDG_CONFIG_HOME."""
    base = os.environ.get("XDG_CONFIG_HOME")
    return (Path(base) if base else Path.home() / ".config") / APP_DIR_NAME


def data_dir() -> Path:
    """User data directory, honoring XDG_DATA_HOME."""
    base = os.environ.get("XDG_DATA_HOME")
    return (Path(base) if base else Path.home() / ".local" / "share") / APP_DIR_NAME


def _known(cls, data: Mapping[str, Any]) -> Dict[str, Any]:
    """Keep only keys that are dataclass fields, warning about the rest."""
    names = {f.name for f in fields(cls)}
    unknown = set(data) - names
    if unknown:
        logger.warning(f"Ignoring unknown {cls.__name__} keys: {sorted(unknown)}")
    return {k: v for k, v in data.items() if k in names}


# =============================================================================
# SECTIONS
# =============================================================================

@dataclass
class TaskOverride:
    """Per-task provider/model override."""
    provider: Optional[str] = None
    model: Optional[str] = None


@dataclass
class AIConfig:
    """Completion provider settings."""
    provider: str = "gemini"
    model: str = "gemini-3-flash-preview"
    timeout_seconds: float = 30.0
    max_tokens: int = 4096
    temperature: float = 0.3
    circuit_breaker_threshold: int = 5
    circuit_breaker_reset_seconds: float = 60.0
    tasks: Dict[str, TaskOverride] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "AIConfig":
        data = dict(config)
        tasks = data.pop("tasks", None) or {}
        if not isinstance(tasks, dict):
            raise ConfigurationError("ai.tasks must be a mapping")
        result = cls(**_known(cls, data))
        result.tasks = {
            name: TaskOverride(**_known(TaskOverride, override or {}))
            for name, override in tasks.items()
        }
        return result

    def for_task(self, task: str) -> TaskOverride:
        """Effective provider and model for a task (triage, review, create)."""
        override = self.tasks.get(task) or TaskOverride()
        provider = override.provider or self.provider
        # A model only applies to the provider it was configured for
        model = override.model
        if model is None and provider == self.provider:
            model = self.model
        return TaskOverride(provider=provider, model=model)


@dataclass
class GitHubConfig:
    """GitHub API settings."""
    api_url: str = "https://api.github.com"
    api_timeout_seconds: float = 10.0
    connect_timeout_seconds: float = 5.0
    oauth_client_id: str = "Ov23lifiYQrh6Ga7Hpyr"
    device_flow_timeout_seconds: float = 900.0

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "GitHubConfig":
        return cls(**_known(cls, config))


@dataclass
class RetryConfig:
    """Retry policy for idempotent calls, and the circuit for non-AI downstreams."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.5
    retryable_statuses: List[int] = field(default_factory=lambda: [429, 500, 502, 503, 504])
    circuit_breaker_threshold: int = 5
    circuit_breaker_reset_seconds: float = 60.0

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "RetryConfig":
        values = _known(cls, config)
        statuses = values.get("retryable_statuses")
        if isinstance(statuses, int):
            values["retryable_statuses"] = [statuses]
        return cls(**values)


@dataclass
class CacheConfig:
    """TTL cache settings."""
    enabled: bool = True
    issue_ttl_minutes: float = 60
    repo_ttl_hours: float = 24
    cache_dir: Optional[str] = None

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "CacheConfig":
        return cls(**_known(cls, config))

    def ttls(self) -> Dict[str, float]:
        """TTL in seconds per resource kind."""
        issue_ttl = self.issue_ttl_minutes * 60
        return {
            "issues": issue_ttl,
            "comments": issue_ttl,
            "search": issue_ttl,
            "repo_metadata": self.repo_ttl_hours * 3600,
        }


@dataclass
class TriageConfig:
    """Prompt budgets and validator limits."""
    max_body_length: int = 4000
    max_comments: int = 5
    max_comment_length: int = 500
    max_related_issues: int = 10
    max_available_labels: int = 30
    max_clarifying_questions: int = 5
    max_potential_duplicates: int = 5
    max_summary_length: int = 2000
    allowed_labels: List[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_LABELS))
    concurrency: int = 4

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "TriageConfig":
        return cls(**_known(cls, config))


@dataclass
class UIConfig:
    confirm_before_post: bool = True

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "UIConfig":
        return cls(**_known(cls, config))


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "console"
    log_file: Optional[str] = None
    audit_file: Optional[str] = None

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "LoggingConfig":
        return cls(**_known(cls, config))


@dataclass
class MetricsConfig:
    enabled: bool = False
    port: int = 9108
    namespace: str = "issue_triage"

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "MetricsConfig":
        return cls(**_known(cls, config))


@dataclass
class AppConfig:
    """Fully-resolved application settings."""
    ai: AIConfig = field(default_factory=AIConfig)
    github: GitHubConfig = field(default_factory=GitHubConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    triage: TriageConfig = field(default_factory=TriageConfig)
    ui: UIConfig = field(default_factory=UIConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)

    _SECTIONS = {
        "ai": AIConfig,
        "github": GitHubConfig,
        "retry": RetryConfig,
        "cache": CacheConfig,
        "triage": TriageConfig,
        "ui": UIConfig,
        "logging": LoggingConfig,
        "metrics": MetricsConfig,
    }

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "AppConfig":
        """Create config from a nested dictionary."""
        kwargs = {}
        for name, section_cls in cls._SECTIONS.items():
            section = config.get(name) or {}
            if not isinstance(section, dict):
                raise ConfigurationError(f"Config section '{name}' must be a mapping")
            try:
                kwargs[name] = section_cls.from_dict(section)
            except TypeError as e:
                raise ConfigurationError(f"Invalid '{name}' section: {e}") from e
        result = cls(**kwargs)
        result.validate()
        return result

    def validate(self):
        """Reject values that would break the components they configure."""
        if self.retry.max_attempts < 0:
            raise ConfigurationError("retry.max_attempts must be >= 0")
        if self.retry.base_delay < 0 or self.retry.jitter < 0:
            raise ConfigurationError("retry delays must be >= 0")
        if self.ai.circuit_breaker_threshold < 1:
            raise ConfigurationError("ai.circuit_breaker_threshold must be >= 1")
        if self.retry.circuit_breaker_threshold < 1:
            raise ConfigurationError("retry.circuit_breaker_threshold must be >= 1")
        if not isinstance(self.retry.retryable_statuses, list) or not all(
            isinstance(s, int) and 400 <= s <= 599 for s in self.retry.retryable_statuses
        ):
            raise ConfigurationError("retry.retryable_statuses must be a list of HTTP error statuses")
        if not 0.0 <= self.ai.temperature <= 2.0:
            raise ConfigurationError("ai.temperature must be between 0 and 2")
        if self.ai.max_tokens < 1:
            raise ConfigurationError("ai.max_tokens must be positive")
        if self.cache.issue_ttl_minutes < 0 or self.cache.repo_ttl_hours < 0:
            raise ConfigurationError("cache TTLs must be >= 0")
        if self.triage.concurrency < 1:
            raise ConfigurationError("triage.concurrency must be >= 1")


# =============================================================================
# LOADING
# =============================================================================

def _env_overrides(env: Mapping[str, str]) -> Dict[str, Dict[str, Any]]:
    """
    Collect TRIAGE_<SECTION>__<KEY> variables into a nested dict.

    Values are parsed as YAML scalars so "false", "3" and "0.5" become
    bool, int and float.
    """
    overrides: Dict[str, Dict[str, Any]] = {}
    for name, raw in env.items():
        if not name.startswith(ENV_PREFIX) or "__" not in name:
            continue
        path = [part.lower() for part in name[len(ENV_PREFIX):].split("__")]
        try:
            value = yaml.safe_load(raw)
        except yaml.YAMLError:
            value = raw
        if value is None:
            value = raw
        target: Dict[str, Any] = overrides
        for part in path[:-1]:
            target = target.setdefault(part, {})
        target[path[-1]] = value
    return overrides


def _deep_merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_config(
    config_path: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
) -> AppConfig:
    """
    Load configuration from YAML file and environment variables.

    Environment variables override YAML values.

    Args:
        config_path: Path to config.yaml (default: user config dir)
        env: Environment mapping (default: os.environ)

    Returns:
        Resolved AppConfig

    Raises:
        ConfigurationError: Unreadable YAML or invalid values
    """
    env = os.environ if env is None else env
    config: Dict[str, Any] = {}

    config_file = Path(config_path) if config_path else config_dir() / "config.yaml"
    if config_file.exists():
        try:
            with open(config_file, encoding="utf-8") as f:
                config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_file}: {e}") from e
        if not isinstance(config, dict):
            raise ConfigurationError(f"{config_file} must contain a mapping")
        logger.info(f"Loaded config from {config_file}")
    elif config_path:
        logger.warning(f"Config file not found: {config_path}, using defaults")

    config = _deep_merge(config, _env_overrides(env))
    return AppConfig.from_dict(config)


__all__ = [
    "AppConfig",
    "AIConfig",
    "TaskOverride",
    "GitHubConfig",
    "RetryConfig",
    "CacheConfig",
    "TriageConfig",
    "UIConfig",
    "LoggingConfig",
    "MetricsConfig",
    "DEFAULT_ALLOWED_LABELS",
    "load_config",
    "config_dir",
    "data_dir",
]
