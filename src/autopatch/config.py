"""Runtime settings for the patch execution engine.

Settings are read from a YAML document whose top-level sections mirror the
dataclasses below.  Every section is optional; values that cannot be coerced
keep their defaults so a partially valid file never prevents the agent from
running.  Environment variables are applied last.
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml


class ConfigError(ValueError):
    """Raised when the configuration document cannot be interpreted."""


@dataclass(slots=True)
class DiffSettings:
    """Limits applied to generated diffs."""

    max_bytes: int = 64_000
    large_file_line_threshold: int = 800
    refine_max_iterations: int = 3
    strict_hunk_extents: bool = True
    max_deletion_ratio: float = 4.0
    deletion_min_total: int = 50
    max_created_or_deleted_files: int = 20
    max_large_file_touches: int = 5


@dataclass(slots=True)
class AdaptiveSettings:
    """Confidence step sizes and batch bounds."""

    confidence_increase_per_success: float = 0.07
    confidence_decrease_on_fail: float = 0.1
    min_batch: int = 1
    max_batch: int = 12


@dataclass(slots=True)
class TerminationSettings:
    required_confidence: float = 0.94


@dataclass(slots=True)
class MemorySettings:
    """Compression and decay knobs for the strategic memory."""

    compression_every: int = 5
    max_strategic: int = 24
    min_salience_for_retention: float = 0.42
    decay_factor: float = 0.9
    strategic_hints: int = 3


@dataclass(slots=True)
class ContextSettings:
    max_chars: int = 30_000
    reasoning_chars: int = 4_000


@dataclass(slots=True)
class GitSettings:
    """Commit identity, branch naming and workspace placement."""

    commit_author_name: str = "AI Agent"
    commit_author_email: str = "ai-agent@example.local"
    default_base: str = "main"
    auto_pr_create: bool = True
    branch_template: str = "ai/issue-{issue}-agent"
    workspace_root: Path = field(default_factory=lambda: Path(tempfile.gettempdir()))


@dataclass(slots=True)
class AgentSettings:
    """Complete settings bundle consumed by the orchestrator."""

    diff: DiffSettings = field(default_factory=DiffSettings)
    adaptive: AdaptiveSettings = field(default_factory=AdaptiveSettings)
    termination: TerminationSettings = field(default_factory=TerminationSettings)
    memory: MemorySettings = field(default_factory=MemorySettings)
    context: ContextSettings = field(default_factory=ContextSettings)
    git: GitSettings = field(default_factory=GitSettings)


def _as_int(value: Any, *, minimum: int | None = None) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        candidate = int(str(value).strip()) if isinstance(value, str) else int(value)
    except (TypeError, ValueError):
        return None
    if minimum is not None and candidate < minimum:
        return minimum
    return candidate


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    if isinstance(value, (int, float)):
        return bool(value)
    return None


def _as_str(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _section(config: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    section = config.get(name)
    if isinstance(section, Mapping):
        return section
    return {}


def _apply(target: Any, section: Mapping[str, Any]) -> None:
    """Copy coercible values from ``section`` onto the dataclass ``target``."""
    for name in target.__dataclass_fields__:
        if name not in section:
            continue
        current = getattr(target, name)
        raw = section[name]
        if isinstance(current, bool):
            converted: Any = _as_bool(raw)
        elif isinstance(current, int):
            converted = _as_int(raw, minimum=0)
        elif isinstance(current, float):
            converted = _as_float(raw)
        elif isinstance(current, Path):
            text = _as_str(raw)
            converted = Path(text).expanduser() if text else None
        else:
            converted = _as_str(raw)
        if converted is not None:
            setattr(target, name, converted)


def _apply_env(settings: AgentSettings, env: Mapping[str, str]) -> None:
    max_bytes = _as_int(env.get("AUTOPATCH_MAX_DIFF_BYTES"), minimum=1)
    if max_bytes is not None:
        settings.diff.max_bytes = max_bytes

    refine = _as_int(env.get("AUTOPATCH_REFINE_MAX_ITERATIONS"), minimum=1)
    if refine is not None:
        settings.diff.refine_max_iterations = refine

    min_batch = _as_int(env.get("AUTOPATCH_MIN_BATCH"), minimum=0)
    if min_batch is not None:
        settings.adaptive.min_batch = min_batch

    max_batch = _as_int(env.get("AUTOPATCH_MAX_BATCH"), minimum=1)
    if max_batch is not None:
        settings.adaptive.max_batch = max_batch

    work_root = _as_str(env.get("AGENT_WORK_ROOT"))
    if work_root:
        settings.git.workspace_root = Path(work_root).expanduser()

    auto_pr = _as_bool(env.get("AUTOPATCH_AUTO_PR"))
    if auto_pr is not None:
        settings.git.auto_pr_create = auto_pr


def settings_from_mapping(
    config: Mapping[str, Any],
    *,
    env: Mapping[str, str] | None = None,
) -> AgentSettings:
    """Build :class:`AgentSettings` from an already-parsed mapping."""
    settings = AgentSettings()
    _apply(settings.diff, _section(config, "diff"))
    _apply(settings.adaptive, _section(config, "adaptive"))
    _apply(settings.termination, _section(config, "termination"))
    _apply(settings.memory, _section(config, "memory"))
    _apply(settings.context, _section(config, "context"))
    _apply(settings.git, _section(config, "git"))
    _apply_env(settings, os.environ if env is None else env)
    if settings.adaptive.max_batch < settings.adaptive.min_batch:
        settings.adaptive.max_batch = settings.adaptive.min_batch
    return settings


def load_settings(
    source: Path | str | Mapping[str, Any] | None = None,
    *,
    env: Mapping[str, str] | None = None,
) -> AgentSettings:
    """Load settings from a YAML path, a mapping, or defaults when ``None``."""
    if source is None:
        return settings_from_mapping({}, env=env)
    if isinstance(source, Mapping):
        return settings_from_mapping(source, env=env)

    path = Path(source)
    try:
        with path.open("r", encoding="utf-8") as handle:
            loaded = yaml.safe_load(handle)
    except FileNotFoundError:
        return settings_from_mapping({}, env=env)
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config {path}: {error}") from error

    if loaded is None:
        loaded = {}
    if not isinstance(loaded, Mapping):
        raise ConfigError("Configuration must be a mapping at the top level.")
    return settings_from_mapping(loaded, env=env)


__all__ = [
    "AdaptiveSettings",
    "AgentSettings",
    "ConfigError",
    "ContextSettings",
    "DiffSettings",
    "GitSettings",
    "MemorySettings",
    "TerminationSettings",
    "load_settings",
    "settings_from_mapping",
]
