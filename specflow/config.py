"""Three-layer config loading and merging."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


CONFIG_DIR = ".specflow"


# ---------------------------------------------------------------------------
# Config dataclasses
# ---------------------------------------------------------------------------

@dataclass
class ExtractionConfig:
    # normalised heading -> section kind, merged over the built-in table
    heading_aliases: dict[str, str] = field(default_factory=dict)


@dataclass
class PlanningConfig:
    grouping: str = "requirement"  # "requirement" | "section"
    max_estimate: int = 8
    words_per_point: int = 25
    stages: dict[str, list[str]] = field(default_factory=lambda: {
        "setup": ["setup", "foundation", "scaffolding", "prerequisites"],
        "core": ["core", "implementation"],
        "polish": ["polish", "cleanup", "documentation", "hardening"],
    })


@dataclass
class ScenarioConfig:
    boundary_keywords: list[str] = field(default_factory=lambda: [
        "empty", "zero", "maximum", "minimum", "limit", "boundary",
        "at least", "at most", "exceed", "overflow", "timeout", "duplicate",
    ])
    validation_keywords: list[str] = field(default_factory=lambda: [
        "invalid", "reject", "validate", "validation", "malformed",
        "missing", "must not", "error",
    ])


@dataclass
class NotifyConfig:
    webhook_url: str = ""
    events: list[str] = field(default_factory=lambda: [
        "task.failed", "task.scope_creep", "run.summary",
    ])


@dataclass
class LoggingConfig:
    level: str = "WARNING"


@dataclass
class Config:
    state_path: str = f"{CONFIG_DIR}/state.db"
    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)
    planning: PlanningConfig = field(default_factory=PlanningConfig)
    scenarios: ScenarioConfig = field(default_factory=ScenarioConfig)
    notify: NotifyConfig = field(default_factory=NotifyConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    project_root: str = ""


# ---------------------------------------------------------------------------
# Deep merge
# ---------------------------------------------------------------------------

def deep_merge(base: dict, override: dict) -> dict:
    """Field-level deep merge. Lists are replaced, None values ignored."""
    result = dict(base)
    for key, value in override.items():
        if value is None:
            continue
        if (
            key in result
            and isinstance(result[key], dict)
            and isinstance(value, dict)
        ):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


# ---------------------------------------------------------------------------
# Dict → Config mapping
# ---------------------------------------------------------------------------

def _dict_to_config(data: dict, project_root: str) -> Config:
    cfg = Config(project_root=project_root)

    if "state_path" in data:
        cfg.state_path = data["state_path"]

    if "extraction" in data and isinstance(data["extraction"], dict):
        aliases = data["extraction"].get("heading_aliases") or {}
        cfg.extraction = ExtractionConfig(
            heading_aliases={str(k).strip().lower(): str(v) for k, v in aliases.items()},
        )

    if "planning" in data and isinstance(data["planning"], dict):
        p = data["planning"]
        stages = p.get("stages")
        cfg.planning = PlanningConfig(
            grouping=p.get("grouping", cfg.planning.grouping),
            max_estimate=int(p.get("max_estimate", cfg.planning.max_estimate)),
            words_per_point=int(p.get("words_per_point", cfg.planning.words_per_point)),
        )
        if isinstance(stages, dict):
            cfg.planning.stages = {str(k): list(v or []) for k, v in stages.items()}

    if "scenarios" in data and isinstance(data["scenarios"], dict):
        s = data["scenarios"]
        cfg.scenarios = ScenarioConfig(
            boundary_keywords=s.get("boundary_keywords", cfg.scenarios.boundary_keywords),
            validation_keywords=s.get("validation_keywords", cfg.scenarios.validation_keywords),
        )

    if "notify" in data and isinstance(data["notify"], dict):
        n = data["notify"]
        cfg.notify = NotifyConfig(
            webhook_url=n.get("webhook_url", ""),
            events=n.get("events", cfg.notify.events),
        )

    if "logging" in data and isinstance(data["logging"], dict):
        cfg.logging = LoggingConfig(
            level=str(data["logging"].get("level", cfg.logging.level)).upper(),
        )

    return cfg


# ---------------------------------------------------------------------------
# Load config (3-layer)
# ---------------------------------------------------------------------------

def load_config(project_root: str | Path) -> Config:
    """Load and merge config from up to 3 layers.

    Priority (highest first):
      1. Environment variables (SPECFLOW_*)
      2. .specflow/local.config.yaml
      3. .specflow/config.yaml
    """
    project_root = Path(project_root)
    config_dir = project_root / CONFIG_DIR

    # Layer 1: base config
    base_path = config_dir / "config.yaml"
    base_data: dict = {}
    if base_path.exists():
        raw = base_path.read_text()
        parsed = yaml.safe_load(raw)
        if parsed is None:
            base_data = {}
        elif not isinstance(parsed, dict):
            raise ValueError(f"Invalid config.yaml: expected mapping, got {type(parsed).__name__}")
        else:
            base_data = parsed

    # Layer 2: local override
    local_path = config_dir / "local.config.yaml"
    local_data: dict = {}
    if local_path.exists():
        raw = local_path.read_text()
        parsed = yaml.safe_load(raw)
        if isinstance(parsed, dict):
            local_data = parsed

    merged = deep_merge(base_data, local_data)
    cfg = _dict_to_config(merged, str(project_root))

    # Layer 3: env vars (highest priority)
    env_level = os.environ.get("SPECFLOW_LOG_LEVEL")
    if env_level:
        cfg.logging.level = env_level.upper()

    env_webhook = os.environ.get("SPECFLOW_WEBHOOK_URL")
    if env_webhook:
        cfg.notify.webhook_url = env_webhook

    env_estimate = os.environ.get("SPECFLOW_MAX_ESTIMATE")
    if env_estimate:
        try:
            cfg.planning.max_estimate = int(env_estimate)
        except ValueError:
            raise ValueError(
                f"SPECFLOW_MAX_ESTIMATE must be an integer, got {env_estimate!r}"
            ) from None

    return cfg


def state_db_path(config: Config) -> Path:
    """Absolute location of the state database."""
    path = Path(config.state_path)
    if not path.is_absolute():
        path = Path(config.project_root or ".") / path
    return path
