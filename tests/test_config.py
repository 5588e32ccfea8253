"""Tests for three-layer config loading and merging."""

from pathlib import Path

import pytest
from specflow.config import Config, deep_merge, load_config, state_db_path


# --- Three-layer merge ---

def test_load_default_config(tmp_project):
    """Load config.yaml correctly."""
    config = load_config(tmp_project)
    assert config.planning.grouping == "requirement"
    assert config.planning.max_estimate == 8
    assert config.notify.events == ["task.failed"]
    assert config.logging.level == "WARNING"
    assert config.project_root == str(tmp_project)


def test_local_overrides_base(tmp_project):
    """local.config.yaml overrides config.yaml field-by-field."""
    (tmp_project / ".specflow" / "local.config.yaml").write_text("""\
planning:
  max_estimate: 3
logging:
  level: debug
""")
    config = load_config(tmp_project)
    assert config.planning.max_estimate == 3
    assert config.logging.level == "DEBUG"
    # Un-overridden fields keep original values
    assert config.planning.words_per_point == 25
    assert config.planning.grouping == "requirement"


def test_env_var_overrides_all(tmp_project, monkeypatch):
    """Environment variables have highest priority."""
    (tmp_project / ".specflow" / "local.config.yaml").write_text("""\
notify:
  webhook_url: https://local.example.com/hook
""")
    monkeypatch.setenv("SPECFLOW_WEBHOOK_URL", "https://env.example.com/hook")
    monkeypatch.setenv("SPECFLOW_LOG_LEVEL", "info")
    monkeypatch.setenv("SPECFLOW_MAX_ESTIMATE", "5")
    config = load_config(tmp_project)
    assert config.notify.webhook_url == "https://env.example.com/hook"
    assert config.logging.level == "INFO"
    assert config.planning.max_estimate == 5


def test_env_max_estimate_must_be_integer(tmp_project, monkeypatch):
    """A non-integer SPECFLOW_MAX_ESTIMATE is a configuration error."""
    monkeypatch.setenv("SPECFLOW_MAX_ESTIMATE", "lots")
    with pytest.raises(ValueError, match="SPECFLOW_MAX_ESTIMATE"):
        load_config(tmp_project)


def test_heading_aliases_normalised(tmp_project):
    """Configured heading aliases are lower-cased."""
    (tmp_project / ".specflow" / "config.yaml").write_text("""\
extraction:
  heading_aliases:
    Must Haves: functional
""")
    config = load_config(tmp_project)
    assert config.extraction.heading_aliases == {"must haves": "functional"}


def test_stages_replaced(tmp_project):
    """A configured stage table replaces the default one."""
    (tmp_project / ".specflow" / "config.yaml").write_text("""\
planning:
  stages:
    setup: [setup]
    core: [core]
""")
    config = load_config(tmp_project)
    assert config.planning.stages == {"setup": ["setup"], "core": ["core"]}


# --- deep merge edge cases ---

def test_deep_merge_nested_dicts():
    """deep merge: nested dicts are merged field-by-field."""
    base = {"a": {"x": 1, "y": 2}, "b": 10}
    override = {"a": {"y": 99, "z": 3}}
    result = deep_merge(base, override)
    assert result == {"a": {"x": 1, "y": 99, "z": 3}, "b": 10}


def test_deep_merge_list_replaces():
    """deep merge: lists are replaced entirely (not appended)."""
    base = {"events": ["task.failed"]}
    override = {"events": ["run.summary", "task.scope_creep"]}
    result = deep_merge(base, override)
    assert result["events"] == ["run.summary", "task.scope_creep"]


def test_deep_merge_none_ignored():
    """deep merge: None values do not override."""
    result = deep_merge({"grouping": "section"}, {"grouping": None})
    assert result["grouping"] == "section"


# --- Config validation ---

def test_missing_config_yaml_uses_defaults(tmp_path):
    """No config.yaml → all defaults."""
    (tmp_path / ".specflow").mkdir()
    config = load_config(tmp_path)
    assert config.planning.max_estimate == 8
    assert "run.summary" in config.notify.events


def test_invalid_yaml_raises(tmp_project):
    """Invalid YAML syntax → clear error."""
    (tmp_project / ".specflow" / "config.yaml").write_text("{{invalid yaml")
    with pytest.raises(Exception):
        load_config(tmp_project)


def test_non_mapping_config_raises(tmp_project):
    """A top-level list is not a valid config."""
    (tmp_project / ".specflow" / "config.yaml").write_text("- a\n- b\n")
    with pytest.raises(ValueError, match="expected mapping"):
        load_config(tmp_project)


def test_unknown_fields_ignored(tmp_project):
    """Unknown fields in config don't raise errors."""
    (tmp_project / ".specflow" / "config.yaml").write_text("""\
state_path: .specflow/other.db
some_future_field: true
""")
    config = load_config(tmp_project)
    assert config.state_path == ".specflow/other.db"


# --- State path ---

def test_state_db_path_relative(tmp_project):
    """Relative state paths resolve against the project root."""
    config = load_config(tmp_project)
    assert state_db_path(config) == Path(tmp_project) / ".specflow" / "state.db"


def test_state_db_path_absolute(tmp_path):
    """Absolute state paths are used as-is."""
    target = tmp_path / "elsewhere.db"
    assert state_db_path(Config(state_path=str(target))) == target
