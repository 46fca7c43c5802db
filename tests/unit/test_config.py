from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from autopatch.config import AgentSettings, ConfigError, load_settings, settings_from_mapping


def test_defaults_when_no_source() -> None:
    settings = load_settings(env={})

    assert settings.diff.max_bytes == 64_000
    assert settings.diff.large_file_line_threshold == 800
    assert settings.adaptive.max_batch == 12
    assert settings.termination.required_confidence == 0.94
    assert settings.memory.min_salience_for_retention == 0.42
    assert settings.git.commit_author_name == "AI Agent"
    assert settings.git.branch_template == "ai/issue-{issue}-agent"


def test_yaml_sections_are_coerced(tmp_path: Path) -> None:
    config_path = tmp_path / "autopatch.yaml"
    config_path.write_text(
        yaml.safe_dump(
            {
                "diff": {"max_bytes": "32000", "strict_hunk_extents": "off", "unknown": 1},
                "adaptive": {"confidence_increase_per_success": 0.05, "min_batch": "two"},
                "git": {"workspace_root": str(tmp_path / "ws"), "auto_pr_create": False},
                "memory": "not a mapping",
            }
        ),
        encoding="utf-8",
    )

    settings = load_settings(config_path, env={})

    assert settings.diff.max_bytes == 32_000
    assert settings.diff.strict_hunk_extents is False
    assert settings.adaptive.confidence_increase_per_success == 0.05
    assert settings.adaptive.min_batch == 1
    assert settings.git.workspace_root == tmp_path / "ws"
    assert settings.git.auto_pr_create is False
    assert settings.memory.compression_every == 5


def test_environment_overrides_win(tmp_path: Path) -> None:
    env = {
        "AUTOPATCH_MAX_DIFF_BYTES": "1000",
        "AUTOPATCH_REFINE_MAX_ITERATIONS": "5",
        "AUTOPATCH_MIN_BATCH": "4",
        "AUTOPATCH_MAX_BATCH": "2",
        "AGENT_WORK_ROOT": str(tmp_path),
        "AUTOPATCH_AUTO_PR": "no",
    }

    settings = settings_from_mapping({"diff": {"max_bytes": 5}}, env=env)

    assert settings.diff.max_bytes == 1000
    assert settings.diff.refine_max_iterations == 5
    assert settings.adaptive.min_batch == 4
    assert settings.adaptive.max_batch == 4
    assert settings.git.workspace_root == tmp_path
    assert settings.git.auto_pr_create is False


def test_missing_file_yields_defaults(tmp_path: Path) -> None:
    assert load_settings(tmp_path / "absent.yaml", env={}) == AgentSettings()


def test_non_mapping_document_is_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "bad.yaml"
    config_path.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(ConfigError):
        load_settings(config_path, env={})


def test_invalid_yaml_is_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "broken.yaml"
    config_path.write_text("diff: [unclosed\n", encoding="utf-8")

    with pytest.raises(ConfigError):
        load_settings(config_path, env={})
