from __future__ import annotations

from pathlib import Path

import pytest

from taskforge.config import DEFAULT_CONFIG, ConfigError, Settings, load_config


def test_missing_file_yields_defaults(tmp_path: Path) -> None:
    assert load_config(tmp_path / "config.yaml") == DEFAULT_CONFIG
    assert load_config(None) == DEFAULT_CONFIG


def test_yaml_overrides_merge_over_defaults(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(
        "execution:\n  max_retries: 5\n  max_rounds:\n    execute: 3\nroles:\n  coder:\n    max_files_changed: 2\n",
        encoding="utf-8",
    )

    settings = Settings.from_mapping(load_config(path))

    assert settings.execution.max_retries == 5
    assert settings.execution.max_rounds("execute") == 3
    assert settings.execution.max_rounds("plan") == 20
    assert settings.role("coder").max_files_changed == 2
    assert "write_file" in settings.role("coder").allowed_tools
    assert settings.store.workspace == ".taskforge"


@pytest.mark.parametrize("text", ["models: [unclosed\n", "- just\n- a list\n"])
def test_malformed_config_raises(tmp_path: Path, text: str) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(text, encoding="utf-8")

    with pytest.raises(ConfigError):
        load_config(path)


def test_unknown_role_lists_known_roles() -> None:
    with pytest.raises(ConfigError, match="known roles: coder, critic"):
        Settings.from_mapping().role("wizard")


def test_unknown_model_profile_is_an_error() -> None:
    settings = Settings.from_mapping({"models": {"execute": "mystery-model"}})

    with pytest.raises(ConfigError):
        settings.models.resolve("coder", "execute")


def test_non_positive_round_budget_is_rejected() -> None:
    with pytest.raises(ConfigError):
        Settings.from_mapping({"execution": {"max_rounds": {"execute": 0}}})


def test_api_key_resolution(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.setenv("TASKFORGE_OPENAI_API_KEY", "fallback-key")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "anthropic-key")
    settings = Settings.from_mapping({"models": {"providers": {"openai": {"api_key": "  "}}}})

    assert settings.models.api_key("openai") == "fallback-key"
    assert settings.models.api_key("anthropic") == "anthropic-key"

    explicit = Settings.from_mapping({"models": {"providers": {"openai": {"api_key": "inline"}}}})
    assert explicit.models.api_key("openai") == "inline"
