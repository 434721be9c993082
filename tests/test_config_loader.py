#!/usr/bin/env python3
"""
Tests for ConfigLoader environment substitution and defaults.
"""

import pytest

from variation_qa.config_loader import ITERATION_DEFAULTS, ConfigLoader


CONFIG = """
api_endpoint: "${VQA_TEST_ENDPOINT:-http://localhost:8080}"

judge_model:
  provider: openai
  model_name: gpt-4o
  api_key: "${VQA_TEST_KEY:-}"

iteration:
  max_iterations: 4
  visual_iteration_cap: null

execution:
  timeout: 60

reporting:
  reports_dir: out
"""


def write_config(tmp_path, text=CONFIG):
    path = tmp_path / "config.yml"
    path.write_text(text)
    return path


def test_defaults_are_substituted(tmp_path, monkeypatch):
    monkeypatch.delenv("VQA_TEST_ENDPOINT", raising=False)
    monkeypatch.delenv("VQA_TEST_KEY", raising=False)

    config = ConfigLoader(write_config(tmp_path))

    assert config.get_api_endpoint() == "http://localhost:8080"
    assert config.get_judge_config()["api_key"] == ""


def test_environment_overrides_default(tmp_path, monkeypatch):
    monkeypatch.setenv("VQA_TEST_ENDPOINT", "http://browser:9000")
    monkeypatch.setenv("VQA_TEST_KEY", "sk-test")

    config = ConfigLoader(write_config(tmp_path))

    assert config.get_api_endpoint() == "http://browser:9000"
    assert config.get_model_config("judge_model")["api_key"] == "sk-test"


def test_missing_required_variable_raises(tmp_path, monkeypatch):
    monkeypatch.delenv("VQA_TEST_REQUIRED", raising=False)

    with pytest.raises(ValueError):
        ConfigLoader(write_config(tmp_path, 'api_endpoint: "${VQA_TEST_REQUIRED}"\n'))


def test_iteration_settings_merge_over_defaults(tmp_path):
    settings = ConfigLoader(write_config(tmp_path)).get_iteration_config()

    assert settings["max_iterations"] == 4
    assert settings["visual_iteration_cap"] is None
    assert settings["quick_max_iterations"] == ITERATION_DEFAULTS["quick_max_iterations"]
    assert settings["honor_judge_stop_hint"] is False


def test_execution_and_reporting(tmp_path):
    config = ConfigLoader(write_config(tmp_path))

    assert config.get_timeout() == 60
    assert config.get_request_delay() == 1
    assert config.get_reports_dir() == tmp_path / "out"


def test_unknown_model_tier_and_missing_file(tmp_path):
    config = ConfigLoader(write_config(tmp_path))

    with pytest.raises(ValueError):
        config.get_model_config("planner_model")
    with pytest.raises(FileNotFoundError):
        ConfigLoader(tmp_path / "absent.yml")


def test_env_file_next_to_config_is_loaded(tmp_path, monkeypatch):
    monkeypatch.delenv("VQA_TEST_KEY", raising=False)
    (tmp_path / ".env").write_text("VQA_TEST_KEY=from-dotenv\n")

    config = ConfigLoader(write_config(tmp_path))

    assert config.get_judge_config()["api_key"] == "from-dotenv"
