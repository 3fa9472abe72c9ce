# ==============================
# Config Loader Tests
# ==============================
from __future__ import annotations

from pathlib import Path
from typing import Dict, Optional

import pytest

from tiller.config.loader import load_settings


def _repo(tmp_path: Path, *, agent_yaml: str = "", secrets_yaml: str = "", dotenv: str = "") -> Path:
    (tmp_path / "configs").mkdir()
    (tmp_path / "configs" / "agent.yaml").write_text(agent_yaml, encoding="utf-8")
    (tmp_path / "secrets").mkdir()
    (tmp_path / "secrets" / "secrets.yaml").write_text(secrets_yaml, encoding="utf-8")
    (tmp_path / ".env").write_text(dotenv, encoding="utf-8")
    return tmp_path


def _load(root: Path, env: Optional[Dict[str, str]] = None):
    settings, _ = load_settings(repo_root=str(root), env=env or {})
    return settings


def test_defaults_without_any_files(tmp_path) -> None:
    settings = _load(tmp_path)
    assert settings.agent.max_tool_iterations == 10
    assert settings.agent.approval_timeout_seconds == 300.0
    assert settings.retry.provider.max_attempts == 3
    assert settings.app.paths.repo_root == str(tmp_path.resolve())


def test_precedence_env_over_dotenv_over_yaml(tmp_path) -> None:
    root = _repo(
        tmp_path,
        agent_yaml="max_tool_iterations: 4\ntemperature: 0.5\n",
        dotenv="# local overrides\nTILLER__AGENT__MAX_TOOL_ITERATIONS=6\nexport TILLER__AGENT__STREAM=\"true\"\n",
    )

    from_dotenv = _load(root)
    assert from_dotenv.agent.max_tool_iterations == 6
    assert from_dotenv.agent.stream is True
    assert from_dotenv.agent.temperature == 0.5

    from_env = _load(root, {"TILLER__AGENT__MAX_TOOL_ITERATIONS": "8"})
    assert from_env.agent.max_tool_iterations == 8


def test_secrets_file_sits_below_dotenv(tmp_path) -> None:
    root = _repo(tmp_path, secrets_yaml="openai_api_key: from-secrets\n")
    assert _load(root).secrets.openai_api_key == "from-secrets"

    (root / ".env").write_text("TILLER__SECRETS__OPENAI_API_KEY=from-dotenv\n", encoding="utf-8")
    assert _load(root).secrets.openai_api_key == "from-dotenv"


def test_conventional_api_key_var_is_hydrated_into_provider(tmp_path) -> None:
    settings = _load(tmp_path, {"OPENAI_API_KEY": "sk-test"})
    assert settings.secrets.openai_api_key == "sk-test"
    assert settings.models.openai.api_key == "sk-test"


def test_env_values_are_coerced(tmp_path) -> None:
    settings = _load(
        tmp_path,
        {
            "TILLER__POLICIES__BLOCKED_TOOLS": "bash, http_request",
            "TILLER__AGENT__AUTO_APPROVE": "TRUE",
            "TILLER__RETRY__PROVIDER__JITTER": "0.25",
            "UNRELATED": "ignored",
        },
    )
    assert settings.policies.blocked_tools == ["bash", "http_request"]
    assert settings.agent.auto_approve is True
    assert settings.retry.provider.jitter == 0.25


def test_tool_env_overrides_are_strings_with_upper_case_names(tmp_path) -> None:
    settings = _load(tmp_path, {"TILLER__AGENT__TOOL_ENV__PAGER": "cat", "TILLER__AGENT__TOOL_ENV__RETRIES": "3"})
    assert settings.agent.tool_env == {"PAGER": "cat", "RETRIES": "3"}


def test_invalid_configuration_is_a_value_error(tmp_path) -> None:
    with pytest.raises(ValueError, match="Invalid configuration"):
        _load(tmp_path, {"TILLER__AGENT__MAX_TOOL_ITERATIONS": "0"})


def test_shipped_configs_load_with_block_keys(tmp_path) -> None:
    repo_root = Path(__file__).resolve().parents[2]
    settings, _ = load_settings(repo_root=str(repo_root), dotenv_file=str(tmp_path / "none.env"), env={})
    assert settings.agent.approval_timeout_seconds == 300.0
    assert settings.logging.file == "logs/tiller.log"
    assert settings.models.pricing["gpt-4o-mini"].output_per_million == 0.60
    assert settings.retry.storage.max_attempts == 5


def test_bare_and_wrapped_blocks_are_equivalent(tmp_path) -> None:
    wrapped = _repo(tmp_path, agent_yaml="agent:\n  max_tool_iterations: 7\n")
    assert _load(wrapped).agent.max_tool_iterations == 7
