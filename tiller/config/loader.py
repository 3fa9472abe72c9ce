# ==============================
# Config Loader (only env reader)
# ==============================
"""
Builds the validated Settings for a tiller checkout.

Rules:
- This is the ONLY module that reads os.environ, .env and secrets/secrets.yaml.
- Everything else receives a Settings object.

Precedence (highest first):
  process env > .env > secrets/secrets.yaml > configs/<block>.yaml > model defaults

Env overrides:
  TILLER__<BLOCK>__<FIELD>[__<FIELD>...]=value
  e.g. TILLER__AGENT__MAX_TOOL_ITERATIONS=20, TILLER__POLICIES__BLOCKED_TOOLS=bash,http_request
  Values are coerced: true/false, integers, decimals, then comma lists.

Every input (paths, env mapping) can be injected so tests never touch the real environment.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml
from pydantic import ValidationError

from tiller.config.schema import Settings

ENV_PREFIX = "TILLER__"

# Each file configs/<name>.yaml fills the Settings block of the same name.
CONFIG_FILES = ("app", "models", "agent", "retry", "policies", "logging")

# Well-known variables mapped into the secrets block when the block leaves them empty.
CONVENTIONAL_SECRETS = {"OPENAI_API_KEY": "openai_api_key"}


# ==============================
# Sources
# ==============================


def read_yaml_mapping(path: Path) -> Dict[str, Any]:
    """Top-level mapping of a YAML file; {} for a missing, empty or non-mapping file."""
    if not path.is_file():
        return {}
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    return data if isinstance(data, dict) else {}


def parse_dotenv(path: Path) -> Dict[str, str]:
    """KEY=VALUE lines; comments, blanks and `export ` prefixes are tolerated."""
    if not path.is_file():
        return {}
    values: Dict[str, str] = {}
    for raw in path.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if key.startswith("export "):
            key = key[len("export ") :].strip()
        if key:
            values[key] = value.strip().strip("\"'")
    return values


# ==============================
# Merging
# ==============================


def merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Recursive merge; `override` wins on conflicts, nested dicts are merged key by key."""
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = merge(current, value)
        else:
            merged[key] = value
    return merged


def coerce_env_value(raw: str) -> Any:
    value = raw.strip()
    lowered = value.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    try:
        return int(value)
    except ValueError:
        pass
    if "." in value:
        try:
            return float(value)
        except ValueError:
            pass
    if "," in value and "://" not in value:
        return [part.strip() for part in value.split(",") if part.strip()]
    return value


def env_overrides(env: Mapping[str, str]) -> Dict[str, Any]:
    """Nested dict built from every TILLER__ variable (keys lower-cased)."""
    tree: Dict[str, Any] = {}
    for name, raw in env.items():
        if not name.startswith(ENV_PREFIX):
            continue
        segments: List[str] = [s.lower() for s in name[len(ENV_PREFIX) :].split("__")]
        if not all(segments):
            continue
        node = tree
        for segment in segments[:-1]:
            child = node.get(segment)
            if not isinstance(child, dict):
                child = node[segment] = {}
            node = child
        node[segments[-1]] = coerce_env_value(raw)
    return tree


# ==============================
# Public Loader API
# ==============================


def load_settings(
    *,
    repo_root: Optional[str] = None,
    configs_dir: Optional[str] = None,
    secrets_file: Optional[str] = None,
    dotenv_file: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
) -> Tuple[Settings, Dict[str, Any]]:
    """
    Load and validate Settings. Returns (settings, merged raw dict).

    Defaults: repo_root = cwd, configs under <repo_root>/configs, secrets at
    <repo_root>/secrets/secrets.yaml, dotenv at <repo_root>/.env, env = os.environ.
    Raises ValueError("Invalid configuration: ...") when validation fails.
    """
    root = Path(repo_root or os.getcwd()).expanduser().resolve()
    cfg_dir = root / (configs_dir or "configs")
    secrets_path = Path(secrets_file) if secrets_file else root / "secrets" / "secrets.yaml"
    dotenv_path = Path(dotenv_file) if dotenv_file else root / ".env"

    raw: Dict[str, Any] = {name: _block(name, read_yaml_mapping(cfg_dir / f"{name}.yaml")) for name in CONFIG_FILES}
    raw["secrets"] = _block("secrets", read_yaml_mapping(secrets_path))

    # .env only fills gaps left by the real environment
    effective_env: Dict[str, str] = {**parse_dotenv(dotenv_path), **(os.environ if env is None else env)}

    for var, field in CONVENTIONAL_SECRETS.items():
        if effective_env.get(var) and not raw["secrets"].get(field):
            raw["secrets"][field] = effective_env[var]

    raw = merge(raw, env_overrides(effective_env))
    raw = merge(raw, {"app": {"paths": {"repo_root": str(root)}}})

    try:
        settings = Settings.model_validate(raw)
    except ValidationError as e:
        raise ValueError(f"Invalid configuration: {e}") from e

    return _hydrate_provider_secrets(settings), raw


def _block(name: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """Accept both `agent: {...}` and bare field mappings in configs/agent.yaml."""
    if set(data) == {name} and isinstance(data[name], dict):
        return dict(data[name])
    return data


def _hydrate_provider_secrets(settings: Settings) -> Settings:
    """Copy secrets into provider configs that were not given a key directly."""
    if settings.models.openai.api_key or not settings.secrets.openai_api_key:
        return settings
    openai = settings.models.openai.model_copy(update={"api_key": settings.secrets.openai_api_key})
    models = settings.models.model_copy(update={"openai": openai})
    return settings.model_copy(update={"models": models})
