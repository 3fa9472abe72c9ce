# ==============================
# Config Schemas (Pydantic)
# ==============================
"""
Pydantic settings models for tiller/.

Notes:
- Keep these schemas stable: many modules will depend on them.
- No env reads here. No file IO here. Pure types + defaults.
- loader.py builds a single Settings object with precedence merging.

Precedence (implemented in loader.py):
env > .env > secrets/secrets.yaml > configs/*.yaml > defaults
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ==============================
# App Settings
# ==============================


class PathsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    repo_root: str = Field(default=".", description="Repo root (relative or absolute)")
    configs_dir: str = Field(default="configs", description="Configs directory")
    secrets_dir: str = Field(default="secrets", description="Secrets directory")
    storage_dir: str = Field(default="storage", description="Runtime storage directory")


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    env: str = Field(default="local", description="Environment name (local/stage/prod)")
    debug: bool = Field(default=False)
    working_directory: str = Field(default=".", description="Directory tools operate in")
    paths: PathsConfig = Field(default_factory=PathsConfig)


# ==============================
# Models Settings
# ==============================


class OpenAIConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    api_base: Optional[str] = Field(default=None)
    api_key: Optional[str] = Field(default=None, description="Resolved via loader from env/secrets only")
    org_id: Optional[str] = Field(default=None, description="Optional OpenAI org id")
    timeout_seconds: float = Field(default=60.0)


class ModelPricing(BaseModel):
    model_config = ConfigDict(extra="forbid")

    input_per_million: float = Field(default=0.0, description="USD per 1M input tokens")
    output_per_million: float = Field(default=0.0, description="USD per 1M output tokens")


class ModelRoutingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    default_provider: str = Field(default="openai", description="openai|echo")
    default_model: str = Field(default="gpt-4o-mini")


class ModelsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    routing: ModelRoutingConfig = Field(default_factory=ModelRoutingConfig)
    openai: OpenAIConfig = Field(default_factory=OpenAIConfig)
    pricing: Dict[str, ModelPricing] = Field(default_factory=dict)


# ==============================
# Agent Settings
# ==============================


class AgentConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_tool_iterations: int = Field(default=10, ge=1)
    max_tokens: int = Field(default=4096, ge=1)
    temperature: float = Field(default=0.2)
    system_prompt: Optional[str] = Field(default=None, description="Overrides the built-in system prompt")
    stream: bool = Field(default=False, description="Stream provider output when supported")

    auto_approve: bool = Field(default=False)
    tool_timeout_seconds: float = Field(default=30.0, gt=0)
    approval_timeout_seconds: float = Field(default=300.0, gt=0)
    tool_env: Dict[str, str] = Field(default_factory=dict, description="Extra environment for subprocess tools")

    @field_validator("tool_env", mode="before")
    @classmethod
    def _stringify_env(cls, v: object) -> object:
        # TILLER__AGENT__TOOL_ENV__PAGER=cat arrives as {"pager": "cat"}; numbers arrive coerced
        if isinstance(v, dict):
            return {str(k).upper(): str(val) for k, val in v.items()}
        return v


# ==============================
# Retry Settings
# ==============================


class RetryConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_attempts: int = Field(default=3, ge=0, description="Retries after the first call")
    base_delay_ms: int = Field(default=100, ge=0)
    max_delay_ms: int = Field(default=30_000, ge=0)
    multiplier: float = Field(default=2.0, ge=1.0)
    jitter: float = Field(default=0.1, ge=0.0, le=1.0)


def _storage_retry() -> RetryConfig:
    return RetryConfig(max_attempts=5, base_delay_ms=50, max_delay_ms=5_000)


class RetrySettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    provider: RetryConfig = Field(default_factory=RetryConfig)
    storage: RetryConfig = Field(default_factory=_storage_retry)


# ==============================
# Policies / Governance Settings
# ==============================


DEFAULT_READ_ONLY_COMMANDS: List[str] = [
    "git status",
    "git log",
    "git diff",
    "git show",
    "git branch",
    "git remote",
    "ls",
    "cat",
    "head",
    "tail",
    "less",
    "more",
    "grep",
    "find",
    "tree",
    "file",
    "wc",
    "pwd",
    "whoami",
    "hostname",
    "date",
    "echo",
    "which",
    "type",
    "env",
    "printenv",
    "df",
    "du",
]


class PoliciesConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enforce: bool = Field(default=True)

    # Allow/deny lists (names resolved by the tool registry)
    allowed_tools: List[str] = Field(default_factory=list)
    blocked_tools: List[str] = Field(default_factory=list)

    plan_mode_blocked_capabilities: List[str] = Field(
        default_factory=lambda: ["write_files", "execute_shell", "system_modification"],
        description="Capabilities refused while the session is in Plan mode.",
    )
    read_only_commands: List[str] = Field(
        default_factory=lambda: list(DEFAULT_READ_ONLY_COMMANDS),
        description="Shell command prefixes allowed in Plan mode.",
    )


# ==============================
# Logging Settings
# ==============================


class LoggingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    level: str = Field(default="INFO")
    redact: bool = Field(default=True)
    redact_patterns: List[str] = Field(default_factory=list)
    console: bool = Field(default=True, description="Mirror bus events to the log")
    file: Optional[str] = Field(default=None, description="Optional log file (relative to storage_dir)")


# ==============================
# Secrets Settings
# ==============================


class SecretsConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    # Common secret surfaces. Keep optional; loader fills.
    openai_api_key: Optional[str] = Field(default=None)
    memory_db_path: Optional[str] = Field(default=None)


# ==============================
# Top-Level Settings
# ==============================


class Settings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    app: AppConfig = Field(default_factory=AppConfig)
    models: ModelsConfig = Field(default_factory=ModelsConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    policies: PoliciesConfig = Field(default_factory=PoliciesConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    secrets: SecretsConfig = Field(default_factory=SecretsConfig)

    def repo_root_path(self) -> Path:
        return Path(self.app.paths.repo_root).expanduser().resolve()

    def working_directory_path(self) -> Path:
        wd = Path(self.app.working_directory).expanduser()
        if not wd.is_absolute():
            wd = self.repo_root_path() / wd
        return wd.resolve()
