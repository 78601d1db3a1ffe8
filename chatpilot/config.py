"""Configuration management for chatpilot."""

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from chatpilot.models import ApprovalPolicy, SwarmLimits


# Paths
DEFAULT_CONFIG_PATH = Path("~/.chatpilot/config.yaml").expanduser()
DEFAULT_DB_PATH = Path("~/.chatpilot/chat.db").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"


class ModelConfig(BaseModel):
    """Chat model selection."""

    provider: str = "ollama"
    model: str = ""
    temperature: float = 0.7
    max_tokens: int = 4096
    api_key: str = ""
    base_url: str = ""


class RuleConfig(BaseModel):
    """Operator rule appended to the system prompt of the listed modes."""

    content: str
    modes: list[Literal["ask", "query", "agent"]] = Field(
        default_factory=lambda: ["ask", "query", "agent"]
    )
    enabled: bool = True


class PromptsConfig(BaseModel):
    """Custom system prompt templates and rules."""

    ask: str = ""
    query: str = ""
    agent: str = ""
    rules: list[RuleConfig] = Field(default_factory=list)

    def custom_templates(self) -> dict[str, str]:
        return {"ask": self.ask, "query": self.query, "agent": self.agent}


class QueryConfig(BaseModel):
    """Knowledge-base retrieval settings."""

    provider: str = "onlysaid-kb"
    base_url: str = "http://127.0.0.1:8000"
    kb_aware_providers: list[str] = Field(
        default_factory=lambda: ["lightrag", "onlysaid-kb"]
    )
    query_engine: str = "simple"
    query_engine_model: str = ""
    embedding_model: str = "none"
    top_k: int = 5
    preferred_language: str = "en"


class AgentLimitsConfig(BaseModel):
    """Swarm limits handed to the task orchestrator."""

    max_iterations: int = 20
    max_parallel_agents: int = 10
    max_swarm_size: int = 5
    max_active_swarms: int = 3
    max_conversation_length: int = 50

    def to_limits(self) -> SwarmLimits:
        return SwarmLimits(**self.model_dump())


class AgentConfig(BaseModel):
    """Agent (delegated task) mode settings."""

    temperature: float = 0.7
    history_window: int = 10
    cleanup_delay_seconds: float = 30.0
    human_in_the_loop: bool = True
    limits: AgentLimitsConfig = Field(default_factory=AgentLimitsConfig)


class ToolServerConfig(BaseModel):
    """A tool-execution server (MCP over stdio or streamable HTTP)."""

    id: str
    name: str = ""
    transport: Literal["stdio", "http"] = "stdio"
    command: str = ""
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    cwd: str = ""
    url: str = ""
    headers: dict[str, str] = Field(default_factory=dict)
    timeout_seconds: int = 30
    enabled: bool = True
    auto_approve: bool = False
    result_convention: Literal["standard", "lenient", "mcp"] = "lenient"
    # Declared tool entries; servers without declarations are discovered at runtime.
    tools: list[dict[str, Any]] = Field(default_factory=list)

    @property
    def display_name(self) -> str:
        return self.name or self.id


class StoreConfig(BaseModel):
    """Message store configuration."""

    storage: Literal["memory", "sqlite"] = "sqlite"
    path: str = str(DEFAULT_DB_PATH)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"
    # Keys whose values are replaced before a record is rendered.
    redact_fields: list[str] = Field(
        default_factory=lambda: ["api_key", "authorization", "token", "password"]
    )
    # Longer string values (tool results, arguments) are cut; 0 keeps them whole.
    max_field_length: int = 2000


class Config(BaseSettings):
    """Main configuration for chatpilot."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    prompts: PromptsConfig = Field(default_factory=PromptsConfig)
    query: QueryConfig = Field(default_factory=QueryConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    tool_servers: list[ToolServerConfig] = Field(default_factory=list)
    store: StoreConfig = Field(default_factory=StoreConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="CHATPILOT_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls) -> "Config":
        """Load configuration; environment variables override YAML values."""
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def get_tool_server(self, server_id: str | None) -> ToolServerConfig | None:
        """Find an enabled tool server by id (or, failing that, by name)."""
        wanted = (server_id or "").strip()
        if not wanted:
            return None
        for server in self.tool_servers:
            if not server.enabled:
                continue
            if server.id == wanted or server.name == wanted:
                return server
        return None

    def approval_policy(self) -> ApprovalPolicy:
        """Snapshot of per-server auto-approval switches."""
        return ApprovalPolicy(
            auto_approve={s.id: s.auto_approve for s in self.tool_servers if s.enabled}
        )


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
