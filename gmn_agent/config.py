"""Configuration management for gmn-agent."""

from pathlib import Path

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.gmn-agent/config.yaml").expanduser()
DEFAULT_DB_PATH = Path("~/.gmn-agent/sessions.db").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"


class ModelConfig(BaseModel):
    """Model configuration."""

    default: str = "gemini-2.5-flash"
    available: list[str] = [
        "gemini-2.5-pro",
        "gemini-2.5-flash",
        "gemini-2.5-flash-lite",
    ]
    temperature: float | None = None
    max_output_tokens: int | None = None


class APIConfig(BaseModel):
    """Generation API endpoint configuration."""

    base_url: str = "https://cloudcode-pa.googleapis.com"
    api_version: str = "v1internal"
    project: str = ""
    api_key: str = ""
    timeout: float = 300.0


class MCPServerConfig(BaseModel):
    """A stdio MCP server launched as a child process."""

    command: str = ""
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    cwd: str = ""


class MCPConfig(BaseModel):
    """MCP client behaviour."""

    init_timeout: float = 30.0
    client_name: str = "gmn-agent"
    client_version: str = "0.1.0"
    protocol_version: str = "2024-11-05"


class ToolsConfig(BaseModel):
    """Built-in tool limits."""

    shell_timeout: float = 120.0
    max_output_chars: int = 10000
    max_read_lines: int = 2000


class SessionConfig(BaseModel):
    """Session configuration."""

    path: str = str(DEFAULT_DB_PATH)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for gmn-agent."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    api: APIConfig = Field(default_factory=APIConfig)
    mcp: MCPConfig = Field(default_factory=MCPConfig)
    mcp_servers: dict[str, MCPServerConfig] = Field(default_factory=dict)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="GMN_",
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
        """Load configuration from YAML.

        YAML values win over ``GMN_`` env vars; env vars fill the keys YAML leaves unset.
        """
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)


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
