"""Configuration schema using Pydantic."""

from pathlib import Path
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DiscordConfig(BaseModel):
    """Discord bot configuration."""
    token: str = ""  # Bot token from Discord Developer Portal
    application_id: str = ""  # Needed to sync slash commands
    allow_from: list[str] = Field(default_factory=list)  # Allowed user IDs; empty allows everyone
    max_attachment_mb: int = 20  # Max attachment size to download


class AnthropicConfig(BaseModel):
    """Agent backend credentials."""
    api_key: str = ""  # Exported as ANTHROPIC_API_KEY for the agent SDK


class ProjectsConfig(BaseModel):
    """Where project directories (each with a discord.json) live."""
    root: str = "~/projects"


class StorageConfig(BaseModel):
    """Persistent state locations."""
    sessions_db: str = "~/.cordbridge/data/sessions.db"
    error_log: str = "~/.cordbridge/data/errors.jsonl"


class StreamingConfig(BaseModel):
    """Live-output pacing."""
    edit_throttle_seconds: float = 1.0
    max_message_length: int = 1900
    keepalive_interval_seconds: float = 8.0  # Discord's typing indicator lasts ~10s
    max_queue_per_channel: int = 20


class ApprovalConfig(BaseModel):
    """Interactive approval wait budgets."""
    tool_timeout_seconds: float = 600.0
    question_timeout_seconds: float = 120.0
    preview_length: int = 500


class GatewayConfig(BaseModel):
    """Local diagnostics API."""
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 18790
    auth_token: str = ""  # Bearer token; API refuses requests while empty


class Config(BaseSettings):
    """Root configuration for cordbridge."""
    model_config = SettingsConfigDict(env_prefix="CORDBRIDGE_", env_nested_delimiter="__")

    discord: DiscordConfig = Field(default_factory=DiscordConfig)
    anthropic: AnthropicConfig = Field(default_factory=AnthropicConfig)
    projects: ProjectsConfig = Field(default_factory=ProjectsConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    streaming: StreamingConfig = Field(default_factory=StreamingConfig)
    approval: ApprovalConfig = Field(default_factory=ApprovalConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)

    @property
    def projects_root(self) -> Path:
        """Get expanded projects root."""
        return Path(self.projects.root).expanduser()

    @property
    def sessions_db_path(self) -> Path:
        return Path(self.storage.sessions_db).expanduser()

    @property
    def error_log_path(self) -> Path:
        return Path(self.storage.error_log).expanduser()

    def missing_required(self) -> list[str]:
        """Names of required settings that are still empty."""
        missing = []
        if not self.discord.token:
            missing.append("DISCORD_TOKEN")
        if not self.discord.application_id:
            missing.append("DISCORD_APPLICATION_ID")
        if not self.anthropic.api_key:
            missing.append("ANTHROPIC_API_KEY")
        return missing
