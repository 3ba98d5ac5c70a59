"""Configuration schema using Pydantic."""

from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings

ApprovalMode = Literal["always_allow", "always_ask", "always_deny"]


def _split_list(value: Any) -> Any:
    """Accept comma-separated strings (env vars) for list fields."""
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


class ChannelAccessConfig(BaseModel):
    """Who may talk to the agent on a channel."""
    # "str" admits raw comma-separated env values; the validator always yields a list
    allowed_dms: list[str] | str = Field(default_factory=list)  # Sender/chat ids, or "*" for all
    allowed_groups: list[str] | str = Field(default_factory=list)  # Group chat ids, or "*" for all
    respond_to_mentions_only: bool = True

    @field_validator("allowed_dms", "allowed_groups", mode="before")
    @classmethod
    def parse_lists(cls, value: Any) -> Any:
        return _split_list(value)


class WhatsAppConfig(ChannelAccessConfig):
    """WhatsApp channel configuration."""
    enabled: bool = False
    bridge_url: str = "ws://127.0.0.1:3001"
    bridge_auth_token: str = ""
    reconnect_delay_s: float = 5.0


class TelegramConfig(ChannelAccessConfig):
    """Telegram channel configuration."""
    enabled: bool = False
    token: str = ""  # Bot token from @BotFather
    proxy: str | None = None  # HTTP/SOCKS5 proxy URL, e.g. "socks5://127.0.0.1:1080"


class ChannelsConfig(BaseModel):
    """Configuration for chat channels."""
    whatsapp: WhatsAppConfig = Field(default_factory=WhatsAppConfig)
    telegram: TelegramConfig = Field(default_factory=TelegramConfig)


class ToolApprovalConfig(BaseModel):
    """Per-tool approval policy for backend tool calls."""

    default: ApprovalMode = "always_allow"
    rules: dict[str, ApprovalMode] = Field(
        default_factory=lambda: {
            "Bash": "always_ask",
            "Write": "always_ask",
            "Edit": "always_ask",
        }
    )

    def mode_for(self, tool_name: str) -> ApprovalMode:
        """Approval mode for a tool, case-insensitive, matching MCP-prefixed names by suffix."""
        rules = {name.lower(): mode for name, mode in self.rules.items()}
        name = tool_name.lower()
        if name in rules:
            return rules[name]
        short = name.rsplit("__", 1)[-1]
        return rules.get(short, self.default)


class AgentConfig(BaseModel):
    """Agent identity and run behavior."""
    agent_id: str = "clawgate"
    workspace: str = "~/.clawgate/workspace"
    provider: str = "claude"  # "claude" | "opencode" | "litellm"
    system_prompt: str = ""  # Extra instructions appended to the built-in prompt
    timeout_seconds: int = Field(default=600, ge=1)
    approval_timeout_s: float = Field(default=120.0, gt=0)
    selection_timeout_s: float = Field(default=30.0, gt=0)
    approvals: ToolApprovalConfig = Field(default_factory=ToolApprovalConfig)


class ClaudeProviderConfig(BaseModel):
    """Claude Agent SDK backend."""
    model: str | None = None
    permission_mode: str = "default"
    allowed_tools: list[str] = Field(
        default_factory=lambda: ["Read", "Write", "Edit", "Bash", "Glob", "Grep"]
    )
    max_turns: int = 100


class OpencodeProviderConfig(BaseModel):
    """Local opencode server backend."""
    model: str = "opencode/gpt-5-nano"
    hostname: str = "127.0.0.1"
    port: int = 4097
    binary: str = "opencode"
    use_existing_server: bool = False
    existing_server_url: str = ""
    startup_timeout_s: float = 20.0


class LiteLLMProviderConfig(BaseModel):
    """Any OpenAI-compatible endpoint through LiteLLM."""
    model: str = "anthropic/claude-sonnet-4-5"
    models: list[str] = Field(default_factory=list)  # Extra entries for /model
    api_key: str = ""
    api_base: str | None = None
    max_tokens: int = 4096
    temperature: float = 0.7
    max_tool_iterations: int = 20
    max_history_messages: int = 50


class ProvidersConfig(BaseModel):
    """Configuration for backend providers."""
    claude: ClaudeProviderConfig = Field(default_factory=ClaudeProviderConfig)
    opencode: OpencodeProviderConfig = Field(default_factory=OpencodeProviderConfig)
    litellm: LiteLLMProviderConfig = Field(default_factory=LiteLLMProviderConfig)


class GatewayConfig(BaseModel):
    """Gateway HTTP status server configuration."""
    host: str = "0.0.0.0"
    port: int = 4096


class CronConfig(BaseModel):
    """Scheduler configuration."""
    enabled: bool = True
    store_path: str = ""  # Defaults to ~/.clawgate/cron/jobs.json
    max_sleep_s: float = 30.0


class Config(BaseSettings):
    """Root configuration for clawgate."""
    agent: AgentConfig = Field(default_factory=AgentConfig)
    channels: ChannelsConfig = Field(default_factory=ChannelsConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    cron: CronConfig = Field(default_factory=CronConfig)

    @property
    def workspace_path(self) -> Path:
        """Get expanded workspace path."""
        return Path(self.agent.workspace).expanduser()

    def cron_store_path(self) -> Path:
        """Path of the persisted job store."""
        if self.cron.store_path:
            return Path(self.cron.store_path).expanduser()
        return Path.home() / ".clawgate" / "cron" / "jobs.json"

    class Config:
        env_prefix = "CLAWGATE_"
        env_nested_delimiter = "__"
