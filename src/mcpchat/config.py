"""Configuration settings for the application."""

from typing import (
    Dict,
    Literal,
)

from pydantic import (
    BaseModel,
    Field,
)
from pydantic_settings import BaseSettings

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful AI assistant. IMPORTANT RULES: 1) Call each tool ONLY ONCE per "
    "conversation. 2) After receiving tool results, IMMEDIATELY analyze and present them - do "
    "NOT call tools again. 3) If you already have tool results, answer based on that data. "
    "4) Never repeat tool calls. 5) Always end with a direct text response."
)


class McpServerConfig(BaseModel):
    """Connection details for one tool-providing MCP server."""

    name: str = ""
    type: Literal["internal", "external"] = "external"
    url: str | None = None  # external servers only
    enabled: bool = True
    timeout: float = 30.0  # seconds


def _default_servers() -> Dict[str, McpServerConfig]:
    return {
        "compressor_ai": McpServerConfig(name="Compressor AI", type="internal"),
    }


class Settings(BaseSettings):
    """Pydantic settings class for the application."""

    # Define the settings with default values and types
    # These will be loaded from environment variables or a .env file if not provided
    API_PORT: int = 8000
    DEBUG: bool = False
    DATA_DIR: str = "./data"
    LOG_LEVEL: str = "info"  # Options: debug, info, warning, error, critical

    # Completion endpoint (Jan, OpenAI compatible)
    COMPLETION_BACKEND: str = "jan"  # Options: jan, openai
    JAN_API_URL: str = "http://localhost:1337"
    JAN_AUTH_TOKEN: str | None = None
    JAN_MODEL: str = "llama3-8b-instruct"
    JAN_TIMEOUT: float = 300.0  # local inference can take minutes
    JAN_MAX_TOKENS: int = 4096
    JAN_TEMPERATURE: float = 0.7
    JAN_RETRIES: int = 2
    JAN_RETRY_DELAY_MS: int = 100

    # OpenAI SDK backend
    OPENAI_API_KEY: str | None = None
    OPENAI_BASE_URL: str | None = None

    # MCP tool servers
    MCP_SERVERS: Dict[str, McpServerConfig] = Field(default_factory=_default_servers)
    MCP_CACHE_ENABLED: bool = True
    MCP_CACHE_TTL: int = 3600  # seconds
    MCP_CACHE_KEY_PREFIX: str = "mcp_tools_"
    MCP_RETRY_ATTEMPTS: int = 3
    MCP_RETRY_DELAY_MS: int = 1000
    MCP_FAIL_SILENTLY: bool = False  # If True, continues without tools if a server fails

    # Orchestration loop
    MAX_ITERATIONS: int = 5
    DEFAULT_SYSTEM_PROMPT: str = DEFAULT_SYSTEM_PROMPT

    # Background jobs (async mode)
    JOB_WORKERS: int = 2
    JOB_TRIES: int = 3
    JOB_BACKOFF_SECONDS: float = 60.0

    class Config:
        """Configuration for Pydantic settings."""

        # Load environment variables from a .env file
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
