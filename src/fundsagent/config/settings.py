"""
Configuration settings for FundsAgent.

This module defines the application settings using Pydantic Settings with
support for environment variables and a local .env file. Every upstream
credential is optional: a missing key marks that backend as unavailable
instead of failing application startup.
"""

from typing import Optional, List
from pydantic import Field, validator
from pydantic_settings import BaseSettings


class LLMBackendSettings(BaseSettings):
    """Shared configuration for an OpenAI-compatible chat completion backend."""

    api_key: Optional[str] = Field(default=None, description="API key; backend is unavailable when unset")
    base_url: Optional[str] = Field(default=None, description="Base URL of the OpenAI-compatible API")
    model: str = Field(default="gpt-4o", description="Model name")
    temperature: float = Field(default=0.7, description="Sampling temperature")
    top_p: float = Field(default=1.0, description="Nucleus sampling")
    max_tokens: int = Field(default=1000, description="Maximum tokens per completion")
    presence_penalty: float = Field(default=0.0, description="Presence penalty")
    frequency_penalty: float = Field(default=0.0, description="Frequency penalty")
    timeout_seconds: float = Field(default=60.0, description="Bounded wait for a single upstream call")
    max_retries: int = Field(default=3, description="Attempts for transient upstream failures")
    stream_usage: bool = Field(default=True, description="Request usage totals on streamed responses")
    engine_id: str = Field(default="primary", description="Identifier tagged on done events")
    display_name: str = Field(default="FundsAgent", description="User-facing backend name")

    @validator("api_key", pre=True)
    def blank_key_is_missing(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    class Config:
        env_prefix = "LLM_"
        env_file = ".env"
        extra = "ignore"


class PrimaryLLMSettings(LLMBackendSettings):
    """Primary reasoning backend (OpenAI)."""

    base_url: Optional[str] = Field(default="https://api.openai.com/v1", description="OpenAI API base URL")

    class Config:
        env_prefix = "OPENAI_"
        env_file = ".env"
        extra = "ignore"


class DeepSeekSettings(LLMBackendSettings):
    """Secondary backend A: independent tool loop."""

    base_url: Optional[str] = Field(default="https://api.deepseek.com", description="DeepSeek API base URL")
    model: str = Field(default="deepseek-chat", description="DeepSeek model")
    max_tokens: int = Field(default=1500, description="Maximum tokens per completion")
    engine_id: str = Field(default="engine2", description="Identifier tagged on done events")
    display_name: str = Field(default="Thinking Engine 2", description="User-facing backend name")

    class Config:
        env_prefix = "DEEPSEEK_"
        env_file = ".env"
        extra = "ignore"


class XAISettings(LLMBackendSettings):
    """Secondary backend B: analysis only, tool use disabled."""

    base_url: Optional[str] = Field(default="https://api.x.ai/v1", description="xAI API base URL")
    model: str = Field(default="grok-3-mini", description="xAI model")
    max_tokens: int = Field(default=1500, description="Maximum tokens per completion")
    engine_id: str = Field(default="engine3", description="Identifier tagged on done events")
    display_name: str = Field(default="Thinking Engine 3", description="User-facing backend name")

    class Config:
        env_prefix = "GROK_"
        env_file = ".env"
        extra = "ignore"


class CosmosDBSettings(BaseSettings):
    """Azure Cosmos DB configuration."""

    endpoint: Optional[str] = Field(default=None, description="Cosmos DB account endpoint")
    database_name: str = Field(default="fundsagent", description="Database name")
    conversations_container: str = Field(default="agent_conversations", description="Conversation sessions")
    messages_container: str = Field(default="agent_messages", description="Conversation messages")
    memory_container: str = Field(default="agent_memory", description="Personalization memory")
    access_container: str = Field(default="agent_access", description="Access grants")
    personas_container: str = Field(default="agent_personas", description="Agent personas")
    employees_container: str = Field(default="employees", description="Employee directory")
    b2b_mtd_container: str = Field(default="b2b_sales_current_month", description="B2B sales, current month")
    b2b_ytd_container: str = Field(default="btb_sales_YTD_minus_current_month", description="B2B sales, YTD excluding current month")
    b2c_container: str = Field(default="b2c", description="B2C advisor performance")
    targets_container: str = Field(default="targets", description="Performance targets")

    class Config:
        env_prefix = "COSMOS_"
        env_file = ".env"
        extra = "ignore"


class AgentSettings(BaseSettings):
    """Tool loop and conversation context configuration."""

    max_tool_rounds: int = Field(default=5, description="Round budget for the tool-calling loop")
    history_limit: int = Field(default=20, description="Prior messages loaded for the primary backend")
    engine_history_limit: int = Field(default=6, description="Prior messages loaded for secondary backends")
    memory_limit: int = Field(default=10, description="Memory items injected into the system prompt")
    parallel_tool_calls: bool = Field(default=False, description="Execute the tool calls of one round concurrently")
    default_agent_name: str = Field(default="FundsAgent", description="Agent name when no persona sets one")

    class Config:
        env_prefix = "AGENT_"
        env_file = ".env"
        extra = "ignore"


class StreamSettings(BaseSettings):
    """Synthetic token replay configuration."""

    replay_chunk_size: int = Field(default=4, description="Characters per synthetic token")
    replay_delay_ms: int = Field(default=8, description="Delay between synthetic tokens")

    @validator("replay_chunk_size")
    def positive_chunk(cls, v):
        if v < 1:
            raise ValueError("replay_chunk_size must be at least 1")
        return v

    class Config:
        env_prefix = "STREAM_"
        env_file = ".env"
        extra = "ignore"


class AccessSettings(BaseSettings):
    """Access resolution configuration."""

    identity_graph_ttl_seconds: int = Field(default=60, description="How long the identity graph is cached")
    query_result_limit: int = Field(default=200, description="Default row limit for query_database")
    query_result_cap: int = Field(default=1000, description="Hard row cap for query_database")

    class Config:
        env_prefix = "ACCESS_"
        env_file = ".env"
        extra = "ignore"


class TelemetrySettings(BaseSettings):
    """Logging configuration."""

    log_level: str = Field(default="INFO", description="Logging level")

    class Config:
        env_prefix = "TELEMETRY_"
        env_file = ".env"
        extra = "ignore"


class ApplicationSettings(BaseSettings):
    """Main application settings."""

    # Application metadata
    app_name: str = Field(default="FundsAgent", description="Application name")
    version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Debug mode")
    environment: str = Field(default="development", description="Environment (development, staging, production)")
    dev_mode: bool = Field(default=False, description="Development mode - in-memory stores seeded with sample data")

    # API configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_prefix: str = Field(default="/api", description="API prefix")
    cors_origins: List[str] = Field(default_factory=lambda: ["*"], description="CORS origins")

    # Service configurations
    openai: PrimaryLLMSettings = Field(default_factory=PrimaryLLMSettings)
    deepseek: DeepSeekSettings = Field(default_factory=DeepSeekSettings)
    xai: XAISettings = Field(default_factory=XAISettings)
    cosmos_db: CosmosDBSettings = Field(default_factory=CosmosDBSettings)
    agents: AgentSettings = Field(default_factory=AgentSettings)
    stream: StreamSettings = Field(default_factory=StreamSettings)
    access: AccessSettings = Field(default_factory=AccessSettings)
    telemetry: TelemetrySettings = Field(default_factory=TelemetrySettings)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"

    @validator("cors_origins", pre=True)
    def parse_cors_origins(cls, v):
        """Parse CORS origins from string or list."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @property
    def use_cosmos(self) -> bool:
        return bool(self.cosmos_db.endpoint) and not self.dev_mode


# Global settings instance
settings = ApplicationSettings()
