"""Configuration management for the CRM Intelligence Engine."""

from functools import lru_cache

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file (only if accessible)
try:
    load_dotenv()
except (PermissionError, OSError):
    # In sandboxed environments, .env might not be accessible
    # Environment variables should be set directly
    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Supabase configuration (required)
    SUPABASE_URL: str = Field(..., description="Supabase project URL")
    SUPABASE_SERVICE_ROLE_KEY: str = Field(..., description="Supabase service role key")

    # Anthropic configuration (required)
    ANTHROPIC_API_KEY: str = Field(..., description="Anthropic API key")

    # Environment
    INTEL_ENGINE_ENV: str = Field(default="dev", description="Environment: dev, staging, prod")

    # CRM and research tool providers
    HUBSPOT_ACCESS_TOKEN: str | None = Field(default=None, description="HubSpot private app token")
    HUBSPOT_BASE_URL: str = Field(default="https://api.hubapi.com", description="HubSpot API base URL")
    HUBSPOT_TIMEOUT: int = Field(default=20, description="HubSpot request timeout in seconds")
    SERPAPI_API_KEY: str | None = Field(default=None, description="SerpAPI key for web search")
    FIRECRAWL_API_KEY: str | None = Field(default=None, description="Firecrawl key for page scraping")
    FIRECRAWL_TIMEOUT: int = Field(default=30, description="Firecrawl request timeout in seconds")
    KNOWLEDGE_BASE_URL: str | None = Field(
        default=None, description="HTTP endpoint of the knowledge-base query service"
    )
    KNOWLEDGE_BASE_API_KEY: str | None = Field(
        default=None, description="Bearer token for the knowledge-base service"
    )
    KNOWLEDGE_BASE_TIMEOUT: int = Field(default=30, description="Knowledge-base request timeout")

    # Agent execution engine
    INTEL_AGENT_MODEL: str = Field(
        default="claude-sonnet-4-5-20250929", description="Model for intelligence agents"
    )
    INTEL_AGENT_MAX_TOKENS: int = Field(default=8192, description="Max tokens per model response")
    INTEL_AGENT_MAX_ITERATIONS: int = Field(
        default=10, description="Max model round-trips per analysis run"
    )

    # Job orchestrator
    INTEL_BATCH_MAX_SIZE: int = Field(default=50, description="Max jobs per batch submission")
    INTEL_HISTORY_LIMIT: int = Field(default=20, description="Snapshots kept in a job's history")
    INTEL_RETRY_MAX_RETRIES: int = Field(default=3, description="Default whole-run attempts")
    INTEL_RETRY_INITIAL_DELAY_MS: int = Field(
        default=30_000, description="Default backoff before the first retry"
    )


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings instance

    Raises:
        ValidationError: If required environment variables are missing
    """
    return Settings()
