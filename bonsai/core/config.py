"""Application configuration."""
from pydantic_settings import BaseSettings
from pydantic import Field, computed_field
from typing import Optional
import uuid
from pathlib import Path

# Load .env file automatically using python-dotenv
from dotenv import load_dotenv

# Load .env file from project root
env_path = Path(__file__).parent.parent.parent / ".env"
load_dotenv(dotenv_path=env_path)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    # Storage for the persisted Bonsai state blob (SQLite by default)
    database_url: str = "sqlite:///./bonsai.db"
    db_connect_retries: int = 3
    db_connect_retry_delay: float = 2.0

    @computed_field
    @property
    def is_sqlite(self) -> bool:
        """Check if using SQLite."""
        return self.database_url.startswith("sqlite")

    # Logging
    log_level: str = "INFO"  # DEBUG, INFO, WARNING, ERROR, CRITICAL

    # LLM endpoint (OpenAI-compatible, e.g. LM Studio)
    # Format: host:port/path without scheme, e.g. localhost:1234/v1
    llm_base_url: str = "localhost:1234/v1"
    llm_model: str = "qwen/qwen2.5-coder-3b-instruct"
    llm_api_key: str = "lm-studio"
    llm_temperature: float = 0.8
    llm_timeout: float = 120.0  # Per-request timeout in seconds

    # Retry policy for the generation client
    # None keeps retrying forever, which is the historical behaviour
    llm_retry_delay: float = 1.0
    llm_max_attempts: Optional[int] = None

    connection_test_timeout: float = 5.0

    # Runtime session: persisted state is only restored when written by the same session
    session_id: str = Field(default_factory=lambda: str(uuid.uuid4()))

    # Root node used on cold start
    seed_code: str = "# Paste or type your code here, then select this node and run an activity."
    seed_extension: str = ".txt"  # Temp file extension handed to the analyzer

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 3000
    api_reload: bool = False

    # CORS
    cors_origins: list[str] = ["*"]

    # Project metadata
    project_name: str = "BonsAIDE"
    project_version: str = "1.0.0"

    model_config = {
        "env_file": ".env",
        "env_prefix": "BONSAI_",
        "case_sensitive": False,
        "env_file_encoding": "utf-8",
        "extra": "ignore"
    }

    @property
    def has_retry_cap(self) -> bool:
        """Check if LLM retries are bounded."""
        return self.llm_max_attempts is not None and self.llm_max_attempts > 0


# Global settings instance
settings = Settings()
