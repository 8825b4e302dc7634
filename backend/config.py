"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the model
comparison backend. All settings can be overridden via environment variables
or a .env file.
"""

import json
import logging
import os
from typing import Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        openai_api_key: API key for OpenAI models.
        anthropic_api_key: API key for Anthropic models.
        gemini_api_key: API key for Google Gemini models.
        use_mock_llm: If True, targets are served by the scripted mock pipeline.
        default_system_prompt: System message every target starts from before
            per-target prompt modifications are applied.
        temperature: Sampling temperature used for every target.
        llm_request_timeout_seconds: Timeout for a single streamed LLM call.
        max_tool_rounds: Maximum model/tool round trips per target invocation.
        tool_workspace_root: Directory the read-only workspace tools operate in.
        default_targets: Target ids selected when nothing has been saved yet.
        max_targets: Maximum number of targets in one comparison.
        approval_timeout_seconds: Seconds a proposed tool call waits for a
            decision before being denied. None waits until decided or cancelled.
        comparison_timeout_seconds: Upper bound for an entire comparison run.
        request_max_age_hours: Oldest acceptable LogicalRequest timestamp.
        database_path: SQLite file for saved selections and prompt modifications.
        backend_port: Port for the FastAPI server.
        frontend_port: Port for the frontend (for CORS).
        cors_origins: Allowed origins for CORS.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # Provider credentials (LiteLLM discovers these from os.environ)
    openai_api_key: str = ""
    anthropic_api_key: str = ""
    gemini_api_key: str = ""
    use_mock_llm: bool = False

    # Invocation
    default_system_prompt: str = (
        "You are a helpful coding assistant. Answer concisely and use the "
        "available workspace tools when you need to look at files."
    )
    temperature: float = 0.7
    llm_request_timeout_seconds: int = 120
    max_tool_rounds: int = 5
    tool_workspace_root: str = "."

    # Comparison
    default_targets: str | list[str] = ["gpt-5", "claude-sonnet-4"]
    max_targets: int = 4
    approval_timeout_seconds: float | None = None
    comparison_timeout_seconds: int = 300
    request_max_age_hours: int = 24

    # Database Configuration
    database_path: str = "./data/comparison.db"

    # Server Configuration
    backend_port: int = 8000
    frontend_port: int = 3000
    cors_origins: str | list[str] = ["http://localhost:3000"]
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("cors_origins", "default_targets", mode="before")
    @classmethod
    def parse_string_list(cls, v: Any) -> list[str]:
        """Parse a list setting from string or list.

        Accepts:
        - JSON array: '["http://localhost:3000"]'
        - Comma-separated: 'gpt-5,claude-sonnet-4'
        - Single value: 'gpt-5'
        - Already a list: ["gpt-5"]
        """
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            v = v.strip()
            if v.startswith("["):
                try:
                    return json.loads(v)
                except json.JSONDecodeError:
                    pass
            return [item.strip() for item in v.split(",") if item.strip()]
        return []

    model_config = SettingsConfigDict(
        # Support running `uvicorn` from either the repo root or `backend/`
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    def model_post_init(self, __context: Any) -> None:
        """Export provider keys to os.environ for LiteLLM discovery."""
        for env_name, value in (
            ("OPENAI_API_KEY", self.openai_api_key),
            ("ANTHROPIC_API_KEY", self.anthropic_api_key),
            ("GEMINI_API_KEY", self.gemini_api_key),
        ):
            if value:
                os.environ.setdefault(env_name, value)


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the application.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format - 'json' for production, 'text' for development.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Global settings instance
settings = Settings()

# Configure logging on module import
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)
