"""
Configuration settings for Sophia.

This module provides a centralized configuration for the tool registry,
workflow engine and API gateway.
"""

import os
from typing import Dict, Optional, List

from dotenv import load_dotenv
from pydantic_settings import BaseSettings
from pydantic import ConfigDict

# Load environment variables from .env file
load_dotenv()


DEFAULT_ALLOWED_MODULES = (
    "base64,collections,datetime,decimal,fractions,functools,hashlib,"
    "itertools,json,math,random,re,statistics,textwrap,time,uuid"
)


class Settings(BaseSettings):
    """
    Application settings.

    Load configuration from environment variables or .env file.
    """
    # LLM configuration (any OpenAI-compatible endpoint, e.g. Ollama)
    openai_api_key: str = os.getenv("OPENAI_API_KEY", "")
    openai_base_url: Optional[str] = os.getenv("OPENAI_BASE_URL") or None
    openai_model: str = os.getenv("OPENAI_MODEL", "gpt-4o")
    openai_embedding_model: str = os.getenv("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small")
    openai_max_tokens: int = int(os.getenv("OPENAI_MAX_TOKENS", "2000"))
    openai_temperature: float = float(os.getenv("OPENAI_TEMPERATURE", "0.2"))

    # Development mode
    debug: bool = os.getenv("DEBUG", "False").lower() == "true"

    # API Gateway settings
    api_gateway_host: str = os.getenv("API_GATEWAY_HOST", "0.0.0.0")
    api_gateway_port: int = int(os.getenv("API_GATEWAY_PORT", "8000"))

    # Logging settings
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    log_file: Optional[str] = os.getenv("LOG_FILE", None)
    enable_file_logging: bool = os.getenv("ENABLE_FILE_LOGGING", "False").lower() == "true"

    # Storage settings
    workspace_path: str = os.getenv("WORKSPACE_PATH", "data")
    tool_registry_storage_dir: str = os.getenv("TOOL_REGISTRY_STORAGE_DIR", "data/tools")
    workflow_storage_dir: str = os.getenv("WORKFLOW_STORAGE_DIR", "data/workflows")
    persist_workflow_progress: bool = os.getenv("PERSIST_WORKFLOW_PROGRESS", "True").lower() == "true"

    # Tool execution settings
    tool_execution_timeout_seconds: float = float(os.getenv("TOOL_EXECUTION_TIMEOUT_SECONDS", "30"))
    tool_allowed_modules: str = os.getenv("TOOL_ALLOWED_MODULES", DEFAULT_ALLOWED_MODULES)
    tool_cache_retention_days: int = int(os.getenv("TOOL_CACHE_RETENTION_DAYS", "7"))
    metrics_max_errors: int = int(os.getenv("METRICS_MAX_ERRORS", "10"))
    metrics_max_input_patterns: int = int(os.getenv("METRICS_MAX_INPUT_PATTERNS", "10"))
    search_top_k: int = int(os.getenv("SEARCH_TOP_K", "5"))

    # Workflow settings
    workflow_max_retries: int = int(os.getenv("WORKFLOW_MAX_RETRIES", "3"))
    workflow_retry_base_delay: float = float(os.getenv("WORKFLOW_RETRY_BASE_DELAY", "1.0"))

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    @property
    def allowed_modules(self) -> List[str]:
        """Module names tool code may import, parsed from the comma list."""
        return [item.strip() for item in self.tool_allowed_modules.split(",") if item.strip()]

    def validate_api_keys(self) -> List[str]:
        """
        Validate that required API keys are present.

        Returns:
            List of missing API keys
        """
        missing_keys = []

        # A custom base URL (local Ollama) does not need a key
        if not self.openai_api_key and not self.openai_base_url:
            missing_keys.append("OPENAI_API_KEY")

        return missing_keys

    def validate_settings(self) -> Dict[str, str]:
        """
        Validate all settings and return any warnings or errors.

        Returns:
            Dictionary of validation messages
        """
        validation_messages = {}

        missing_keys = self.validate_api_keys()
        if missing_keys:
            validation_messages["missing_api_keys"] = f"Missing required API keys: {', '.join(missing_keys)}"

        if self.tool_execution_timeout_seconds <= 0:
            validation_messages["tool_timeout"] = "Tool execution timeout must be positive"

        for key, directory in (
            ("tool_registry_storage", self.tool_registry_storage_dir),
            ("workflow_storage", self.workflow_storage_dir),
            ("workspace", self.workspace_path),
        ):
            if not os.path.isdir(directory):
                try:
                    os.makedirs(directory, exist_ok=True)
                except OSError as e:
                    validation_messages[key] = f"Failed to create directory {directory}: {e}"

        return validation_messages

    def configure_logging(self) -> None:
        """Configure logging based on settings."""
        import logging

        log_level = getattr(logging, self.log_level.upper(), logging.INFO)

        logging_config = {
            'level': log_level,
            'format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            'datefmt': '%Y-%m-%d %H:%M:%S',
        }

        if self.enable_file_logging and self.log_file:
            logging_config['filename'] = self.log_file
            logging_config['filemode'] = 'a'

        logging.basicConfig(**logging_config)

        # Reduce noise from HTTP client libraries
        logging.getLogger("openai").setLevel(logging.WARNING)
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("urllib3").setLevel(logging.WARNING)


# Create a global settings instance
settings = Settings()

# Automatically configure logging
settings.configure_logging()


def print_settings(include_secrets: bool = False) -> str:
    """
    Generate a printable string of current settings.

    Args:
        include_secrets: Whether to include secret values like API keys

    Returns:
        String representation of settings
    """
    secret_fields = {"openai_api_key"}

    lines = ["Current Settings:"]

    for key, value in sorted(settings.model_dump().items()):
        if key in secret_fields and not include_secrets:
            if value:
                value = f"{'*' * 8}{value[-4:]}" if isinstance(value, str) and len(value) > 4 else "********"
            else:
                value = "Not set"

        lines.append(f"  {key}: {value}")

    return "\n".join(lines)


def validate_environment() -> None:
    """
    Validate the environment and display warnings or errors.
    """
    import logging
    logger = logging.getLogger(__name__)

    validation_messages = settings.validate_settings()

    if validation_messages:
        logger.warning("Environment validation found issues:")
        for category, message in validation_messages.items():
            logger.warning(f"  {category}: {message}")
    else:
        logger.info("Environment validation: All checks passed")
